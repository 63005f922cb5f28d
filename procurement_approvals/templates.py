"""
Workflow Template Catalog

Reusable, named sequences of role-gated approval steps keyed by entity
category. Templates referenced by an approval instance are never edited in
place: a revision is stored as a new template that supersedes the old one.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union
from enum import Enum
import uuid

from .conditions import Condition, condition_from_dict, condition_to_dict, to_decimal
from .exceptions import InvalidStateError, NotFoundError
from .logging_config import get_logger, log_action
from .roles import Role
from .storage import StorageInterface, StorageRecord, parse_datetime


TEMPLATES_TABLE = "workflow_templates"
INSTANCES_TABLE = "approval_instances"
ACTIONS_TABLE = "approval_actions"


class EntityType(Enum):
    """Business entities that go through approval"""
    VENDOR = "VENDOR"
    VENDOR_QUALIFICATION = "VENDOR_QUALIFICATION"
    RFQ = "RFQ"
    CONTRACT = "CONTRACT"
    PURCHASE_ORDER = "PURCHASE_ORDER"
    DOCUMENT = "DOCUMENT"

    @classmethod
    def parse(cls, value: Union['EntityType', str]) -> 'EntityType':
        if isinstance(value, EntityType):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown entity type: {value}")


@dataclass
class StepDefinition:
    """Definition of a single approval step (template)"""
    sequence: int
    required_role: Role
    name: str = ""
    is_required: bool = True
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    sla_hours: Optional[int] = None

    def applies_to(self, value: Optional[Decimal]) -> bool:
        """
        Whether this step is part of a run for an entity of the given value.

        Required steps always apply. Optional steps apply inside their
        amount band, or when the value is unknown.
        """
        if self.is_required or value is None:
            return True
        if self.min_amount is not None and value < self.min_amount:
            return False
        if self.max_amount is not None and value > self.max_amount:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'required_role': int(self.required_role),
            'name': self.name,
            'is_required': self.is_required,
            'min_amount': str(self.min_amount) if self.min_amount is not None else None,
            'max_amount': str(self.max_amount) if self.max_amount is not None else None,
            'sla_hours': self.sla_hours,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepDefinition':
        return cls(
            sequence=int(data['sequence']),
            required_role=Role.parse(data['required_role']),
            name=data.get('name') or "",
            is_required=data.get('is_required', True),
            min_amount=to_decimal(data.get('min_amount')),
            max_amount=to_decimal(data.get('max_amount')),
            sla_hours=data.get('sla_hours'),
        )


@dataclass
class WorkflowTemplate(StorageRecord):
    """Workflow template"""
    name: str
    entity_category: EntityType
    steps: List[StepDefinition]
    conditions: Optional[List[Condition]] = None
    description: str = ""
    is_active: bool = True
    is_builtin: bool = False
    created_by: str = ""
    supersedes: Optional[str] = None

    def ordered_steps(self) -> List[StepDefinition]:
        return sorted(self.steps, key=lambda s: s.sequence)

    def get_step(self, sequence: int) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.sequence == sequence:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'name': self.name,
            'entity_category': self.entity_category.value,
            'steps': [step.to_dict() for step in self.ordered_steps()],
            'conditions': (
                [condition_to_dict(c) for c in self.conditions]
                if self.conditions is not None else None
            ),
            'description': self.description,
            'is_active': self.is_active,
            'is_builtin': self.is_builtin,
            'created_by': self.created_by,
            'supersedes': self.supersedes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTemplate':
        conditions = data.get('conditions')
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            name=data['name'],
            entity_category=EntityType.parse(data['entity_category']),
            steps=[StepDefinition.from_dict(s) for s in data.get('steps', [])],
            conditions=(
                [condition_from_dict(c) for c in conditions]
                if conditions is not None else None
            ),
            description=data.get('description', ""),
            is_active=data.get('is_active', True),
            is_builtin=data.get('is_builtin', False),
            created_by=data.get('created_by', ""),
            supersedes=data.get('supersedes'),
        )


_BUILTIN_CREATED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _builtin(template_id: str, name: str, category: EntityType,
             steps: List[tuple]) -> WorkflowTemplate:
    return WorkflowTemplate(
        id=template_id,
        created_at=_BUILTIN_CREATED_AT,
        updated_at=_BUILTIN_CREATED_AT,
        name=name,
        entity_category=category,
        steps=[
            StepDefinition(sequence=i + 1, name=step_name, required_role=role, sla_hours=hours)
            for i, (step_name, role, hours) in enumerate(steps)
        ],
        description=f"Built-in fallback workflow for {category.value}",
        is_builtin=True,
        created_by="system",
    )


DEFAULT_TEMPLATES: Dict[EntityType, WorkflowTemplate] = {
    EntityType.VENDOR: _builtin("default-vendor", "Default Vendor Qualification", EntityType.VENDOR, [
        ("Procurement Officer Review", Role.OFFICER, 24),
        ("Procurement Manager Approval", Role.MANAGER, 48),
        ("Head of Procurement Final Approval", Role.DIRECTOR, 72),
    ]),
    EntityType.RFQ: _builtin("default-rfq", "Default RFQ Approval", EntityType.RFQ, [
        ("Technical Evaluation", Role.OFFICER, 24),
        ("Commercial Evaluation", Role.OFFICER, 24),
        ("Manager Approval", Role.MANAGER, 48),
    ]),
    EntityType.CONTRACT: _builtin("default-contract", "Default Contract Approval", EntityType.CONTRACT, [
        ("Legal Review", Role.OFFICER, 48),
        ("Procurement Manager Approval", Role.MANAGER, 72),
        ("Director Final Approval", Role.DIRECTOR, 96),
    ]),
}

BUILTIN_TEMPLATES_BY_ID: Dict[str, WorkflowTemplate] = {
    template.id: template for template in DEFAULT_TEMPLATES.values()
}


def default_template_for(entity_type: EntityType) -> WorkflowTemplate:
    """Built-in template for an entity type; VENDOR's for types without one"""
    return DEFAULT_TEMPLATES.get(entity_type, DEFAULT_TEMPLATES[EntityType.VENDOR])


# Catalog bootstrap templates: (id, name, category, description, steps)
# where each step is (name, role, is_required, min_amount)
SEED_TEMPLATES = [
    ("vendor-qualification-workflow", "Vendor Qualification Workflow",
     EntityType.VENDOR_QUALIFICATION,
     "Standard workflow for vendor qualification and approval", [
         ("Procurement Engineer Review", Role.OFFICER, True, None),
         ("Procurement Manager Approval", Role.MANAGER, True, None),
         ("Cost Manager Review", Role.MANAGER, False, Decimal("50000")),
         ("Director Approval", Role.DIRECTOR, False, Decimal("100000")),
     ]),
    ("contract-approval-workflow", "Contract Approval Workflow",
     EntityType.CONTRACT,
     "Workflow for contract review and approval", [
         ("Procurement Manager Review", Role.MANAGER, True, None),
         ("Legal Review", Role.OFFICER, True, None),
         ("Director Approval", Role.DIRECTOR, False, Decimal("50000")),
     ]),
    ("purchase-order-workflow", "Purchase Order Workflow",
     EntityType.PURCHASE_ORDER,
     "Workflow for purchase order approval", [
         ("Procurement Engineer Review", Role.OFFICER, True, None),
         ("Procurement Manager Approval", Role.MANAGER, True, None),
     ]),
]


class WorkflowTemplateCatalog:
    """Stores and versions workflow templates"""

    _REVISABLE_FIELDS = {'name', 'description', 'steps', 'conditions'}

    def __init__(self, storage: StorageInterface,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("procurement_approvals.templates")

    # Definition Management

    def create_template(self, template: WorkflowTemplate) -> str:
        """Validate and store a new template"""
        if not template.id:
            template.id = str(uuid.uuid4())

        template.created_at = self.clock()
        template.updated_at = template.created_at
        template.is_builtin = False

        self._validate_template(template)

        self.storage.insert(TEMPLATES_TABLE, template.id, template.to_dict())

        log_action(
            self.logger, "info", f"Workflow template created: {template.name}",
            user_id=template.created_by or None, action="template_created",
            resource=template.id,
            extra={'entity_category': template.entity_category.value, 'steps': len(template.steps)}
        )

        return template.id

    def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        """Get a stored template by ID"""
        data = self.storage.load(TEMPLATES_TABLE, template_id)
        if not data:
            return None
        return WorkflowTemplate.from_dict(data)

    def resolve_template(self, template_id: str) -> WorkflowTemplate:
        """
        Get a template by ID, including the built-in defaults.

        A built-in is stored on first reference so instances always point at
        a persisted template.
        """
        template = self.get_template(template_id)
        if template:
            return template

        builtin = BUILTIN_TEMPLATES_BY_ID.get(template_id)
        if builtin is None:
            raise NotFoundError(f"Workflow template {template_id} not found")

        self.storage.save(TEMPLATES_TABLE, builtin.id, builtin.to_dict())
        return WorkflowTemplate.from_dict(builtin.to_dict())

    def list_templates(self, entity_type: Optional[EntityType] = None,
                       active_only: bool = False) -> List[WorkflowTemplate]:
        """List stored templates, newest first"""
        templates = []
        for data in reversed(self.storage.load_all(TEMPLATES_TABLE)):
            template = WorkflowTemplate.from_dict(data)
            if entity_type and template.entity_category != entity_type:
                continue
            if active_only and not template.is_active:
                continue
            templates.append(template)

        return sorted(templates, key=lambda t: t.created_at, reverse=True)

    def activate_template(self, template_id: str) -> WorkflowTemplate:
        return self._set_active(template_id, True)

    def deactivate_template(self, template_id: str) -> WorkflowTemplate:
        return self._set_active(template_id, False)

    def revise_template(self, template_id: str, updated_by: str = "", **changes) -> WorkflowTemplate:
        """
        Apply changes to a template.

        Unreferenced templates are edited in place. A template referenced by
        an approval instance is left untouched (and deactivated); the
        changes go into a new template whose `supersedes` points back at it.
        """
        unknown = set(changes) - self._REVISABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot revise template fields: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            template = self._require(template_id)
            now = self.clock()

            if not self.is_referenced(template_id):
                for key, value in changes.items():
                    setattr(template, key, value)
                template.updated_at = now
                self._validate_template(template)
                self.storage.save(TEMPLATES_TABLE, template.id, template.to_dict())
                log_action(
                    self.logger, "info", f"Workflow template updated: {template.name}",
                    user_id=updated_by or None, action="template_updated", resource=template.id
                )
                return template

            revision = WorkflowTemplate(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                name=changes.get('name', template.name),
                entity_category=template.entity_category,
                steps=changes.get('steps', template.steps),
                conditions=changes.get('conditions', template.conditions),
                description=changes.get('description', template.description),
                is_active=True,
                created_by=updated_by or template.created_by,
                supersedes=template.id,
            )
            self._validate_template(revision)
            self.storage.insert(TEMPLATES_TABLE, revision.id, revision.to_dict())

            template.is_active = False
            template.updated_at = now
            self.storage.save(TEMPLATES_TABLE, template.id, template.to_dict())

        log_action(
            self.logger, "info", f"Workflow template revised: {template.name}",
            user_id=updated_by or None, action="template_revised", resource=revision.id,
            extra={'supersedes': template.id}
        )
        return revision

    def delete_template(self, template_id: str) -> None:
        """Delete a template that no instance references"""
        with self.storage.atomic():
            self._require(template_id)
            if self.is_referenced(template_id):
                raise InvalidStateError(
                    f"Workflow template {template_id} is referenced by approval instances"
                )
            self.storage.delete(TEMPLATES_TABLE, template_id)

        log_action(self.logger, "info", "Workflow template deleted",
                   action="template_deleted", resource=template_id)

    def is_referenced(self, template_id: str) -> bool:
        return bool(self.storage.find(INSTANCES_TABLE, {'workflow_id': template_id}))

    def seed_default_templates(self, created_by: str = "system") -> Dict[str, int]:
        """Store the standard procurement templates that are not present yet"""
        created = 0
        for template_id, name, category, description, steps in SEED_TEMPLATES:
            if self.storage.exists(TEMPLATES_TABLE, template_id):
                self.logger.debug(f"Template already exists: {name}")
                continue

            self.create_template(WorkflowTemplate(
                id=template_id,
                created_at=self.clock(),
                updated_at=self.clock(),
                name=name,
                entity_category=category,
                description=description,
                created_by=created_by,
                steps=[
                    StepDefinition(
                        sequence=i + 1, name=step_name, required_role=role,
                        is_required=is_required, min_amount=min_amount
                    )
                    for i, (step_name, role, is_required, min_amount) in enumerate(steps)
                ],
            ))
            created += 1

        self.logger.info(f"Seeded {created} workflow templates")
        return {'created': created, 'total': len(SEED_TEMPLATES)}

    # Private helper methods

    def _require(self, template_id: str) -> WorkflowTemplate:
        template = self.get_template(template_id)
        if not template:
            raise NotFoundError(f"Workflow template {template_id} not found")
        return template

    def _set_active(self, template_id: str, active: bool) -> WorkflowTemplate:
        with self.storage.atomic():
            template = self._require(template_id)
            template.is_active = active
            template.updated_at = self.clock()
            self.storage.save(TEMPLATES_TABLE, template_id, template.to_dict())

        log_action(
            self.logger, "info",
            f"Workflow template {'activated' if active else 'deactivated'}",
            action="template_activated" if active else "template_deactivated",
            resource=template_id
        )
        return template

    def _validate_template(self, template: WorkflowTemplate):
        """Validate a workflow template"""
        if not template.name:
            raise ValueError("Workflow template must have a name")

        if not template.steps:
            raise ValueError("Workflow template must have at least one step")

        sequences = [step.sequence for step in template.steps]
        if len(set(sequences)) != len(sequences):
            raise ValueError("Step sequences must be unique")

        for i, num in enumerate(sorted(sequences)):
            if num != i + 1:
                raise ValueError("Step sequences must be consecutive starting at 1")

        for step in template.steps:
            if step.sla_hours is not None and step.sla_hours <= 0:
                raise ValueError(f"Step {step.sequence} SLA hours must be positive")
            if (step.min_amount is not None and step.max_amount is not None
                    and step.min_amount > step.max_amount):
                raise ValueError(f"Step {step.sequence} min_amount exceeds max_amount")
