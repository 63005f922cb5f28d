"""
Approval Instance Module

Owns the lifecycle of one approval run for one business entity: creation,
lazy approver assignment as each step becomes current, and the terminal
APPROVED transition. Approvers are resolved when a step is reached rather
than up front, since the person holding a role may change while earlier
steps are pending.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union
from enum import Enum
import uuid

from .conditions import EntitySnapshot
from .exceptions import DuplicateKeyError, InvalidStateError, NotFoundError, UpstreamUnavailableError
from .logging_config import get_logger, log_action
from .notifications import NotificationOutbox
from .ports import ActorDirectory, NotifierPort, StepContext
from .roles import Role
from .storage import StorageInterface, StorageRecord, parse_datetime, serialize_value
from .templates import (
    ACTIONS_TABLE, INSTANCES_TABLE, EntityType, WorkflowTemplate, WorkflowTemplateCatalog
)


class InstanceStatus(Enum):
    """Status of an approval run"""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ActionStatus(Enum):
    """Status of an individual step action"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"


TERMINAL_STATUSES = {InstanceStatus.APPROVED, InstanceStatus.REJECTED}


@dataclass
class ApprovalInstance(StorageRecord):
    """One approval run for one entity"""
    entity_type: EntityType
    entity_id: str
    workflow_id: str
    status: InstanceStatus
    initiator_id: str
    total_steps: int
    step_sequences: List[int]
    sla_deadline: datetime
    current_step_index: int = 0
    context: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_sequence(self) -> Optional[int]:
        """Template sequence of the step currently awaiting a decision"""
        if self.current_step_index == 0:
            return None
        return self.step_sequences[self.current_step_index - 1]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalInstance':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['sla_deadline'] = parse_datetime(data['sla_deadline'])
        data['completed_at'] = parse_datetime(data.get('completed_at'))
        data['entity_type'] = EntityType(data['entity_type'])
        data['status'] = InstanceStatus(data['status'])
        return cls(**data)


@dataclass
class ApprovalAction(StorageRecord):
    """The decision record (or pending decision) for one step of an instance"""
    instance_id: str
    step_sequence: int
    step_name: str
    required_role: Role
    status: ActionStatus
    sla_hours: int
    is_required: bool = True
    approver_id: Optional[str] = None
    comments: Optional[str] = None
    signature_data: Optional[Any] = None
    sla_deadline: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    escalated_from: Optional[str] = None
    attempt: int = 1
    version: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalAction':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'sla_deadline', 'assigned_at',
                    'signed_at', 'escalated_at'):
            data[key] = parse_datetime(data.get(key))
        data['required_role'] = Role(data['required_role'])
        data['status'] = ActionStatus(data['status'])
        return cls(**data)


@dataclass
class WorkflowStatusView:
    """An instance together with its template and full action history"""
    instance: ApprovalInstance
    template: Optional[WorkflowTemplate]
    actions: List[ApprovalAction]


def latest_actions(actions: List[ApprovalAction]) -> Dict[int, ApprovalAction]:
    """The most recent action for each step sequence"""
    latest: Dict[int, ApprovalAction] = {}
    for action in actions:
        current = latest.get(action.step_sequence)
        if current is None or action.attempt > current.attempt:
            latest[action.step_sequence] = action
    return latest


class ApprovalInstanceManager:
    """Creates approval instances and moves them through their steps"""

    def __init__(
        self,
        storage: StorageInterface,
        catalog: WorkflowTemplateCatalog,
        directory: ActorDirectory,
        notifier: NotifierPort,
        default_sla_hours: int = 72,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.catalog = catalog
        self.directory = directory
        self.notifier = notifier
        self.default_sla_hours = default_sla_hours
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("procurement_approvals.approvals")

    # Instance Management

    def start_workflow(
        self,
        entity_type: Union[EntityType, str],
        entity_id: Any,
        template_id: str,
        initiator_id: str,
        snapshot: Optional[EntitySnapshot] = None
    ) -> ApprovalInstance:
        """
        Start the approval run for an entity.

        Idempotent per (entity_type, entity_id): an existing instance is
        returned unchanged, including when a concurrent call won the race to
        insert it.
        """
        entity_type = EntityType.parse(entity_type)
        entity_id = str(entity_id)

        existing = self.get_instance_for_entity(entity_type, entity_id)
        if existing:
            self.logger.info(
                f"Approval workflow already exists for {entity_type.value} {entity_id}"
            )
            return existing

        outbox = NotificationOutbox(self.notifier)
        try:
            with self.storage.atomic():
                instance = self.create_instance(
                    entity_type, entity_id, template_id, initiator_id, snapshot, outbox
                )
        except DuplicateKeyError:
            existing = self.get_instance_for_entity(entity_type, entity_id)
            if existing is None:
                raise
            self.logger.info(
                f"Concurrent start for {entity_type.value} {entity_id}; returning existing instance"
            )
            return existing

        outbox.flush()
        return instance

    def advance_to_next_step(self, instance_id: str, actor_id: str) -> ApprovalInstance:
        """Assign the next step, or complete the instance after its last step"""
        outbox = NotificationOutbox(self.notifier)
        with self.storage.atomic():
            instance = self.require_instance(instance_id)
            instance = self.advance(instance, actor_id, outbox)
        outbox.flush()
        return instance

    def reset_workflow(
        self,
        entity_type: Union[EntityType, str],
        entity_id: Any,
        template_id: str,
        initiator_id: str,
        snapshot: Optional[EntitySnapshot] = None
    ) -> ApprovalInstance:
        """Delete the entity's instance with all its actions and start over"""
        entity_type = EntityType.parse(entity_type)
        entity_id = str(entity_id)

        outbox = NotificationOutbox(self.notifier)
        with self.storage.atomic():
            existing = self.get_instance_for_entity(entity_type, entity_id)
            if existing:
                self._delete_instance(existing)
                log_action(
                    self.logger, "info",
                    f"Approval workflow reset for {entity_type.value} {entity_id}",
                    user_id=str(initiator_id), action="workflow_reset", resource=existing.id
                )
            instance = self.create_instance(
                entity_type, entity_id, template_id, initiator_id, snapshot, outbox
            )
        outbox.flush()
        return instance

    # Queries

    def get_instance(self, instance_id: str) -> Optional[ApprovalInstance]:
        data = self.storage.load(INSTANCES_TABLE, instance_id)
        if not data:
            return None
        return ApprovalInstance.from_dict(data)

    def require_instance(self, instance_id: str) -> ApprovalInstance:
        instance = self.get_instance(instance_id)
        if not instance:
            raise NotFoundError(f"Approval instance {instance_id} not found")
        return instance

    def get_instance_for_entity(self, entity_type: Union[EntityType, str],
                                entity_id: Any) -> Optional[ApprovalInstance]:
        """Get the approval instance for an entity, if any"""
        matches = self.storage.find(INSTANCES_TABLE, {
            'entity_type': EntityType.parse(entity_type).value,
            'entity_id': str(entity_id)
        })
        if not matches:
            return None
        return ApprovalInstance.from_dict(matches[0])

    def list_instances(self, status: Optional[InstanceStatus] = None,
                       entity_type: Optional[EntityType] = None) -> List[ApprovalInstance]:
        """List instances with optional filters, newest first"""
        instances = []
        for data in self.storage.load_all(INSTANCES_TABLE):
            instance = ApprovalInstance.from_dict(data)
            if status and instance.status != status:
                continue
            if entity_type and instance.entity_type != entity_type:
                continue
            instances.append(instance)

        return sorted(instances, key=lambda i: i.created_at, reverse=True)

    def get_action(self, action_id: str) -> Optional[ApprovalAction]:
        data = self.storage.load(ACTIONS_TABLE, action_id)
        if not data:
            return None
        return ApprovalAction.from_dict(data)

    def get_actions(self, instance_id: str) -> List[ApprovalAction]:
        """All actions of an instance ordered by step sequence, then attempt"""
        actions = [
            ApprovalAction.from_dict(data)
            for data in self.storage.find(ACTIONS_TABLE, {'instance_id': instance_id})
        ]
        return sorted(actions, key=lambda a: (a.step_sequence, a.attempt))

    def get_workflow_status(self, instance_id: str) -> WorkflowStatusView:
        instance = self.require_instance(instance_id)
        return WorkflowStatusView(
            instance=instance,
            template=self.catalog.get_template(instance.workflow_id),
            actions=self.get_actions(instance_id)
        )

    def get_pending_approvals(self, user_id: str) -> List[ApprovalAction]:
        """Pending actions assigned to a user on live instances, earliest deadline first"""
        pending = []
        instances: Dict[str, Optional[ApprovalInstance]] = {}
        for data in self.storage.find(ACTIONS_TABLE, {
            'approver_id': str(user_id),
            'status': ActionStatus.PENDING.value
        }):
            action = ApprovalAction.from_dict(data)
            if action.instance_id not in instances:
                instances[action.instance_id] = self.get_instance(action.instance_id)
            instance = instances[action.instance_id]
            if instance is None or instance.is_terminal:
                continue
            pending.append(action)

        far_future = datetime.max.replace(tzinfo=timezone.utc)
        return sorted(pending, key=lambda a: (a.sla_deadline or far_future, a.created_at))

    # Transaction building blocks; callers hold storage.atomic()

    def create_instance(
        self,
        entity_type: EntityType,
        entity_id: str,
        template_id: str,
        initiator_id: str,
        snapshot: Optional[EntitySnapshot],
        outbox: NotificationOutbox
    ) -> ApprovalInstance:
        """Create the instance and its placeholder actions, then start step 1"""
        template = self.catalog.resolve_template(template_id)
        value = snapshot.value if snapshot else None
        steps = [step for step in template.ordered_steps() if step.applies_to(value)]
        if not steps:
            raise InvalidStateError(
                f"Workflow template {template.id} has no steps applicable to "
                f"{entity_type.value} {entity_id}"
            )

        now = self.clock()
        total_hours = sum(step.sla_hours or self.default_sla_hours for step in steps)

        instance = ApprovalInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            entity_type=entity_type,
            entity_id=entity_id,
            workflow_id=template.id,
            status=InstanceStatus.PENDING,
            initiator_id=str(initiator_id),
            total_steps=len(steps),
            step_sequences=[step.sequence for step in steps],
            sla_deadline=now + timedelta(hours=total_hours),
            current_step_index=0,
            context=serialize_value(_snapshot_context(snapshot)),
        )
        self.storage.insert(
            INSTANCES_TABLE, instance.id, instance.to_dict(),
            unique_key=f"{entity_type.value}:{entity_id}"
        )

        for step in steps:
            self.insert_action(ApprovalAction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                instance_id=instance.id,
                step_sequence=step.sequence,
                step_name=step.name or f"Step {step.sequence}",
                required_role=step.required_role,
                status=ActionStatus.PENDING,
                sla_hours=step.sla_hours or self.default_sla_hours,
                is_required=step.is_required,
            ))

        log_action(
            self.logger, "info",
            f"Approval workflow started for {entity_type.value} {entity_id}",
            user_id=str(initiator_id), action="workflow_started", resource=instance.id,
            extra={'workflow_id': template.id, 'total_steps': instance.total_steps}
        )

        return self.advance(instance, initiator_id, outbox)

    def advance(self, instance: ApprovalInstance, actor_id: str,
                outbox: NotificationOutbox) -> ApprovalInstance:
        """Move the instance past its approved current step"""
        if instance.is_terminal:
            raise InvalidStateError(
                f"Approval instance {instance.id} is already {instance.status.value}"
            )

        actions = latest_actions(self.get_actions(instance.id))

        if instance.current_sequence is not None:
            current = actions.get(instance.current_sequence)
            if current is None or current.status != ActionStatus.APPROVED:
                raise InvalidStateError(
                    f"Step {instance.current_step_index} of instance {instance.id} "
                    f"has not been approved"
                )

        now = self.clock()

        if instance.current_step_index >= instance.total_steps:
            instance.status = InstanceStatus.APPROVED
            instance.completed_at = now
            instance.updated_at = now
            self.save_instance(instance)

            log_action(
                self.logger, "info",
                f"Approval workflow completed for {instance.entity_type.value} {instance.entity_id}",
                user_id=str(actor_id), action="workflow_completed", resource=instance.id
            )
            return instance

        sequence = instance.step_sequences[instance.current_step_index]
        action = actions.get(sequence)
        if action is None:
            raise NotFoundError(
                f"No approval action for step {sequence} of instance {instance.id}"
            )

        approver_id = self.resolve_approver(action.required_role, actor_id, instance, sequence)

        action.approver_id = approver_id
        action.status = ActionStatus.PENDING
        action.assigned_at = now
        action.sla_deadline = now + timedelta(hours=action.sla_hours)
        action.updated_at = now
        self.save_action(action)

        instance.current_step_index += 1
        instance.status = InstanceStatus.IN_PROGRESS
        instance.updated_at = now
        self.save_instance(instance)

        outbox.assigned(approver_id, self.step_context(instance, action))

        log_action(
            self.logger, "info",
            f"Step {instance.current_step_index}/{instance.total_steps} '{action.step_name}' "
            f"assigned to {approver_id}",
            user_id=str(actor_id), action="step_assigned", resource=instance.id,
            extra={'action_id': action.id, 'approver_id': approver_id,
                   'required_role': action.required_role.name}
        )

        return instance

    def resolve_approver(self, role: Role, fallback_id: str,
                         instance: ApprovalInstance, sequence: int) -> str:
        """
        Find an active user holding the role.

        Falls back to fallback_id when the directory has nobody for the role
        or cannot be reached, so a step is never left unroutable.
        """
        try:
            user = self.directory.find_active_user_with_role(role)
            reason = "no active user holds the role"
        except UpstreamUnavailableError as e:
            user = None
            reason = f"actor directory unavailable: {e}"

        if user:
            return user.id

        log_action(
            self.logger, "warning",
            f"ApproverFallbackUsed: {role.label} step {sequence} of instance {instance.id} "
            f"assigned to {fallback_id} ({reason})",
            user_id=str(fallback_id), action="approver_fallback_used", resource=instance.id,
            extra={'role': role.name, 'step_sequence': sequence, 'reason': reason}
        )
        return str(fallback_id)

    def save_instance(self, instance: ApprovalInstance) -> None:
        instance.version = self.storage.update(
            INSTANCES_TABLE, instance.id, instance.to_dict(), instance.version
        )

    def insert_action(self, action: ApprovalAction) -> None:
        self.storage.insert(ACTIONS_TABLE, action.id, action.to_dict())

    def save_action(self, action: ApprovalAction) -> None:
        action.version = self.storage.update(
            ACTIONS_TABLE, action.id, action.to_dict(), action.version
        )

    def step_context(self, instance: ApprovalInstance, action: ApprovalAction) -> StepContext:
        return StepContext(
            instance_id=instance.id,
            action_id=action.id,
            entity_type=instance.entity_type.value,
            entity_id=instance.entity_id,
            step_sequence=action.step_sequence,
            step_name=action.step_name,
            required_role=action.required_role,
            sla_deadline=action.sla_deadline,
            escalated=action.escalated_from is not None,
        )

    # Private helper methods

    def _delete_instance(self, instance: ApprovalInstance) -> None:
        for data in self.storage.find(ACTIONS_TABLE, {'instance_id': instance.id}):
            self.storage.delete(ACTIONS_TABLE, data['id'])
        self.storage.delete(INSTANCES_TABLE, instance.id)


def _snapshot_context(snapshot: Optional[EntitySnapshot]) -> Dict[str, Any]:
    if snapshot is None:
        return {}
    context = {
        'value': snapshot.value,
        'department': snapshot.department,
        'risk_level': snapshot.risk_level,
        'project_type': snapshot.project_type,
    }
    context = {k: v for k, v in context.items() if v is not None}
    if snapshot.extra:
        context['extra'] = snapshot.extra
    return context
