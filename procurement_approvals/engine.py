"""
Approval Engine

Wires the approval components to a storage backend and the collaborator
ports, and exposes the operations the HTTP layer and other callers use.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .approvals import (
    ApprovalAction, ApprovalInstance, ApprovalInstanceManager, InstanceStatus, WorkflowStatusView
)
from .conditions import EntitySnapshot
from .config import ApprovalsConfig, get_config
from .decisions import Decision, StepDecisionProcessor
from .directory import HttpActorDirectory, InMemoryActorDirectory
from .escalation import EscalationManager, EscalationResult
from .logging_config import get_logger
from .notifications import LoggingNotifier, WebhookNotifier
from .ports import ActorDirectory, NotifierPort
from .progress import ProgressReport, get_approval_progress
from .selector import WorkflowSelector
from .storage import StorageInterface, create_storage
from .templates import EntityType, WorkflowTemplate, WorkflowTemplateCatalog


class ApprovalEngine:
    """Approval workflow engine with all components initialized"""

    def __init__(
        self,
        storage: StorageInterface,
        directory: ActorDirectory,
        notifier: NotifierPort,
        default_sla_hours: int = 72,
        escalation_sla_hours: int = 24,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.directory = directory
        self.notifier = notifier
        self.logger = get_logger("procurement_approvals.engine")

        self.catalog = WorkflowTemplateCatalog(storage, clock=clock)
        self.selector = WorkflowSelector(self.catalog)
        self.instances = ApprovalInstanceManager(
            storage, self.catalog, directory, notifier,
            default_sla_hours=default_sla_hours, clock=clock
        )
        self.decisions = StepDecisionProcessor(self.instances)
        self.escalations = EscalationManager(
            self.instances, escalation_sla_hours=escalation_sla_hours
        )

    @classmethod
    def from_config(cls, config: Optional[ApprovalsConfig] = None) -> 'ApprovalEngine':
        """Build an engine from configuration"""
        config = config or get_config()

        storage = create_storage(config.storage_backend, config.sqlite_path)

        if config.actor_directory_url:
            directory = HttpActorDirectory(
                base_url=config.actor_directory_url,
                timeout=config.http_timeout,
                api_key=config.actor_directory_api_key or None
            )
        else:
            directory = InMemoryActorDirectory()

        if config.notifier_webhook_url:
            notifier = WebhookNotifier(config.notifier_webhook_url, timeout=config.http_timeout)
        else:
            notifier = LoggingNotifier()

        return cls(
            storage, directory, notifier,
            default_sla_hours=config.default_step_sla_hours,
            escalation_sla_hours=config.escalation_sla_hours
        )

    # Workflow operations

    def submit(
        self,
        entity_type: Union[EntityType, str],
        entity_id: Any,
        entity_data: Optional[Dict[str, Any]],
        initiator_id: str
    ) -> ApprovalInstance:
        """Select the template for an entity and start its approval run"""
        snapshot = EntitySnapshot.from_dict(entity_data)
        template = self.selector.select_workflow(entity_type, snapshot)
        return self.instances.start_workflow(
            entity_type, entity_id, template.id, initiator_id, snapshot
        )

    def select_workflow(self, entity_type: Union[EntityType, str],
                        entity_data: Optional[Dict[str, Any]] = None,
                        context: Optional[Dict[str, Any]] = None) -> WorkflowTemplate:
        return self.selector.select_workflow(entity_type, entity_data, context)

    def start_workflow(self, entity_type: Union[EntityType, str], entity_id: Any,
                       template_id: str, initiator_id: str,
                       entity_data: Optional[Dict[str, Any]] = None) -> ApprovalInstance:
        snapshot = EntitySnapshot.from_dict(entity_data) if entity_data is not None else None
        return self.instances.start_workflow(
            entity_type, entity_id, template_id, initiator_id, snapshot
        )

    def advance_to_next_step(self, instance_id: str, actor_id: str) -> ApprovalInstance:
        return self.instances.advance_to_next_step(instance_id, actor_id)

    def reset_workflow(self, entity_type: Union[EntityType, str], entity_id: Any,
                       template_id: str, initiator_id: str,
                       entity_data: Optional[Dict[str, Any]] = None) -> ApprovalInstance:
        snapshot = EntitySnapshot.from_dict(entity_data) if entity_data is not None else None
        return self.instances.reset_workflow(
            entity_type, entity_id, template_id, initiator_id, snapshot
        )

    def get_workflow_status(self, instance_id: str) -> WorkflowStatusView:
        return self.instances.get_workflow_status(instance_id)

    def get_instance_for_entity(self, entity_type: Union[EntityType, str],
                                entity_id: Any) -> Optional[ApprovalInstance]:
        return self.instances.get_instance_for_entity(entity_type, entity_id)

    def list_instances(self, status: Optional[InstanceStatus] = None,
                       entity_type: Optional[EntityType] = None) -> List[ApprovalInstance]:
        return self.instances.list_instances(status=status, entity_type=entity_type)

    def get_pending_approvals(self, user_id: str) -> List[ApprovalAction]:
        return self.instances.get_pending_approvals(user_id)

    def get_approval_progress(self, instance_id: str) -> ProgressReport:
        return get_approval_progress(self.instances, instance_id)

    # Decisions and escalation

    def process_step_decision(self, step_id: str, approver_id: str,
                              decision: Union[Decision, str], comments: Optional[str] = None,
                              signature_data: Optional[Any] = None,
                              expected_version: Optional[int] = None) -> ApprovalAction:
        return self.decisions.process_step_decision(
            step_id, approver_id, decision, comments, signature_data, expected_version
        )

    def approve_step(self, instance_id: str, step_id: str, approver_id: str,
                     comments: Optional[str] = None,
                     signature_data: Optional[Any] = None,
                     expected_version: Optional[int] = None) -> ApprovalInstance:
        return self.decisions.approve_step(
            instance_id, step_id, approver_id, comments, signature_data, expected_version
        )

    def reject_step(self, instance_id: str, step_id: str, approver_id: str,
                    comments: Optional[str] = None,
                    expected_version: Optional[int] = None) -> ApprovalInstance:
        return self.decisions.reject_step(
            instance_id, step_id, approver_id, comments, expected_version
        )

    def escalate_step(self, step_id: str, reason: str,
                      actor_id: Optional[str] = None) -> EscalationResult:
        return self.escalations.escalate_step(step_id, reason, actor_id)

    def find_breached_steps(self, now: Optional[datetime] = None) -> List[ApprovalAction]:
        return self.escalations.find_breached_steps(now)

    def escalate_breached_steps(self, reason: str = "SLA deadline exceeded",
                                actor_id: Optional[str] = None) -> List[EscalationResult]:
        return self.escalations.escalate_breached_steps(reason, actor_id)

    def close(self) -> None:
        """Release storage and HTTP clients"""
        for component in (self.directory, self.notifier):
            close = getattr(component, "close", None)
            if close:
                close()
        self.storage.close()
