"""
Step Decision Module

Records an approver's APPROVE or REJECT decision on a step and moves the
owning instance forward or terminates it.
"""

from enum import Enum
from typing import Any, Optional, Union

from .approvals import (
    ActionStatus, ApprovalAction, ApprovalInstance, ApprovalInstanceManager, InstanceStatus
)
from .exceptions import ConflictError, InvalidStateError, NotFoundError, UnauthorizedError
from .logging_config import get_logger, log_action
from .notifications import NotificationOutbox
from .ports import DecisionOutcome


class Decision(Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"

    @classmethod
    def parse(cls, value: Union['Decision', str]) -> 'Decision':
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().upper()
        aliases = {"APPROVED": "APPROVE", "REJECTED": "REJECT"}
        try:
            return cls(aliases.get(normalized, normalized))
        except ValueError:
            raise ValueError(f"Invalid decision: {value}")


class StepDecisionProcessor:
    """Applies approver decisions to approval actions"""

    def __init__(self, manager: ApprovalInstanceManager):
        self.manager = manager
        self.storage = manager.storage
        self.logger = get_logger("procurement_approvals.decisions")

    def process_step_decision(
        self,
        step_id: str,
        approver_id: str,
        decision: Union[Decision, str],
        comments: Optional[str] = None,
        signature_data: Optional[Any] = None,
        expected_version: Optional[int] = None
    ) -> ApprovalAction:
        """
        Record a decision on a step.

        Only the assigned approver may decide, and only while the step is
        PENDING on a live instance. Re-submitting a decision on an already
        decided step raises InvalidStateError rather than re-applying it.

        expected_version is the action version the caller decided against.
        When omitted, the version read before the transaction opens is used,
        so a decision that loses a race with another writer on the same
        step raises ConflictError.
        """
        decision = Decision.parse(decision)
        outbox = NotificationOutbox(self.manager.notifier)

        if expected_version is None:
            observed = self.manager.get_action(step_id)
            if observed:
                expected_version = observed.version

        with self.storage.atomic():
            action = self._decide(step_id, str(approver_id), decision, comments,
                                  signature_data, expected_version, outbox)

        outbox.flush()
        return action

    def approve_step(
        self,
        instance_id: str,
        step_id: str,
        approver_id: str,
        comments: Optional[str] = None,
        signature_data: Optional[Any] = None,
        expected_version: Optional[int] = None
    ) -> ApprovalInstance:
        self._require_step_of_instance(instance_id, step_id)
        self.process_step_decision(step_id, approver_id, Decision.APPROVE,
                                   comments, signature_data, expected_version)
        return self.manager.require_instance(instance_id)

    def reject_step(
        self,
        instance_id: str,
        step_id: str,
        approver_id: str,
        comments: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> ApprovalInstance:
        self._require_step_of_instance(instance_id, step_id)
        self.process_step_decision(step_id, approver_id, Decision.REJECT, comments,
                                   expected_version=expected_version)
        return self.manager.require_instance(instance_id)

    # Private helper methods

    def _decide(
        self,
        step_id: str,
        approver_id: str,
        decision: Decision,
        comments: Optional[str],
        signature_data: Optional[Any],
        expected_version: Optional[int],
        outbox: NotificationOutbox
    ) -> ApprovalAction:
        action = self.manager.get_action(step_id)
        if not action:
            raise NotFoundError(f"Approval step {step_id} not found")

        if action.approver_id is None or action.approver_id != approver_id:
            raise UnauthorizedError(
                f"User {approver_id} is not the assigned approver for step {step_id}"
            )

        if expected_version is not None and action.version != expected_version:
            raise ConflictError(
                f"Approval step {step_id} was modified concurrently "
                f"(expected version {expected_version}, found {action.version})"
            )

        if action.status != ActionStatus.PENDING:
            raise InvalidStateError(
                f"Approval step {step_id} has already been {action.status.value.lower()}"
            )

        instance = self.manager.require_instance(action.instance_id)
        if instance.is_terminal:
            raise InvalidStateError(
                f"Approval instance {instance.id} is already {instance.status.value}"
            )

        now = self.manager.clock()
        action.comments = comments
        action.updated_at = now
        if decision == Decision.APPROVE:
            action.status = ActionStatus.APPROVED
            action.signed_at = now
            action.signature_data = signature_data
        else:
            action.status = ActionStatus.REJECTED
        self.manager.save_action(action)

        log_action(
            self.logger, "info",
            f"Step {action.step_sequence} '{action.step_name}' {action.status.value.lower()} "
            f"by {approver_id}",
            user_id=approver_id, action="step_decided", resource=instance.id,
            extra={'action_id': action.id, 'decision': decision.value}
        )

        if decision == Decision.APPROVE:
            instance = self.manager.advance(instance, approver_id, outbox)
        else:
            instance.status = InstanceStatus.REJECTED
            instance.completed_at = now
            instance.updated_at = now
            self.manager.save_instance(instance)

            log_action(
                self.logger, "info",
                f"Approval workflow rejected for {instance.entity_type.value} {instance.entity_id}",
                user_id=approver_id, action="workflow_rejected", resource=instance.id,
                extra={'step_sequence': action.step_sequence}
            )

        outbox.decision(instance.initiator_id, DecisionOutcome(
            instance_id=instance.id,
            action_id=action.id,
            entity_type=instance.entity_type.value,
            entity_id=instance.entity_id,
            step_sequence=action.step_sequence,
            decision=action.status.value,
            decided_by=approver_id,
            instance_status=instance.status.value,
            comments=comments,
        ))

        return action

    def _require_step_of_instance(self, instance_id: str, step_id: str) -> None:
        action = self.manager.get_action(step_id)
        if not action or action.instance_id != instance_id:
            raise NotFoundError(
                f"Approval step {step_id} not found on instance {instance_id}"
            )
