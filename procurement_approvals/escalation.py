"""
Escalation Module

Reassigns a step whose SLA has lapsed to the next role up. The lapsed
action is kept as ESCALATED and a replacement action is created at the same
sequence, so the step's full history survives. Detecting breaches is left
to an external poller calling find_breached_steps.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
import uuid

from .approvals import (
    ActionStatus, ApprovalAction, ApprovalInstanceManager, InstanceStatus, latest_actions
)
from .exceptions import ConflictError, InvalidStateError, NotFoundError
from .logging_config import get_logger, log_action
from .notifications import NotificationOutbox
from .roles import escalation_target


@dataclass
class EscalationResult:
    escalated_step: ApprovalAction
    new_step: ApprovalAction


class EscalationManager:
    """Escalates pending steps to a higher authority"""

    def __init__(self, manager: ApprovalInstanceManager, escalation_sla_hours: int = 24):
        self.manager = manager
        self.storage = manager.storage
        self.escalation_sla_hours = escalation_sla_hours
        self.logger = get_logger("procurement_approvals.escalation")

    def escalate_step(self, step_id: str, reason: str,
                      actor_id: Optional[str] = None) -> EscalationResult:
        """Escalate the active step of an instance; the step index does not move"""
        outbox = NotificationOutbox(self.manager.notifier)
        with self.storage.atomic():
            result = self._escalate(step_id, reason, actor_id, outbox)
        outbox.flush()
        return result

    def find_breached_steps(self, now: Optional[datetime] = None) -> List[ApprovalAction]:
        """Assigned PENDING steps of in-progress instances whose deadline has passed"""
        now = now or self.manager.clock()
        breached = []
        for instance in self.manager.list_instances(status=InstanceStatus.IN_PROGRESS):
            sequence = instance.current_sequence
            if sequence is None:
                continue
            action = latest_actions(self.manager.get_actions(instance.id)).get(sequence)
            if (action and action.status == ActionStatus.PENDING and action.approver_id
                    and action.sla_deadline and action.sla_deadline < now):
                breached.append(action)

        return sorted(breached, key=lambda a: a.sla_deadline)

    def escalate_breached_steps(self, reason: str = "SLA deadline exceeded",
                                actor_id: Optional[str] = None) -> List[EscalationResult]:
        """Escalate every breached step, each in its own transaction"""
        results = []
        for action in self.find_breached_steps():
            try:
                results.append(self.escalate_step(action.id, reason, actor_id))
            except (ConflictError, InvalidStateError) as e:
                self.logger.warning(f"Skipped escalation of step {action.id}: {e}")

        if results:
            self.logger.info(f"Escalated {len(results)} breached approval steps")
        return results

    # Private helper methods

    def _escalate(self, step_id: str, reason: str, actor_id: Optional[str],
                  outbox: NotificationOutbox) -> EscalationResult:
        action = self.manager.get_action(step_id)
        if not action:
            raise NotFoundError(f"Approval step {step_id} not found")

        if action.status != ActionStatus.PENDING:
            raise InvalidStateError(
                f"Only pending steps can be escalated; step {step_id} is {action.status.value}"
            )

        instance = self.manager.require_instance(action.instance_id)
        if instance.is_terminal:
            raise InvalidStateError(
                f"Approval instance {instance.id} is already {instance.status.value}"
            )

        if action.approver_id is None or action.step_sequence != instance.current_sequence:
            raise InvalidStateError(
                f"Step {step_id} is not the active step of instance {instance.id}"
            )

        now = self.manager.clock()
        action.status = ActionStatus.ESCALATED
        action.escalated_at = now
        action.comments = reason
        action.updated_at = now
        self.manager.save_action(action)

        target_role = escalation_target(action.required_role)
        fallback_id = str(actor_id) if actor_id else action.approver_id
        approver_id = self.manager.resolve_approver(
            target_role, fallback_id, instance, action.step_sequence
        )

        new_action = ApprovalAction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            instance_id=instance.id,
            step_sequence=action.step_sequence,
            step_name=f"{_base_name(action.step_name)} (Escalated)",
            required_role=target_role,
            status=ActionStatus.PENDING,
            sla_hours=self.escalation_sla_hours,
            is_required=action.is_required,
            approver_id=approver_id,
            sla_deadline=now + timedelta(hours=self.escalation_sla_hours),
            assigned_at=now,
            escalated_from=action.id,
            attempt=action.attempt + 1,
        )
        self.manager.insert_action(new_action)

        # instance version moves with every escalation
        instance.updated_at = now
        self.manager.save_instance(instance)

        outbox.assigned(approver_id, self.manager.step_context(instance, new_action))

        log_action(
            self.logger, "warning",
            f"Step {action.step_sequence} '{action.step_name}' escalated from "
            f"{action.required_role.label} to {target_role.label}: {reason}",
            user_id=str(actor_id) if actor_id else None, action="step_escalated",
            resource=instance.id,
            extra={'escalated_action_id': action.id, 'new_action_id': new_action.id,
                   'approver_id': approver_id}
        )

        return EscalationResult(escalated_step=action, new_step=new_action)


def _base_name(name: str) -> str:
    suffix = " (Escalated)"
    while name.endswith(suffix):
        name = name[:-len(suffix)]
    return name
