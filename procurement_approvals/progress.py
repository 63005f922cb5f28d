"""
Progress and SLA reporting for approval instances.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from .approvals import ActionStatus, ApprovalAction, ApprovalInstanceManager, latest_actions
from .storage import serialize_value


@dataclass
class SLAStatus:
    is_breached: bool
    breached_steps: List[str] = field(default_factory=list)
    next_deadline: Optional[datetime] = None


@dataclass
class ProgressReport:
    """Snapshot of how far an instance has come"""
    instance_id: str
    status: str
    current_step: int
    total_steps: int
    completed_steps: int
    completion_percentage: int
    sla_status: SLAStatus
    steps: List[ApprovalAction]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instance_id': self.instance_id,
            'status': self.status,
            'current_step': self.current_step,
            'total_steps': self.total_steps,
            'completed_steps': self.completed_steps,
            'completion_percentage': self.completion_percentage,
            'sla_status': serialize_value({
                'is_breached': self.sla_status.is_breached,
                'breached_steps': self.sla_status.breached_steps,
                'next_deadline': self.sla_status.next_deadline,
            }),
            'steps': [step.to_dict() for step in self.steps],
        }


_COMPLETED = {ActionStatus.APPROVED, ActionStatus.ESCALATED}


def get_approval_progress(manager: ApprovalInstanceManager, instance_id: str,
                          now: Optional[datetime] = None) -> ProgressReport:
    """
    Build the progress report for an instance.

    A sequence counts as completed when its latest action is APPROVED or
    ESCALATED; the percentage is rounded half-up to a whole number.
    """
    instance = manager.require_instance(instance_id)
    actions = manager.get_actions(instance_id)
    now = now or manager.clock()

    completed = sum(
        1 for action in latest_actions(actions).values() if action.status in _COMPLETED
    )

    percentage = 0
    if instance.total_steps:
        percentage = int(
            (Decimal(completed) * 100 / Decimal(instance.total_steps))
            .quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )

    pending = [
        action for action in actions
        if action.status == ActionStatus.PENDING and action.sla_deadline is not None
    ]
    breached = [action.id for action in pending if action.sla_deadline < now]
    next_deadline = min((action.sla_deadline for action in pending), default=None)

    return ProgressReport(
        instance_id=instance.id,
        status=instance.status.value,
        current_step=instance.current_step_index,
        total_steps=instance.total_steps,
        completed_steps=completed,
        completion_percentage=percentage,
        sla_status=SLAStatus(
            is_breached=bool(breached),
            breached_steps=breached,
            next_deadline=next_deadline,
        ),
        steps=actions,
    )
