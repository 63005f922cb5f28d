"""
Collaborator ports consumed by the approval engine.

The surrounding procurement system implements these: its user store backs
ActorDirectory and its notification service backs NotifierPort.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .roles import Role


@dataclass(frozen=True)
class UserRef:
    """An active user resolved from the directory"""
    id: str
    name: str = ""
    email: str = ""


@dataclass(frozen=True)
class StepContext:
    """What an approver is told when a step is assigned to them"""
    instance_id: str
    action_id: str
    entity_type: str
    entity_id: str
    step_sequence: int
    step_name: str
    required_role: Role
    sla_deadline: Optional[datetime]
    escalated: bool = False


@dataclass(frozen=True)
class DecisionOutcome:
    """What the requester is told when a decision is recorded"""
    instance_id: str
    action_id: str
    entity_type: str
    entity_id: str
    step_sequence: int
    decision: str
    decided_by: str
    instance_status: str
    comments: Optional[str] = None


class ActorDirectory(ABC):
    """Resolves a role to a concrete approver"""

    @abstractmethod
    def find_active_user_with_role(self, role: Role) -> Optional[UserRef]:
        """
        Return an active user holding the role, or None.

        Raises UpstreamUnavailableError if the directory cannot be reached.
        """
        pass


class NotifierPort(ABC):
    """Receives approver-assigned and decision-recorded events"""

    @abstractmethod
    def notify_assigned(self, user_id: str, context: StepContext) -> None:
        pass

    @abstractmethod
    def notify_decision(self, requester_id: str, outcome: DecisionOutcome) -> None:
        pass
