"""
Notification Adapters

NotifierPort implementations plus the outbox the engine uses to deliver
notifications only after the state transition that produced them has
committed. Delivery is best-effort: a failed notification is logged for
out-of-band retry and never undoes the transition.
"""

import httpx
import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import UpstreamUnavailableError
from .logging_config import log_action
from .ports import DecisionOutcome, NotifierPort, StepContext
from .storage import serialize_value

logger = logging.getLogger("procurement_approvals.notifications")


class LoggingNotifier(NotifierPort):
    """Logs notifications instead of delivering them (development default)"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("procurement_approvals.notifications.log")

    def notify_assigned(self, user_id: str, context: StepContext) -> None:
        self.logger.info(
            f"Approval step '{context.step_name}' of {context.entity_type} "
            f"{context.entity_id} assigned to {user_id}"
        )

    def notify_decision(self, requester_id: str, outcome: DecisionOutcome) -> None:
        self.logger.info(
            f"Step {outcome.step_sequence} of {outcome.entity_type} {outcome.entity_id} "
            f"{outcome.decision.lower()} by {outcome.decided_by}; notifying {requester_id}"
        )


class WebhookNotifier(NotifierPort):
    """Posts notification events to the notification service"""

    def __init__(self, url: str, timeout: float = 2.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def notify_assigned(self, user_id: str, context: StepContext) -> None:
        self._post({
            "type": "APPROVER_ASSIGNED",
            "recipient_id": user_id,
            "context": serialize_value(asdict(context)),
        })

    def notify_decision(self, requester_id: str, outcome: DecisionOutcome) -> None:
        self._post({
            "type": "DECISION_RECORDED",
            "recipient_id": requester_id,
            "outcome": serialize_value(asdict(outcome)),
        })

    def _post(self, payload: Dict[str, Any]) -> None:
        try:
            response = self._client.post(
                self.url,
                json=payload,
                headers={"Content-Type": "application/json"}
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"Notification service unreachable: {e}") from e

        if response.status_code >= 300:
            raise UpstreamUnavailableError(
                f"Notification service returned HTTP {response.status_code}"
            )

    def close(self) -> None:
        self._client.close()


class RecordingNotifier(NotifierPort):
    """Keeps every notification in memory"""

    def __init__(self):
        self.assigned: List[Tuple[str, StepContext]] = []
        self.decisions: List[Tuple[str, DecisionOutcome]] = []

    def notify_assigned(self, user_id: str, context: StepContext) -> None:
        self.assigned.append((user_id, context))

    def notify_decision(self, requester_id: str, outcome: DecisionOutcome) -> None:
        self.decisions.append((requester_id, outcome))


class NotificationOutbox:
    """Notifications queued during a transaction, sent after it commits"""

    def __init__(self, notifier: NotifierPort):
        self.notifier = notifier
        self._pending: List[Tuple[str, Callable[[], None]]] = []

    def assigned(self, user_id: str, context: StepContext) -> None:
        self._pending.append(
            (f"assigned:{context.action_id}", lambda: self.notifier.notify_assigned(user_id, context))
        )

    def decision(self, requester_id: str, outcome: DecisionOutcome) -> None:
        self._pending.append(
            (f"decision:{outcome.action_id}",
             lambda: self.notifier.notify_decision(requester_id, outcome))
        )

    def __len__(self) -> int:
        return len(self._pending)

    def flush(self) -> int:
        """Deliver queued notifications; returns how many were delivered"""
        delivered = 0
        pending, self._pending = self._pending, []
        for key, send in pending:
            try:
                send()
                delivered += 1
            except UpstreamUnavailableError as e:
                log_action(
                    logger, "warning", f"Notification not delivered: {e}",
                    action="notification_failed", resource=key
                )
            except Exception:
                logger.exception(f"Notifier raised while sending {key}")
        return delivered

    def discard(self) -> None:
        self._pending = []
