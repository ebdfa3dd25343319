"""
Notification Module

Best-effort notifications fired after workflow transitions. The engine only
knows "event + payload"; delivery belongs to the sinks. A failed or raising
sink is logged and never affects the financial operation that triggered it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import threading

import requests

from .logging_config import get_logger
from .rbac import Role
from .storage import StorageInterface, to_storable


class NotificationEvent(Enum):
    """Events the engine notifies about"""
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_VALIDATED = "transaction_validated"
    TRANSACTION_REJECTED = "transaction_rejected"
    TRANSACTION_EXECUTED = "transaction_executed"
    TRANSACTION_COMPLETED = "transaction_completed"
    DELETION_REQUESTED = "deletion_requested"
    DELETION_VALIDATED = "deletion_validated"
    EXPENSE_SUBMITTED = "expense_submitted"
    EXPENSE_DECIDED = "expense_decided"
    SETTLEMENT_DECIDED = "settlement_decided"


# Roles interested in each event; the creator or requester is added per payload
EVENT_TARGET_ROLES: Dict[NotificationEvent, Tuple[Role, ...]] = {
    NotificationEvent.TRANSACTION_CREATED: (Role.AUDITOR,),
    NotificationEvent.TRANSACTION_VALIDATED: (Role.CASHIER, Role.EXECUTOR),
    NotificationEvent.TRANSACTION_REJECTED: (Role.CASHIER,),
    NotificationEvent.TRANSACTION_EXECUTED: (Role.CASHIER, Role.AUDITOR),
    NotificationEvent.TRANSACTION_COMPLETED: (Role.AUDITOR, Role.ACCOUNTING),
    NotificationEvent.DELETION_REQUESTED: (Role.ACCOUNTING, Role.DIRECTOR, Role.DELEGATE),
    NotificationEvent.DELETION_VALIDATED: (Role.CASHIER,),
    NotificationEvent.EXPENSE_SUBMITTED: (Role.ACCOUNTING,),
    NotificationEvent.EXPENSE_DECIDED: (Role.DIRECTOR, Role.ACCOUNTING),
    NotificationEvent.SETTLEMENT_DECIDED: (Role.CASHIER, Role.ACCOUNTING),
}


class NotificationSink(ABC):
    """Abstract destination for engine notifications"""

    @abstractmethod
    def send(self, event: NotificationEvent, payload: Dict[str, Any]) -> bool:
        """Deliver a notification. Returns True if successful."""
        pass


class LogNotificationSink(NotificationSink):
    """Writes notifications to the log; used in development"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("forex.notifications.log")

    def send(self, event: NotificationEvent, payload: Dict[str, Any]) -> bool:
        self.logger.info(f"[{event.value}] to {', '.join(payload.get('target_roles', []))}: "
                         f"{payload.get('entity_id')}")
        return True


class WebhookNotificationSink(NotificationSink):
    """POSTs notifications as JSON to an external endpoint"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, event: NotificationEvent, payload: Dict[str, Any]) -> bool:
        response = requests.post(
            self.url,
            json={"event": event.value, "payload": payload},
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return 200 <= response.status_code < 300


@dataclass
class RecordedNotification:
    event: NotificationEvent
    payload: Dict[str, Any]
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RecordingNotificationSink(NotificationSink):
    """Keeps notifications in memory, for in-app display and tests"""

    def __init__(self):
        self._lock = threading.Lock()
        self.notifications: List[RecordedNotification] = []

    def send(self, event: NotificationEvent, payload: Dict[str, Any]) -> bool:
        with self._lock:
            self.notifications.append(RecordedNotification(event, payload))
        return True

    def events(self) -> List[NotificationEvent]:
        with self._lock:
            return [n.event for n in self.notifications]

    def for_role(self, role: Role) -> List[RecordedNotification]:
        with self._lock:
            return [n for n in self.notifications if role.value in n.payload.get('target_roles', [])]


class NotificationDispatcher:
    """
    Fans an event out to every registered sink once the caller's atomic
    unit has committed. Sink failures are logged and swallowed.
    """

    def __init__(self, storage: StorageInterface, sinks: Optional[List[NotificationSink]] = None):
        self.storage = storage
        self.sinks: List[NotificationSink] = list(sinks or [])
        self.logger = get_logger("forex.notifications")

    def register_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    def notify(self, event: NotificationEvent, entity_id: str,
               data: Optional[Dict[str, Any]] = None,
               recipients: Optional[List[str]] = None) -> None:
        """
        Queue a notification for delivery after commit.

        Args:
            event: What happened
            entity_id: Transaction, expense or settlement concerned
            data: Event details
            recipients: Specific user ids to address besides the target roles
        """
        payload = {
            "entity_id": entity_id,
            "target_roles": [role.value for role in EVENT_TARGET_ROLES.get(event, ())],
            "recipients": [r for r in (recipients or []) if r],
            "data": to_storable(data or {}),
        }
        self.storage.on_commit(lambda: self._deliver(event, payload))

    def _deliver(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        for sink in self.sinks:
            try:
                delivered = sink.send(event, payload)
            except Exception:
                self.logger.exception(
                    f"Notification {event.value} for {payload['entity_id']} failed in "
                    f"{type(sink).__name__}"
                )
                continue
            if not delivered:
                self.logger.warning(
                    f"Notification {event.value} for {payload['entity_id']} was not accepted by "
                    f"{type(sink).__name__}"
                )
