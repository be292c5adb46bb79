"""Post-commit notification events (outbox).

Services never talk to the notification channel while a transaction is
open.  They collect ``NotificationEvent`` values in an ``Outbox`` and hand
the list back to the caller, which drains it once the work is committed.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional

from .enums import MessageType


class Recipient(str, enum.Enum):
    DRIVER = "driver"
    PASSENGER = "passenger"
    ADMIN = "admin"


@dataclass(frozen=True)
class NotificationEvent:
    recipient: Recipient
    message_type: MessageType
    payload: dict[str, Any] = field(default_factory=dict, compare=False)
    phone_number: Optional[str] = None


class Outbox:
    """Ordered event list with per-driver de-duplication.

    *notified_drivers* may be shared between several outboxes of the same
    invocation so a driver is told about one call at most once.
    """

    def __init__(self, notified_drivers: Optional[set[str]] = None):
        self.events: list[NotificationEvent] = []
        self.notified_drivers = (
            notified_drivers if notified_drivers is not None else set()
        )

    def notify_driver(
        self,
        phone_number: Optional[str],
        message_type: MessageType,
        payload: dict[str, Any],
        *,
        deduplicate: bool = True,
    ) -> bool:
        if not phone_number:
            return False
        if deduplicate:
            if phone_number in self.notified_drivers:
                return False
            self.notified_drivers.add(phone_number)
        self.events.append(
            NotificationEvent(Recipient.DRIVER, message_type, payload, phone_number)
        )
        return True

    def notify_passenger(
        self,
        phone_number: Optional[str],
        message_type: MessageType,
        payload: dict[str, Any],
    ) -> bool:
        if not phone_number:
            return False
        self.events.append(
            NotificationEvent(Recipient.PASSENGER, message_type, payload, phone_number)
        )
        return True

    def notify_admin(self, message_type: MessageType, payload: dict[str, Any]) -> None:
        self.events.append(NotificationEvent(Recipient.ADMIN, message_type, payload))

    def __len__(self) -> int:
        return len(self.events)
