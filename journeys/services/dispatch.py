"""Drains outbox events to the notifier once the producing work committed."""

from __future__ import annotations

import logging
from typing import Iterable

from journeys.domain.events import NotificationEvent, Recipient
from journeys.infrastructure.notifier import Notifier

logger = logging.getLogger(__name__)


class EventDispatcher:
    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    async def dispatch(self, events: Iterable[NotificationEvent]) -> int:
        """Deliver *events* in order.  Returns how many were delivered.

        A failed delivery is logged and skipped; the state change that
        produced it is already committed.
        """
        delivered = 0
        for event in events:
            try:
                if event.recipient is Recipient.DRIVER:
                    ok = await self.notifier.notify_driver(event.phone_number, event.payload)
                elif event.recipient is Recipient.PASSENGER:
                    ok = await self.notifier.notify_passenger(
                        event.phone_number, event.payload
                    )
                else:
                    ok = await self.notifier.notify_admin(event.payload)
            except Exception:
                logger.exception(
                    "Dispatching %s to %s failed",
                    event.message_type.value,
                    event.recipient.value,
                )
                continue
            if ok:
                delivered += 1
        if delivered:
            logger.debug("Dispatched %d notification(s)", delivered)
        return delivered
