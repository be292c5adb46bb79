"""
Notifier adapter: publishes state-change events to Redis pub/sub.

Each party listens on its own channel (``<prefix>:driver:<phone>``,
``<prefix>:passenger:<phone>``, ``<prefix>:admin``); the real-time gateway
that pushes to devices subscribes there.  Delivery is fire-and-forget:
failures are logged and swallowed so they can never roll back or block
the business operation that produced the event.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

_PHONE_RE = re.compile(r"^\d{9,15}$")


class Notifier(Protocol):
    async def notify_driver(self, phone_number: str, payload: dict[str, Any]) -> bool: ...

    async def notify_passenger(self, phone_number: str, payload: dict[str, Any]) -> bool: ...

    async def notify_admin(self, payload: dict[str, Any]) -> bool: ...


def normalize_phone(phone_number: Optional[str]) -> Optional[str]:
    """Strip formatting; return ``None`` unless 9-15 digits remain."""
    if not phone_number:
        return None
    digits = re.sub(r"\D", "", str(phone_number))
    return digits if _PHONE_RE.match(digits) else None


class RedisNotifier:
    def __init__(self, client: aioredis.Redis, channel_prefix: str = "notifications"):
        self.redis = client
        self.prefix = channel_prefix

    async def notify_driver(self, phone_number: str, payload: dict[str, Any]) -> bool:
        return await self._notify_party("driver", phone_number, payload)

    async def notify_passenger(self, phone_number: str, payload: dict[str, Any]) -> bool:
        return await self._notify_party("passenger", phone_number, payload)

    async def notify_admin(self, payload: dict[str, Any]) -> bool:
        return await self._publish(f"{self.prefix}:admin", payload)

    # ── Internals ─────────────────────────────────────────────────────

    async def _notify_party(
        self, party: str, phone_number: str, payload: dict[str, Any]
    ) -> bool:
        phone = normalize_phone(phone_number)
        if phone is None:
            logger.warning("Skipping %s notification: invalid phone %r", party, phone_number)
            return False
        return await self._publish(f"{self.prefix}:{party}:{phone}", payload)

    async def _publish(self, channel: str, payload: dict[str, Any]) -> bool:
        try:
            await self.redis.publish(channel, json.dumps(payload, default=str))
        except Exception:
            logger.exception("Notification to %s failed", channel)
            return False
        return True
