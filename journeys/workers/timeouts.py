"""
Driver Response Timeout Worker
==============================

Runs every ``TIMEOUT_CHECK_INTERVAL_SECONDS`` (default 120 s).

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance sweeps at a time
  across multiple API processes.
* Every expiry goes through the guarded ``NO_ANSWER_FROM_DRIVER``
  transition, so a driver who answers while the sweep runs simply wins:
  the conditional update matches no row and the decision is left alone.

Algorithm per cycle
-------------------
1. Find decisions still ``REQUESTED`` after the response timeout.
2. Expire each one; requeue its passenger request when no other offer
   remains.
3. Re-run matching for the oldest waiting passenger requests.
4. Dispatch the collected notifications.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis

from journeys.config import settings
from journeys.domain.entities import TimeoutSweep
from journeys.domain.errors import JourneyError
from journeys.infrastructure.database import async_session_factory
from journeys.infrastructure.locks import DistributedLock
from journeys.infrastructure.notifier import RedisNotifier
from journeys.infrastructure.redis_client import get_redis
from journeys.services.container import Services, build_services
from journeys.services.dispatch import EventDispatcher

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_timeout_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "Timeout worker started (interval=%ds, response timeout=%dmin)",
        settings.timeout_check_interval_seconds,
        settings.driver_response_timeout_minutes,
    )


async def stop_timeout_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Timeout worker stopped")


async def run_timeout_cycle(
    services: Optional[Services] = None,
    dispatcher: Optional[EventDispatcher] = None,
    redis: Optional[aioredis.Redis] = None,
) -> TimeoutSweep:
    """Execute one sweep.  Skipped when another process holds the lock."""
    redis = redis or await get_redis()
    services = services or build_services(async_session_factory, settings)
    dispatcher = dispatcher or EventDispatcher(
        RedisNotifier(redis, settings.notification_channel_prefix)
    )
    sweep = TimeoutSweep(checked_at=datetime.now(timezone.utc))

    lock = DistributedLock(redis, "journey_timeouts", ttl_seconds=60)
    if not await lock.acquire():
        logger.debug("Lock held by another worker – skipping cycle")
        return sweep

    try:
        expired = await services.drivers.find_timed_out_decisions(now=sweep.checked_at)
        for decision_id in expired:
            try:
                result = await services.drivers.no_answer_from_driver(decision_id)
            except JourneyError as exc:
                logger.warning("Could not expire decision %s: %s", decision_id, exc.message)
                continue
            if not result.data.get("driver_answered"):
                sweep.timed_out += 1
                sweep.events.extend(result.events)

        notified: set[str] = set()
        for match in await services.matching.match_pending(
            limit=settings.rematch_batch_size, notified_drivers=notified
        ):
            if match.matched:
                sweep.rematched += 1
                sweep.events.extend(match.events)
    finally:
        await lock.release()

    await dispatcher.dispatch(sweep.events)
    if sweep.timed_out or sweep.rematched:
        logger.info(
            "Timeout cycle: %d decision(s) expired, %d request(s) re-matched",
            sweep.timed_out,
            sweep.rematched,
        )
    return sweep


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    """Periodic loop: run a sweep then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_timeout_cycle()
        except Exception:
            logger.exception("Unhandled error in timeout cycle")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.timeout_check_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass
