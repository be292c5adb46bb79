"""
Scoped transactions over the async session factory.

``run_in_transaction`` borrows one session, bounds it with two independent
timeouts and always releases it:

* a server-side lock-wait timeout (PostgreSQL ``lock_timeout``, local to
  the transaction), aligned with
* an application-level deadline that cancels the callback if it does not
  finish in time.

Any exception triggers a rollback.  A failing rollback is logged on its own
so the original error is what the caller sees.  Driver errors are re-raised
as ``PersistenceError`` chained to the original.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from journeys.config import settings
from journeys.domain.errors import (
    JourneyError,
    PersistenceError,
    TransactionTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = settings.transaction_timeout_seconds


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    callback: Callable[[AsyncSession], Awaitable[T]],
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    name: str = "transaction",
) -> T:
    """Run *callback* inside one transaction and commit its work.

    The callback receives the transaction's session; every read and write
    belonging to the unit of work must go through it.
    """
    txn_id = f"txn_{uuid.uuid4().hex[:12]}"
    started = time.perf_counter()
    logger.debug("[%s] %s started (timeout=%.1fs)", txn_id, name, timeout_seconds)

    async with session_factory() as session:
        try:
            await _set_lock_timeout(session, timeout_seconds)
            result = await asyncio.wait_for(callback(session), timeout=timeout_seconds)
            await session.commit()
        except asyncio.TimeoutError as exc:
            await _rollback(session, txn_id)
            logger.error(
                "[%s] %s timed out after %.1fs", txn_id, name, timeout_seconds
            )
            raise TransactionTimeoutError(
                f"Transaction timed out after {timeout_seconds:g} seconds"
            ) from exc
        except JourneyError:
            await _rollback(session, txn_id)
            raise
        except SQLAlchemyError as exc:
            await _rollback(session, txn_id)
            logger.error("[%s] %s failed: %s", txn_id, name, exc)
            raise PersistenceError("Database operation failed") from exc
        except BaseException:
            await _rollback(session, txn_id)
            raise

    logger.debug(
        "[%s] %s committed in %.1f ms",
        txn_id,
        name,
        (time.perf_counter() - started) * 1000,
    )
    return result


async def run_in_session(
    session_factory: async_sessionmaker[AsyncSession],
    callback: Callable[[AsyncSession], Awaitable[T]],
) -> T:
    """Borrow a session for a single-statement unit of work and commit it."""
    async with session_factory() as session:
        try:
            result = await callback(session)
            await session.commit()
        except JourneyError:
            await session.rollback()
            raise
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError("Database operation failed") from exc
    return result


# ── Internals ─────────────────────────────────────────────────────────


async def _set_lock_timeout(session: AsyncSession, timeout_seconds: float) -> None:
    if session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT set_config('lock_timeout', :value, true)"),
        {"value": f"{int(timeout_seconds * 1000)}ms"},
    )


async def _rollback(session: AsyncSession, txn_id: str) -> None:
    try:
        await session.rollback()
        logger.warning("[%s] rolled back", txn_id)
    except Exception:
        logger.exception("[%s] rollback failed", txn_id)
