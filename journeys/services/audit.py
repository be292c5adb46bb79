"""Cancellation audit trail: one ``canceled_journeys`` row per context."""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from journeys.domain.enums import ActorRole, JourneyStatus, MessageType
from journeys.infrastructure.models import CanceledJourneyModel
from journeys.infrastructure.repositories import CanceledJourneyRepository
from journeys.infrastructure.transaction import run_in_session

logger = logging.getLogger(__name__)

PASSENGER_REQUEST_CONTEXT = "PassengerRequest"
DRIVER_REQUEST_CONTEXT = "DriverRequest"


async def record_cancellation(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    context_id: int,
    context_type: str,
    cancellation_status: JourneyStatus,
    canceled_by: Optional[int] = None,
    canceled_by_role: Optional[ActorRole] = None,
    reason_type_id: Optional[int] = None,
) -> bool:
    """Write the audit row unless one exists.  Returns True if written."""

    async def _record(session: AsyncSession) -> bool:
        repo = CanceledJourneyRepository(session)
        if await repo.get(context_id, context_type):
            return False
        try:
            async with session.begin_nested():
                await repo.create(
                    CanceledJourneyModel(
                        context_id=context_id,
                        context_type=context_type,
                        cancellation_status=int(cancellation_status),
                        canceled_by=canceled_by,
                        canceled_by_role=canceled_by_role,
                        cancellation_reason_type_id=reason_type_id,
                    )
                )
        except IntegrityError:
            # A concurrent retry got there first.
            return False
        return True

    written = await run_in_session(session_factory, _record)
    if written:
        logger.info("Recorded cancellation of %s %s", context_type, context_id)
    else:
        logger.debug("Cancellation of %s %s already recorded", context_type, context_id)
    return written


def cancellation_payload(
    *,
    context_id: int,
    context_type: str,
    cancellation_status: JourneyStatus,
    canceled_by: Optional[int] = None,
    canceled_by_role: Optional[ActorRole] = None,
) -> dict[str, Any]:
    """Admin message sent once the audit row for a cancellation exists."""
    return {
        "message_type": MessageType.CANCELLED_JOURNEY.value,
        "context_id": context_id,
        "context_type": context_type,
        "cancellation_status": int(cancellation_status),
        "canceled_by": canceled_by,
        "canceled_by_role": canceled_by_role.value if canceled_by_role else None,
    }
