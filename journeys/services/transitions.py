"""
Transition Orchestrator
=======================

Applies one logical status change to every table it addresses
(``journeys``, ``passenger_requests``, ``journey_decisions``,
``driver_requests``) as a single unit.

* More than one table and no caller session: a transaction is opened and
  the call recurses with it attached.
* Exactly one table: the single UPDATE is already atomic, so it runs on a
  plain borrowed session.
* A caller-supplied session is always reused, so flows can compose several
  transitions into one commit.

Every write is conditional on the status registry.  A write that matches
zero rows is reported in the result and logged as a consistency warning;
it does not abort the sibling writes of the same call.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from journeys.domain.entities import StatusChange, TransitionResult
from journeys.domain.enums import (
    COMPLETION_STATUSES,
    NEGATIVE_ENTRY_STATUSES,
    NEGATIVE_SOURCE_STATUSES,
    PASSENGER_CANCELLATION_STATUSES,
    EntityKind,
    JourneyStatus,
    SeenState,
    allowed_source_statuses,
    coerce_status,
)
from journeys.domain.errors import ValidationError
from journeys.infrastructure.repositories import (
    DriverRequestRepository,
    JourneyDecisionRepository,
    JourneyRepository,
    PassengerRequestRepository,
)
from journeys.infrastructure.transaction import run_in_session, run_in_transaction

logger = logging.getLogger(__name__)

_Write = Callable[[], Awaitable[int]]


class TransitionOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        timeout_seconds: float = 15.0,
    ):
        self.session_factory = session_factory
        self.timeout_seconds = timeout_seconds

    # ── Public API ────────────────────────────────────────────────────

    async def apply_journey_status(
        self, change: StatusChange, session: Optional[AsyncSession] = None
    ) -> TransitionResult:
        target = _validate_target(change.target_status)
        change.target_status = target
        tables = change.addressed_tables()
        if not tables:
            raise ValidationError("At least one journey or request id is required")

        if session is None:
            if len(tables) > 1:
                return await run_in_transaction(
                    self.session_factory,
                    lambda tx: self.apply_journey_status(change, session=tx),
                    timeout_seconds=self.timeout_seconds,
                    name=f"apply_journey_status({target.name})",
                )
            return await run_in_session(
                self.session_factory,
                lambda s: self._write(s, change, tables, self._journey_status_writes),
            )
        return await self._write(session, change, tables, self._journey_status_writes)

    async def apply_negative_status(
        self, change: StatusChange, session: Optional[AsyncSession] = None
    ) -> TransitionResult:
        """Stricter entry point for terminal negative outcomes.

        Every write is additionally limited to rows that are still requested,
        accepted by the driver or accepted by the passenger.
        """
        target = _validate_target(change.target_status)
        if target not in NEGATIVE_ENTRY_STATUSES:
            raise ValidationError(f"Invalid negative status: {int(target)}")
        if change.driver_request_id is None:
            raise ValidationError("driver_request_id is required")
        change.target_status = target
        tables = change.addressed_tables()

        if session is None:
            if len(tables) > 1:
                return await run_in_transaction(
                    self.session_factory,
                    lambda tx: self.apply_negative_status(change, session=tx),
                    timeout_seconds=self.timeout_seconds,
                    name=f"apply_negative_status({target.name})",
                )
            return await run_in_session(
                self.session_factory,
                lambda s: self._write(s, change, tables, self._negative_status_writes),
            )
        return await self._write(session, change, tables, self._negative_status_writes)

    # ── Internals ─────────────────────────────────────────────────────

    async def _write(
        self,
        session: AsyncSession,
        change: StatusChange,
        tables: list[EntityKind],
        build: Callable[[AsyncSession, StatusChange], dict[EntityKind, _Write]],
    ) -> TransitionResult:
        writes = build(session, change)
        result = TransitionResult(target_status=change.target_status)
        # One connection cannot pipeline statements; the writes touch
        # disjoint rows and are all collected before the caller commits.
        for entity in tables:
            result.affected[entity] = await writes[entity]()
        _report_partial(change, result)
        return result

    def _journey_status_writes(
        self, session: AsyncSession, change: StatusChange
    ) -> dict[EntityKind, _Write]:
        target = change.target_status
        previous = change.previous_status
        end_time = (
            datetime.now(timezone.utc) if target in COMPLETION_STATUSES else None
        )
        journeys = JourneyRepository(session)
        passengers = PassengerRequestRepository(session)
        decisions = JourneyDecisionRepository(session)
        drivers = DriverRequestRepository(session)

        return {
            EntityKind.JOURNEY: lambda: journeys.update_status(
                journey_id=change.journey_id,
                target=target,
                sources=allowed_source_statuses(target, EntityKind.JOURNEY),
                previous=previous,
                end_time=end_time,
            ),
            EntityKind.PASSENGER_REQUEST: lambda: passengers.update_status(
                change.passenger_request_id,
                target,
                sources=allowed_source_statuses(target, EntityKind.PASSENGER_REQUEST),
                previous=previous,
            ),
            EntityKind.JOURNEY_DECISION: lambda: decisions.update_status(
                change.journey_decision_id,
                target,
                sources=allowed_source_statuses(target, EntityKind.JOURNEY_DECISION),
                previous=previous,
                shipping_cost_by_driver=change.shipping_cost_by_driver,
                not_selected_seen=(
                    SeenState.PENDING
                    if target == JourneyStatus.NOT_SELECTED_IN_BID
                    else SeenState.UNSET
                ),
            ),
            EntityKind.DRIVER_REQUEST: lambda: drivers.update_status(
                change.driver_request_id,
                target,
                sources=allowed_source_statuses(target, EntityKind.DRIVER_REQUEST),
                previous=previous,
                cancellation_seen=_driver_cancellation_seen(target),
            ),
        }

    def _negative_status_writes(
        self, session: AsyncSession, change: StatusChange
    ) -> dict[EntityKind, _Write]:
        target = change.target_status
        sources = NEGATIVE_SOURCE_STATUSES
        journeys = JourneyRepository(session)
        passengers = PassengerRequestRepository(session)
        decisions = JourneyDecisionRepository(session)
        drivers = DriverRequestRepository(session)

        return {
            EntityKind.JOURNEY: lambda: journeys.update_status(
                journey_id=change.journey_id, target=target, sources=sources
            ),
            EntityKind.PASSENGER_REQUEST: lambda: passengers.update_status(
                change.passenger_request_id, target, sources=sources
            ),
            EntityKind.JOURNEY_DECISION: lambda: decisions.update_status(
                change.journey_decision_id,
                target,
                sources=sources,
                not_selected_seen=(
                    SeenState.PENDING
                    if target == JourneyStatus.NOT_SELECTED_IN_BID
                    else SeenState.UNSET
                ),
                rejection_seen=(
                    SeenState.PENDING
                    if target == JourneyStatus.REJECTED_BY_PASSENGER
                    else SeenState.UNSET
                ),
            ),
            EntityKind.DRIVER_REQUEST: lambda: drivers.update_status(
                change.driver_request_id,
                target,
                sources=sources,
                cancellation_seen=_driver_cancellation_seen(target),
            ),
        }


def _validate_target(value: int | JourneyStatus) -> JourneyStatus:
    status = coerce_status(value)
    if status is None:
        raise ValidationError(f"Unknown journey status: {value}")
    return status


def _driver_cancellation_seen(target: JourneyStatus) -> SeenState:
    if target in PASSENGER_CANCELLATION_STATUSES:
        return SeenState.PENDING
    return SeenState.UNSET


def _report_partial(change: StatusChange, result: TransitionResult) -> None:
    for entity, rows in result.affected.items():
        if rows:
            continue
        if entity in (EntityKind.DRIVER_REQUEST, EntityKind.JOURNEY):
            logger.warning(
                "No %s row moved to %s (decision=%s, driver_request=%s, journey=%s); "
                "stale id or already transitioned",
                entity.value,
                change.target_status.name,
                change.journey_decision_id,
                change.driver_request_id,
                change.journey_id,
            )
        else:
            logger.info(
                "No %s row moved to %s (passenger_request=%s, decision=%s)",
                entity.value,
                change.target_status.name,
                change.passenger_request_id,
                change.journey_decision_id,
            )
