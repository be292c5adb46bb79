"""
Matching Engine
===============

Offers a waiting passenger request to compatible idle drivers.

Concurrency safety
------------------
* The candidate scan is a plain, lock-free read (FIFO by driver request id,
  capped at ``candidate_limit``).
* Each candidate is reserved inside its own SAVEPOINT: the decision insert,
  a conditional ``UPDATE driver_requests ... WHERE status = waiting`` and
  the passenger update either all stay or all go.
* Losing a race is not an error.  A driver whose conditional update matches
  zero rows, or a pair that hits the unique constraint on
  ``journey_decisions``, is skipped and the next candidate is tried.
* The first reservation must also move the passenger request out of
  ``waiting``.  If that update matches zero rows the request was cancelled
  after the initial check; the SAVEPOINT is rolled back and the pass ends
  with no offers.

Drivers are only notified after the enclosing transaction commits, and at
most once per invocation.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from journeys.domain.entities import MatchedDriver, MatchResult
from journeys.domain.enums import (
    DecisionActor,
    EntityKind,
    JourneyStatus,
    MessageType,
    allowed_source_statuses,
)
from journeys.domain.errors import NotFoundError, ValidationError
from journeys.domain.events import Outbox
from journeys.infrastructure.models import PassengerRequestModel
from journeys.infrastructure.repositories import (
    DriverCandidate,
    DriverRequestRepository,
    JourneyDecisionRepository,
    PassengerRequestRepository,
)
from journeys.infrastructure.transaction import run_in_transaction

logger = logging.getLogger(__name__)


class _DriverTaken(Exception):
    """A concurrent pass reserved the candidate first."""


class _PassengerGone(Exception):
    """The passenger request left ``waiting`` before the first reservation."""


class MatchingEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        candidate_limit: int = 10,
        timeout_seconds: float = 15.0,
    ):
        self.session_factory = session_factory
        self.candidate_limit = candidate_limit
        self.timeout_seconds = timeout_seconds

    # ── Public API ────────────────────────────────────────────────────

    async def match_waiting_request(
        self,
        passenger_request: PassengerRequestModel,
        *,
        session: Optional[AsyncSession] = None,
        notified_drivers: Optional[set[str]] = None,
    ) -> MatchResult:
        """Run one matching pass for *passenger_request*.

        With a caller *session* the reservations join the caller's
        transaction and the returned events must only be dispatched after
        the caller commits.
        """
        if passenger_request.vehicle_type_id is None:
            raise ValidationError("Passenger request has no vehicle type")

        if session is None:
            matched = await run_in_transaction(
                self.session_factory,
                lambda tx: self._reserve(tx, passenger_request),
                timeout_seconds=self.timeout_seconds,
                name=f"match_waiting_request({passenger_request.id})",
            )
        else:
            matched = await self._reserve(session, passenger_request)

        outbox = Outbox(notified_drivers)
        for driver in matched:
            outbox.notify_driver(
                driver.driver_phone,
                MessageType.DRIVER_FOUND_SHIPPER_REQUEST,
                _offer_payload(passenger_request, driver),
            )
        if matched:
            # The reservation already moved the row; keep the caller's copy in step.
            passenger_request.status = int(JourneyStatus.REQUESTED)
            logger.info(
                "Passenger request %s offered to %d driver(s)",
                passenger_request.id,
                len(matched),
            )
        return MatchResult(
            passenger_request_id=passenger_request.id,
            decisions=matched,
            events=outbox.events,
        )

    async def match_by_id(self, passenger_request_id: int) -> MatchResult:
        async with self.session_factory() as session:
            request = await PassengerRequestRepository(session).get_by_id(
                passenger_request_id
            )
        if request is None:
            raise NotFoundError("Passenger request not found")
        return await self.match_waiting_request(request)

    async def match_pending(
        self,
        *,
        vehicle_type_id: Optional[int] = None,
        limit: int = 50,
        notified_drivers: Optional[set[str]] = None,
    ) -> list[MatchResult]:
        """Re-run matching for the oldest waiting requests, one pass each."""
        async with self.session_factory() as session:
            waiting = await PassengerRequestRepository(session).list_waiting(
                vehicle_type_id=vehicle_type_id, limit=limit
            )
        notified = notified_drivers if notified_drivers is not None else set()
        results = []
        for request in waiting:
            results.append(
                await self.match_waiting_request(request, notified_drivers=notified)
            )
        return results

    # ── Internals ─────────────────────────────────────────────────────

    async def _reserve(
        self, session: AsyncSession, request: PassengerRequestModel
    ) -> list[MatchedDriver]:
        passengers = PassengerRequestRepository(session)
        drivers = DriverRequestRepository(session)

        current = await passengers.get_status(request.id)
        if current != JourneyStatus.WAITING:
            logger.debug(
                "Passenger request %s is %s, not waiting; nothing to match",
                request.id,
                current.name if current else "missing",
            )
            return []

        candidates = await drivers.find_candidates(
            request.vehicle_type_id, self.candidate_limit
        )
        matched: list[MatchedDriver] = []
        for candidate in candidates:
            try:
                decision_id = await self._reserve_candidate(
                    session, request, candidate, claim_passenger=not matched
                )
            except _PassengerGone:
                logger.info(
                    "Passenger request %s left waiting during matching; pass abandoned",
                    request.id,
                )
                return []
            if decision_id is not None:
                matched.append(
                    MatchedDriver(
                        journey_decision_id=decision_id,
                        driver_request_id=candidate.driver_request_id,
                        driver_user_id=candidate.driver_user_id,
                        driver_name=candidate.driver_name,
                        driver_phone=candidate.driver_phone,
                        vehicle_id=candidate.vehicle_id,
                        license_plate=candidate.license_plate,
                        vehicle_type_id=candidate.vehicle_type_id,
                    )
                )
        return matched

    async def _reserve_candidate(
        self,
        session: AsyncSession,
        request: PassengerRequestModel,
        candidate: DriverCandidate,
        *,
        claim_passenger: bool,
    ) -> Optional[int]:
        """Reserve one driver.

        The first reservation of a pass also claims the passenger request;
        later ones find it already ``requested`` and leave it alone.
        """
        drivers = DriverRequestRepository(session)
        decisions = JourneyDecisionRepository(session)
        passengers = PassengerRequestRepository(session)
        driver_request_id = candidate.driver_request_id

        if await drivers.get_status(driver_request_id) != JourneyStatus.WAITING:
            logger.debug("Driver request %s no longer waiting", driver_request_id)
            return None

        try:
            async with session.begin_nested():
                decision = await decisions.create(
                    passenger_request_id=request.id,
                    driver_request_id=driver_request_id,
                    status=JourneyStatus.REQUESTED,
                    decision_by=DecisionActor.SYSTEM,
                    created_by=request.user_id,
                )
                reserved = await drivers.update_status(
                    driver_request_id,
                    JourneyStatus.REQUESTED,
                    sources=allowed_source_statuses(
                        JourneyStatus.REQUESTED, EntityKind.DRIVER_REQUEST
                    ),
                )
                if not reserved:
                    raise _DriverTaken(driver_request_id)
                if claim_passenger:
                    claimed = await passengers.update_status(
                        request.id,
                        JourneyStatus.REQUESTED,
                        sources=allowed_source_statuses(
                            JourneyStatus.REQUESTED, EntityKind.PASSENGER_REQUEST
                        ),
                    )
                    if not claimed:
                        raise _PassengerGone(request.id)
        except IntegrityError:
            logger.info(
                "Pair (%s, %s) already matched by a concurrent pass",
                request.id,
                driver_request_id,
            )
            return None
        except _DriverTaken:
            logger.debug("Driver request %s reserved concurrently", driver_request_id)
            return None
        return decision.id


def _offer_payload(request: PassengerRequestModel, driver: MatchedDriver) -> dict[str, Any]:
    return {
        "message_type": MessageType.DRIVER_FOUND_SHIPPER_REQUEST.value,
        "journey_decision_id": driver.journey_decision_id,
        "status": int(JourneyStatus.REQUESTED),
        "passenger_request": {
            "id": request.id,
            "origin_place": request.origin_place,
            "destination_place": request.destination_place,
            "origin": [request.origin_lat, request.origin_lng],
            "destination": [request.destination_lat, request.destination_lng],
            "shipping_date": request.shipping_date,
            "shipping_cost": request.shipping_cost,
        },
        "driver_request_id": driver.driver_request_id,
        "vehicle": {"id": driver.vehicle_id, "license_plate": driver.license_plate},
    }
