"""
Driver-side flows
=================

Availability requests, answering offers, dropping out and running the
journey itself.  As with the passenger flows, each call commits its own
transaction and hands back the events to dispatch afterwards.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from journeys.domain.entities import (
    CreatedRequests,
    DriverRequestDraft,
    FlowResult,
    StatusChange,
)
from journeys.domain.enums import (
    ADMIN_ROLES,
    OPEN_DECISION_STATUSES,
    PASSENGER_CANCELLATION_STATUSES,
    ActorRole,
    EntityKind,
    JourneyStatus,
    MessageType,
    SeenState,
    allowed_source_statuses,
    coerce_status,
)
from journeys.domain.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from journeys.domain.events import Outbox
from journeys.infrastructure.models import DriverRequestModel
from journeys.infrastructure.repositories import (
    DecisionParties,
    DriverRequestRepository,
    JourneyDecisionRepository,
    JourneyRepository,
    PassengerRequestRepository,
    VehicleRepository,
)
from journeys.infrastructure.transaction import run_in_session, run_in_transaction
from journeys.services.audit import (
    DRIVER_REQUEST_CONTEXT,
    cancellation_payload,
    record_cancellation,
)
from journeys.services.matching import MatchingEngine
from journeys.services.transitions import TransitionOrchestrator

logger = logging.getLogger(__name__)

# A decision in one of these still ties the driver to a passenger.
_BOUND_STATUSES = OPEN_DECISION_STATUSES | {JourneyStatus.JOURNEY_STARTED}

_SEEN_FLAGS = {
    JourneyStatus.NOT_SELECTED_IN_BID: "not_selected_seen",
    JourneyStatus.REJECTED_BY_PASSENGER: "rejection_seen",
}


class DriverRequestService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: TransitionOrchestrator,
        matching: MatchingEngine,
        *,
        timeout_seconds: float = 15.0,
        driver_response_timeout_minutes: int = 5,
        rematch_batch_size: int = 50,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.matching = matching
        self.timeout_seconds = timeout_seconds
        self.driver_response_timeout = timedelta(minutes=driver_response_timeout_minutes)
        self.rematch_batch_size = rematch_batch_size

    # ── Availability ──────────────────────────────────────────────────

    async def create_driver_request(
        self,
        draft: DriverRequestDraft,
        initial_status: JourneyStatus = JourneyStatus.WAITING,
        *,
        find_passengers: bool = True,
    ) -> CreatedRequests:
        """Open an availability window, or return the one already active."""
        if draft.user_id is None:
            raise ValidationError("user_id is required")
        if coerce_status(initial_status) != JourneyStatus.WAITING:
            raise ValidationError(f"Invalid initial status: {initial_status}")

        async def _create(session: AsyncSession):
            vehicle = await VehicleRepository(session).get_active_for_driver(draft.user_id)
            if vehicle is None:
                raise ForbiddenError("Driver has no active vehicle assignment")
            drivers = DriverRequestRepository(session)
            active = await drivers.get_active_for_user(draft.user_id)
            if active is not None:
                return active, False, vehicle.vehicle_type_id
            request = await drivers.create(
                DriverRequestModel(
                    user_id=draft.user_id,
                    origin_lat=draft.origin_lat,
                    origin_lng=draft.origin_lng,
                    origin_place=draft.origin_place,
                    status=int(JourneyStatus.WAITING),
                    cancellation_seen=SeenState.UNSET,
                    created_by=draft.created_by if draft.created_by is not None else draft.user_id,
                )
            )
            return request, True, vehicle.vehicle_type_id

        request, created, vehicle_type_id = await run_in_transaction(
            self.session_factory,
            _create,
            timeout_seconds=self.timeout_seconds,
            name="create_driver_request",
        )
        if not created:
            logger.info("Driver %s already has active request %s", draft.user_id, request.id)
            return CreatedRequests(requests=[request], created=False)

        matches = []
        if find_passengers:
            matches = await self.matching.match_pending(
                vehicle_type_id=vehicle_type_id, limit=self.rematch_batch_size
            )
        if any(
            decision.driver_request_id == request.id
            for match in matches
            for decision in match.decisions
        ):
            request.status = int(JourneyStatus.REQUESTED)
        events = [event for match in matches for event in match.events]
        return CreatedRequests(requests=[request], matches=matches, events=events)

    async def get_driver_request(self, driver_request_id: int) -> DriverRequestModel:
        async with self.session_factory() as session:
            request = await DriverRequestRepository(session).get_by_id(driver_request_id)
        if request is None:
            raise NotFoundError("Driver request not found")
        return request

    # ── Offers ────────────────────────────────────────────────────────

    async def accept_passenger_request(
        self,
        journey_decision_id: int,
        driver_user_id: int,
        shipping_cost_by_driver: Optional[float] = None,
    ) -> FlowResult:
        """The driver answers an offer, optionally quoting a price."""

        async def _accept(session: AsyncSession) -> FlowResult:
            parties = await _load_parties(session, journey_decision_id)
            _ensure_driver(parties, driver_user_id)
            if parties.decision.status != JourneyStatus.REQUESTED:
                raise InvalidStateTransition("This offer is no longer waiting for an answer")

            result = await self.orchestrator.apply_journey_status(
                StatusChange(
                    JourneyStatus.ACCEPTED_BY_DRIVER,
                    passenger_request_id=parties.passenger_request.id,
                    journey_decision_id=parties.decision.id,
                    driver_request_id=parties.driver_request.id,
                    shipping_cost_by_driver=shipping_cost_by_driver,
                ),
                session=session,
            )
            if not result.rows(EntityKind.JOURNEY_DECISION):
                raise InvalidStateTransition("This offer is no longer waiting for an answer")

            outbox = Outbox()
            outbox.notify_passenger(
                parties.passenger_phone,
                MessageType.DRIVER_ACCEPTED_SHIPPER_REQUEST,
                _payload(
                    MessageType.DRIVER_ACCEPTED_SHIPPER_REQUEST,
                    parties,
                    shipping_cost_by_driver=shipping_cost_by_driver,
                ),
            )
            return FlowResult(
                status=JourneyStatus.ACCEPTED_BY_DRIVER,
                rows_changed=result.rows_changed,
                events=outbox.events,
            )

        return await run_in_transaction(
            self.session_factory,
            _accept,
            timeout_seconds=self.timeout_seconds,
            name="accept_passenger_request",
        )

    async def no_answer_from_driver(self, journey_decision_id: int) -> FlowResult:
        """Expire an unanswered offer and requeue the passenger if needed."""

        async def _expire(session: AsyncSession) -> FlowResult:
            parties = await _load_parties(session, journey_decision_id)
            if parties.decision.status != JourneyStatus.REQUESTED:
                return FlowResult(
                    status=JourneyStatus(parties.decision.status),
                    data={"driver_answered": True},
                )

            passenger_request_id = parties.passenger_request.id
            other_offers = (
                await JourneyDecisionRepository(session).count_for_passenger(
                    passenger_request_id, OPEN_DECISION_STATUSES
                )
                - 1
            )
            result = await self.orchestrator.apply_journey_status(
                StatusChange(
                    JourneyStatus.NO_ANSWER_FROM_DRIVER,
                    passenger_request_id=passenger_request_id,
                    journey_decision_id=parties.decision.id,
                    driver_request_id=parties.driver_request.id,
                ),
                session=session,
            )
            if not result.rows(EntityKind.JOURNEY_DECISION):
                raise ConflictError("Offer was answered while expiring it")

            requeued = 0
            if other_offers <= 0:
                requeued = await PassengerRequestRepository(session).update_status(
                    passenger_request_id,
                    JourneyStatus.WAITING,
                    sources=allowed_source_statuses(
                        JourneyStatus.WAITING, EntityKind.PASSENGER_REQUEST
                    ),
                )

            outbox = Outbox()
            outbox.notify_driver(
                parties.driver_phone,
                MessageType.DRIVER_NOT_ANSWERED,
                _payload(MessageType.DRIVER_NOT_ANSWERED, parties),
            )
            if requeued:
                outbox.notify_passenger(
                    parties.passenger_phone,
                    MessageType.REQUEST_OTHER_DRIVER,
                    _payload(MessageType.REQUEST_OTHER_DRIVER, parties),
                )
            return FlowResult(
                status=JourneyStatus.NO_ANSWER_FROM_DRIVER,
                rows_changed=result.rows_changed + requeued,
                events=outbox.events,
                data={
                    "passenger_request_id": passenger_request_id,
                    "requeued": bool(requeued),
                },
            )

        return await run_in_transaction(
            self.session_factory,
            _expire,
            timeout_seconds=self.timeout_seconds,
            name=f"no_answer_from_driver({journey_decision_id})",
        )

    async def find_timed_out_decisions(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> list[int]:
        cutoff = (now or datetime.now(timezone.utc)) - self.driver_response_timeout
        async with self.session_factory() as session:
            return await JourneyDecisionRepository(session).list_timed_out(cutoff, limit)

    # ── Cancellation ──────────────────────────────────────────────────

    async def cancel_driver_request(
        self,
        owner_user_id: int,
        actor_user_id: int,
        actor_role: ActorRole = ActorRole.DRIVER,
        reason_type_id: Optional[int] = None,
    ) -> FlowResult:
        """Withdraw a driver's active request and release its passenger.

        Before acceptance this is a rejection by the driver; afterwards it is
        a cancellation.  Administrators cancelling for a driver always record
        ``CANCELLED_BY_ADMIN``.
        """
        is_owner = owner_user_id == actor_user_id
        if not is_owner and actor_role not in ADMIN_ROLES:
            raise ForbiddenError("You are not allowed to cancel this request")

        async def _cancel(session: AsyncSession):
            drivers = DriverRequestRepository(session)
            decisions = JourneyDecisionRepository(session)
            request = await drivers.get_active_for_user(owner_user_id)
            if request is None:
                raise NotFoundError("No active driver request")

            if not is_owner:
                status = JourneyStatus.CANCELLED_BY_ADMIN
            elif request.status >= JourneyStatus.ACCEPTED_BY_DRIVER:
                status = JourneyStatus.CANCELLED_BY_DRIVER
            else:
                status = JourneyStatus.REJECTED_BY_DRIVER

            decision = await decisions.get_latest_for_driver_request(
                request.id, _BOUND_STATUSES
            )
            parties = await decisions.get_with_parties(decision.id) if decision else None
            journey = (
                await JourneyRepository(session).get_by_decision(decision.id)
                if decision
                else None
            )

            result = await self.orchestrator.apply_journey_status(
                StatusChange(
                    status,
                    driver_request_id=request.id,
                    journey_id=journey.id if journey else None,
                ),
                session=session,
            )
            if not result.rows(EntityKind.DRIVER_REQUEST):
                raise ConflictError("Driver request changed while cancelling it")
            rows = result.rows_changed

            outbox = Outbox()
            requeued = 0
            if parties is not None:
                rows += await decisions.update_status(
                    parties.decision.id,
                    status,
                    sources=allowed_source_statuses(status, EntityKind.JOURNEY_DECISION),
                    cancellation_seen_by_passenger=(
                        SeenState.UNSET
                        if status == JourneyStatus.REJECTED_BY_DRIVER
                        else SeenState.PENDING
                    ),
                )
                passenger_request_id = parties.passenger_request.id
                still_open = await decisions.count_for_passenger(
                    passenger_request_id, _BOUND_STATUSES
                )
                if not still_open:
                    requeued = await PassengerRequestRepository(session).update_status(
                        passenger_request_id,
                        JourneyStatus.WAITING,
                        sources=allowed_source_statuses(
                            JourneyStatus.WAITING, EntityKind.PASSENGER_REQUEST
                        ),
                    )
                    rows += requeued
                if status != JourneyStatus.REJECTED_BY_DRIVER:
                    outbox.notify_passenger(
                        parties.passenger_phone,
                        MessageType.DRIVER_CANCELLED_REQUEST,
                        _payload(MessageType.DRIVER_CANCELLED_REQUEST, parties),
                    )
            return request.id, status, rows, bool(requeued), outbox

        driver_request_id, status, rows, requeued, outbox = await run_in_transaction(
            self.session_factory,
            _cancel,
            timeout_seconds=self.timeout_seconds,
            name=f"cancel_driver_request(user={owner_user_id})",
        )
        audited = await record_cancellation(
            self.session_factory,
            context_id=driver_request_id,
            context_type=DRIVER_REQUEST_CONTEXT,
            cancellation_status=status,
            canceled_by=actor_user_id,
            canceled_by_role=actor_role,
            reason_type_id=reason_type_id,
        )
        if audited:
            outbox.notify_admin(
                MessageType.CANCELLED_JOURNEY,
                cancellation_payload(
                    context_id=driver_request_id,
                    context_type=DRIVER_REQUEST_CONTEXT,
                    cancellation_status=status,
                    canceled_by=actor_user_id,
                    canceled_by_role=actor_role,
                ),
            )
        return FlowResult(
            status=status,
            rows_changed=rows,
            events=outbox.events,
            data={
                "driver_request_id": driver_request_id,
                "requeued": requeued,
                "audit_recorded": audited,
            },
        )

    # ── Journey ───────────────────────────────────────────────────────

    async def start_journey(self, journey_decision_id: int, driver_user_id: int) -> FlowResult:
        """Create the journey and move every party to ``JOURNEY_STARTED``."""

        async def _start(session: AsyncSession) -> FlowResult:
            parties = await _load_parties(session, journey_decision_id)
            _ensure_driver(parties, driver_user_id)
            if parties.decision.status != JourneyStatus.ACCEPTED_BY_PASSENGER:
                raise InvalidStateTransition("This journey is not accepted by the passenger")

            journeys = JourneyRepository(session)
            journey = await journeys.get_by_decision(parties.decision.id)
            if journey is None:
                journey = await journeys.create(
                    journey_decision_id=parties.decision.id,
                    status=JourneyStatus.JOURNEY_STARTED,
                    start_time=datetime.now(timezone.utc),
                    created_by=driver_user_id,
                )

            result = await self.orchestrator.apply_journey_status(
                StatusChange(
                    JourneyStatus.JOURNEY_STARTED,
                    passenger_request_id=parties.passenger_request.id,
                    journey_decision_id=parties.decision.id,
                    driver_request_id=parties.driver_request.id,
                ),
                session=session,
            )
            if not result.rows(EntityKind.JOURNEY_DECISION):
                raise InvalidStateTransition("This journey is not accepted by the passenger")

            outbox = Outbox()
            outbox.notify_passenger(
                parties.passenger_phone,
                MessageType.JOURNEY_STARTED,
                _payload(MessageType.JOURNEY_STARTED, parties, journey_id=journey.id),
            )
            return FlowResult(
                status=JourneyStatus.JOURNEY_STARTED,
                rows_changed=result.rows_changed,
                events=outbox.events,
                data={"journey_id": journey.id},
            )

        return await run_in_transaction(
            self.session_factory,
            _start,
            timeout_seconds=self.timeout_seconds,
            name="start_journey",
        )

    async def complete_journey(
        self,
        journey_decision_id: int,
        actor_user_id: int,
        actor_role: ActorRole = ActorRole.DRIVER,
    ) -> FlowResult:
        """Finish a running journey; stamps its end time."""

        async def _complete(session: AsyncSession) -> FlowResult:
            parties = await _load_parties(session, journey_decision_id)
            journey = await JourneyRepository(session).get_by_decision(parties.decision.id)
            if journey is None:
                raise NotFoundError("Journey not found")
            is_driver = parties.driver_request.user_id == actor_user_id
            if not is_driver and actor_role not in ADMIN_ROLES:
                raise ForbiddenError("Only the driver or an administrator may complete")
            if journey.status != JourneyStatus.JOURNEY_STARTED:
                raise InvalidStateTransition("Journey is not in progress")

            target = (
                JourneyStatus.JOURNEY_COMPLETED
                if is_driver
                else JourneyStatus.COMPLETED_BY_ADMIN
            )
            result = await self.orchestrator.apply_journey_status(
                StatusChange(
                    target,
                    journey_id=journey.id,
                    passenger_request_id=parties.passenger_request.id,
                    journey_decision_id=parties.decision.id,
                    driver_request_id=parties.driver_request.id,
                ),
                session=session,
            )
            if not result.rows(EntityKind.JOURNEY):
                raise InvalidStateTransition("Journey is not in progress")

            outbox = Outbox()
            outbox.notify_passenger(
                parties.passenger_phone,
                MessageType.JOURNEY_COMPLETED,
                _payload(MessageType.JOURNEY_COMPLETED, parties, journey_id=journey.id),
            )
            return FlowResult(
                status=target,
                rows_changed=result.rows_changed,
                events=outbox.events,
                data={"journey_id": journey.id},
            )

        return await run_in_transaction(
            self.session_factory,
            _complete,
            timeout_seconds=self.timeout_seconds,
            name="complete_journey",
        )

    # ── Acknowledgements ──────────────────────────────────────────────

    async def mark_negative_status_seen(
        self, driver_request_id: int, user_id: int
    ) -> FlowResult:
        """The driver acknowledges how their last request ended."""

        async def _mark(session: AsyncSession) -> FlowResult:
            drivers = DriverRequestRepository(session)
            request = await drivers.get_by_id(driver_request_id)
            if request is None:
                raise NotFoundError("Driver request not found")
            if request.user_id != user_id:
                raise ForbiddenError("This driver request belongs to another user")

            status = JourneyStatus(request.status)
            if status in PASSENGER_CANCELLATION_STATUSES:
                rows = await drivers.set_cancellation_seen(request.id, SeenState.ACKNOWLEDGED)
            elif status in _SEEN_FLAGS:
                decisions = JourneyDecisionRepository(session)
                decision = await decisions.get_latest_for_driver_request(request.id, {status})
                if decision is None:
                    raise NotFoundError("Journey decision not found")
                rows = await decisions.acknowledge(decision.id, _SEEN_FLAGS[status])
            else:
                raise ValidationError(f"Nothing to acknowledge for status {status.name}")
            return FlowResult(status=status, rows_changed=rows)

        return await run_in_session(self.session_factory, _mark)


# ── Helpers ───────────────────────────────────────────────────────────


async def _load_parties(session: AsyncSession, journey_decision_id: int) -> DecisionParties:
    parties = await JourneyDecisionRepository(session).get_with_parties(journey_decision_id)
    if parties is None:
        raise NotFoundError("Journey decision not found")
    return parties


def _ensure_driver(parties: DecisionParties, driver_user_id: int) -> None:
    if parties.driver_request.user_id != driver_user_id:
        raise ForbiddenError("This offer belongs to another driver")


def _payload(message_type: MessageType, parties: DecisionParties, **extra: Any) -> dict[str, Any]:
    payload = {
        "message_type": message_type.value,
        "journey_decision_id": parties.decision.id,
        "passenger_request_id": parties.passenger_request.id,
        "driver_request_id": parties.driver_request.id,
        "origin_place": parties.passenger_request.origin_place,
        "destination_place": parties.passenger_request.destination_place,
    }
    payload.update(extra)
    return payload
