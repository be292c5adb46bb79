"""
Passenger-side flows
====================

Creation, bid selection and rejection, cancellation and completion
acknowledgement of passenger requests.  Every flow composes its writes on
one transaction session and returns a ``FlowResult`` whose ``events`` are
to be dispatched by the caller after the call returns (that is, after
commit).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from journeys.domain.entities import (
    CancellationCommand,
    CreatedRequests,
    FlowResult,
    MatchResult,
    PassengerRequestDraft,
    StatusChange,
)
from journeys.domain.enums import (
    ADMIN_ROLES,
    COMPLETION_STATUSES,
    NEGATIVE_SOURCE_STATUSES,
    OPEN_DECISION_STATUSES,
    PASSENGER_CANCELLATION_STATUSES,
    ActorRole,
    EntityKind,
    JourneyStatus,
    MessageType,
    allowed_source_statuses,
    coerce_status,
)
from journeys.domain.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from journeys.domain.events import Outbox
from journeys.infrastructure.models import PassengerRequestModel, RatingModel
from journeys.infrastructure.repositories import (
    JourneyDecisionRepository,
    PassengerRequestRepository,
    RatingRepository,
)
from journeys.infrastructure.transaction import run_in_session, run_in_transaction
from journeys.services.audit import (
    PASSENGER_REQUEST_CONTEXT,
    cancellation_payload,
    record_cancellation,
)
from journeys.services.matching import MatchingEngine
from journeys.services.transitions import TransitionOrchestrator

logger = logging.getLogger(__name__)

_CANCELLATION_MESSAGES = {
    JourneyStatus.CANCELLED_BY_PASSENGER: MessageType.PASSENGER_CANCELLED_REQUEST,
    JourneyStatus.CANCELLED_BY_ADMIN: MessageType.ADMIN_CANCELLED_REQUEST,
    JourneyStatus.CANCELLED_BY_SYSTEM: MessageType.SYSTEM_CANCELLED_REQUEST,
}


class PassengerRequestService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: TransitionOrchestrator,
        matching: MatchingEngine,
        *,
        timeout_seconds: float = 15.0,
        rejection_timeout_seconds: float = 10.0,
        cancellation_timeout_seconds: float = 20.0,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.matching = matching
        self.timeout_seconds = timeout_seconds
        self.rejection_timeout_seconds = rejection_timeout_seconds
        self.cancellation_timeout_seconds = cancellation_timeout_seconds

    # ── Creation & lookup ─────────────────────────────────────────────

    async def create_passenger_request(
        self,
        draft: PassengerRequestDraft,
        initial_status: JourneyStatus = JourneyStatus.WAITING,
    ) -> CreatedRequests:
        """Create the missing requests of a batch and try to match them.

        A batch holds ``number_of_vehicles`` requests per user; calling again
        only tops the batch up.
        """
        if draft.user_id is None:
            raise ValidationError("user_id is required")
        if not draft.batch_id:
            raise ValidationError("batch_id is required")
        if draft.vehicle_type_id is None:
            raise ValidationError("vehicle_type_id is required")
        if draft.number_of_vehicles < 1:
            raise ValidationError("number_of_vehicles must be at least 1")
        status = coerce_status(initial_status)
        if status != JourneyStatus.WAITING:
            raise ValidationError(f"Invalid initial status: {initial_status}")

        async def _create(session: AsyncSession) -> list[PassengerRequestModel]:
            repo = PassengerRequestRepository(session)
            existing = await repo.count_in_batch(draft.user_id, draft.batch_id)
            if existing >= draft.number_of_vehicles:
                raise ValidationError(
                    "All requested vehicles for this batch have already been requested"
                )
            return [
                await repo.create(_build_request(draft, status))
                for _ in range(draft.number_of_vehicles - existing)
            ]

        requests = await run_in_transaction(
            self.session_factory,
            _create,
            timeout_seconds=self.timeout_seconds,
            name="create_passenger_request",
        )
        logger.info(
            "Created %d passenger request(s) in batch %s", len(requests), draft.batch_id
        )

        notified: set[str] = set()
        matches: list[MatchResult] = []
        for request in requests:
            if request.status == JourneyStatus.WAITING:
                matches.append(
                    await self.matching.match_waiting_request(
                        request, notified_drivers=notified
                    )
                )
        events = [event for match in matches for event in match.events]
        return CreatedRequests(requests=requests, matches=matches, events=events)

    async def get_passenger_request(self, passenger_request_id: int) -> PassengerRequestModel:
        async with self.session_factory() as session:
            request = await PassengerRequestRepository(session).get_by_id(
                passenger_request_id
            )
        if request is None:
            raise NotFoundError("Passenger request not found")
        return request

    async def match_passenger_request(self, passenger_request_id: int) -> MatchResult:
        return await self.matching.match_by_id(passenger_request_id)

    async def delete_passenger_request(
        self, passenger_request_id: int, actor_role: ActorRole
    ) -> None:
        """Admin-only physical delete of a request that was never matched."""
        if actor_role not in ADMIN_ROLES:
            raise ForbiddenError("Only administrators may delete passenger requests")

        async def _delete(session: AsyncSession) -> None:
            repo = PassengerRequestRepository(session)
            if await repo.get_by_id(passenger_request_id) is None:
                raise NotFoundError("Passenger request not found")
            decisions = await JourneyDecisionRepository(session).list_for_passenger(
                passenger_request_id
            )
            if decisions:
                raise ConflictError("Passenger request has journey decisions")
            await repo.delete(passenger_request_id)

        await run_in_transaction(
            self.session_factory,
            _delete,
            timeout_seconds=self.timeout_seconds,
            name="delete_passenger_request",
        )

    # ── Bids ──────────────────────────────────────────────────────────

    async def accept_driver_offer(
        self, passenger_request_id: int, journey_decision_id: int, user_id: int
    ) -> FlowResult:
        """The passenger picks one driver; every other open offer loses."""

        async def _accept(session: AsyncSession) -> FlowResult:
            request = await _load_owned(session, passenger_request_id, user_id)
            offers = await JourneyDecisionRepository(session).list_for_passenger(
                request.id,
                {JourneyStatus.REQUESTED, JourneyStatus.ACCEPTED_BY_DRIVER},
            )
            chosen = next(
                ((d, phone) for d, phone in offers if d.id == journey_decision_id), None
            )
            if chosen is None:
                raise NotFoundError("Offer not found for this passenger request")
            chosen_decision, chosen_phone = chosen

            accepted = await self.orchestrator.apply_journey_status(
                StatusChange(
                    JourneyStatus.ACCEPTED_BY_PASSENGER,
                    passenger_request_id=request.id,
                    journey_decision_id=chosen_decision.id,
                    driver_request_id=chosen_decision.driver_request_id,
                ),
                session=session,
            )
            if not accepted.rows(EntityKind.JOURNEY_DECISION):
                raise ConflictError("The selected offer is no longer available")

            outbox = Outbox()
            outbox.notify_driver(
                chosen_phone,
                MessageType.PASSENGER_ACCEPTED_OFFER,
                _decision_payload(MessageType.PASSENGER_ACCEPTED_OFFER, request, chosen_decision.id),
            )
            rows = accepted.rows_changed
            for decision, phone in offers:
                if decision.id == chosen_decision.id:
                    continue
                lost = await self.orchestrator.apply_negative_status(
                    StatusChange(
                        JourneyStatus.NOT_SELECTED_IN_BID,
                        journey_decision_id=decision.id,
                        driver_request_id=decision.driver_request_id,
                    ),
                    session=session,
                )
                rows += lost.rows_changed
                if lost.rows(EntityKind.JOURNEY_DECISION):
                    outbox.notify_driver(
                        phone,
                        MessageType.NOT_SELECTED_IN_BID,
                        _decision_payload(MessageType.NOT_SELECTED_IN_BID, request, decision.id),
                    )
            return FlowResult(
                status=JourneyStatus.ACCEPTED_BY_PASSENGER,
                rows_changed=rows,
                events=outbox.events,
                data={"journey_decision_id": chosen_decision.id},
            )

        return await run_in_transaction(
            self.session_factory,
            _accept,
            timeout_seconds=self.timeout_seconds,
            name="accept_driver_offer",
        )

    async def reject_driver_offer(
        self, passenger_request_id: int, journey_decision_id: int, user_id: int
    ) -> FlowResult:
        """Turn one driver down; requeue the request if no offer is left."""

        async def _reject(session: AsyncSession) -> FlowResult:
            request = await _load_owned(session, passenger_request_id, user_id)
            decisions = JourneyDecisionRepository(session)
            parties = await decisions.get_with_parties(journey_decision_id)
            if parties is None or parties.decision.passenger_request_id != request.id:
                raise NotFoundError("Offer not found for this passenger request")

            open_offers = await decisions.count_for_passenger(
                request.id, OPEN_DECISION_STATUSES
            )
            if parties.decision.status in OPEN_DECISION_STATUSES:
                open_offers -= 1
            requeued = 0
            if open_offers <= 0:
                requeued = await PassengerRequestRepository(session).update_status(
                    request.id,
                    JourneyStatus.WAITING,
                    sources=allowed_source_statuses(
                        JourneyStatus.WAITING, EntityKind.PASSENGER_REQUEST
                    ),
                )

            result = await self.orchestrator.apply_negative_status(
                StatusChange(
                    JourneyStatus.REJECTED_BY_PASSENGER,
                    journey_decision_id=parties.decision.id,
                    driver_request_id=parties.decision.driver_request_id,
                ),
                session=session,
            )
            if not (
                result.rows(EntityKind.DRIVER_REQUEST)
                and result.rows(EntityKind.JOURNEY_DECISION)
            ):
                raise ConflictError("One or more updates failed; offer not rejected")

            outbox = Outbox()
            outbox.notify_driver(
                parties.driver_phone,
                MessageType.PASSENGER_REJECTED_REQUEST,
                _decision_payload(
                    MessageType.PASSENGER_REJECTED_REQUEST, request, parties.decision.id
                ),
            )
            return FlowResult(
                status=JourneyStatus.REJECTED_BY_PASSENGER,
                rows_changed=result.rows_changed + requeued,
                events=outbox.events,
                data={"requeued": bool(requeued)},
            )

        return await run_in_transaction(
            self.session_factory,
            _reject,
            timeout_seconds=self.rejection_timeout_seconds,
            name="reject_driver_offer",
        )

    # ── Cancellation ──────────────────────────────────────────────────

    async def cancel_passenger_request(self, command: CancellationCommand) -> FlowResult:
        """Cancel a request and cascade to every open decision.

        Repeating the call is harmless: the guarded writes match no rows and
        the audit row already exists.
        """
        request = await self.get_passenger_request(command.passenger_request_id)
        is_owner = request.user_id == command.actor_user_id
        if not (is_owner or command.actor_role in ADMIN_ROLES):
            raise ForbiddenError("You are not allowed to cancel this request")

        status = coerce_status(
            command.cancellation_status
            or (
                JourneyStatus.CANCELLED_BY_PASSENGER
                if is_owner
                else JourneyStatus.CANCELLED_BY_ADMIN
            )
        )
        if status not in PASSENGER_CANCELLATION_STATUSES:
            raise ValidationError(f"Invalid cancellation status: {command.cancellation_status}")
        message_type = _CANCELLATION_MESSAGES[status]

        async def _cancel(session: AsyncSession) -> tuple[int, Outbox]:
            rows = await PassengerRequestRepository(session).update_status(
                request.id,
                status,
                sources=allowed_source_statuses(status, EntityKind.PASSENGER_REQUEST),
            )
            outbox = Outbox()
            linked = await JourneyDecisionRepository(session).list_for_passenger(
                request.id, NEGATIVE_SOURCE_STATUSES
            )
            for decision, phone in linked:
                result = await self.orchestrator.apply_negative_status(
                    StatusChange(
                        status,
                        journey_decision_id=decision.id,
                        driver_request_id=decision.driver_request_id,
                    ),
                    session=session,
                )
                rows += result.rows_changed
                if result.rows(EntityKind.JOURNEY_DECISION):
                    outbox.notify_driver(
                        phone,
                        message_type,
                        _decision_payload(message_type, request, decision.id),
                    )
            return rows, outbox

        rows, outbox = await run_in_transaction(
            self.session_factory,
            _cancel,
            timeout_seconds=self.cancellation_timeout_seconds,
            name=f"cancel_passenger_request({request.id})",
        )

        async with self.session_factory() as session:
            current = await PassengerRequestRepository(session).get_status(request.id)
        audited = False
        if current in PASSENGER_CANCELLATION_STATUSES:
            audited = await record_cancellation(
                self.session_factory,
                context_id=request.id,
                context_type=PASSENGER_REQUEST_CONTEXT,
                cancellation_status=current,
                canceled_by=command.actor_user_id,
                canceled_by_role=command.actor_role,
                reason_type_id=command.reason_type_id,
            )
        if audited:
            outbox.notify_admin(
                MessageType.CANCELLED_JOURNEY,
                cancellation_payload(
                    context_id=request.id,
                    context_type=PASSENGER_REQUEST_CONTEXT,
                    cancellation_status=current,
                    canceled_by=command.actor_user_id,
                    canceled_by_role=command.actor_role,
                ),
            )
        if not rows:
            logger.info("Cancel of passenger request %s changed nothing", request.id)
        return FlowResult(
            status=status,
            rows_changed=rows,
            events=outbox.events,
            data={"passenger_request_id": request.id, "audit_recorded": audited},
        )

    # ── Acknowledgements ──────────────────────────────────────────────

    async def acknowledge_completion(
        self,
        passenger_request_id: int,
        user_id: int,
        journey_decision_id: int,
        rating: Optional[int] = None,
        comment: Optional[str] = None,
    ) -> FlowResult:
        """Mark the completion as seen and store at most one rating."""
        if rating is not None and not 1 <= rating <= 5:
            raise ValidationError("rating must be between 1 and 5")

        async def _acknowledge(session: AsyncSession) -> FlowResult:
            request = await _load_owned(session, passenger_request_id, user_id)
            status = JourneyStatus(request.status)
            if status not in COMPLETION_STATUSES:
                raise ConflictError("Journey is not completed yet")
            decision = await JourneyDecisionRepository(session).get_by_id(
                journey_decision_id
            )
            if decision is None or decision.passenger_request_id != request.id:
                raise NotFoundError("Journey decision not found")

            rows = await PassengerRequestRepository(session).mark_completion_seen(
                request.id
            )
            rating_created = False
            ratings = RatingRepository(session)
            if rating is not None and await ratings.get_by_decision(decision.id) is None:
                try:
                    async with session.begin_nested():
                        await ratings.create(
                            RatingModel(
                                journey_decision_id=decision.id,
                                rated_by=user_id,
                                rating=rating,
                                comment=comment,
                            )
                        )
                    rating_created = True
                except IntegrityError:
                    logger.info("Decision %s was rated concurrently", decision.id)
            return FlowResult(
                status=status,
                rows_changed=rows + int(rating_created),
                data={"rating_created": rating_created},
            )

        return await run_in_session(self.session_factory, _acknowledge)

    async def mark_cancellation_seen(
        self, journey_decision_id: int, user_id: int
    ) -> FlowResult:
        """The passenger acknowledges that a driver dropped out."""

        async def _mark(session: AsyncSession) -> FlowResult:
            decisions = JourneyDecisionRepository(session)
            parties = await decisions.get_with_parties(journey_decision_id)
            if parties is None:
                raise NotFoundError("Journey decision not found")
            if parties.passenger_request.user_id != user_id:
                raise ForbiddenError("This decision belongs to another passenger")
            rows = await decisions.acknowledge(
                journey_decision_id, "cancellation_seen_by_passenger"
            )
            return FlowResult(status=JourneyStatus(parties.decision.status), rows_changed=rows)

        return await run_in_session(self.session_factory, _mark)


# ── Helpers ───────────────────────────────────────────────────────────


async def _load_owned(
    session: AsyncSession, passenger_request_id: int, user_id: int
) -> PassengerRequestModel:
    request = await PassengerRequestRepository(session).get_by_id(passenger_request_id)
    if request is None:
        raise NotFoundError("Passenger request not found")
    if request.user_id != user_id:
        raise ForbiddenError("This passenger request belongs to another user")
    return request


def _build_request(draft: PassengerRequestDraft, status: JourneyStatus) -> PassengerRequestModel:
    return PassengerRequestModel(
        user_id=draft.user_id,
        batch_id=draft.batch_id,
        vehicle_type_id=draft.vehicle_type_id,
        origin_lat=draft.origin_lat,
        origin_lng=draft.origin_lng,
        origin_place=draft.origin_place,
        destination_lat=draft.destination_lat,
        destination_lng=draft.destination_lng,
        destination_place=draft.destination_place,
        shippable_item_name=draft.shippable_item_name,
        shippable_item_qty=draft.shippable_item_qty,
        shipping_date=draft.shipping_date,
        delivery_date=draft.delivery_date,
        shipping_cost=draft.shipping_cost,
        status=int(status),
        created_by=draft.created_by if draft.created_by is not None else draft.user_id,
        created_by_role=draft.created_by_role,
    )


def _decision_payload(
    message_type: MessageType, request: PassengerRequestModel, decision_id: int
) -> dict[str, Any]:
    return {
        "message_type": message_type.value,
        "passenger_request_id": request.id,
        "journey_decision_id": decision_id,
        "origin_place": request.origin_place,
        "destination_place": request.destination_place,
    }
