"""
Tests for the driver-side flows.

Covers:
1. One active availability request per driver; matching on creation.
2. Answering offers: acceptance, ownership and expiry of unanswered offers.
3. Dropping out before and after acceptance, and on behalf of a driver.
4. Starting and completing a journey.
5. Acknowledging negative outcomes.
"""

from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import select, update

from journeys.domain.entities import CancellationCommand, DriverRequestDraft
from journeys.domain.enums import ActorRole, JourneyStatus, MessageType, SeenState
from journeys.domain.errors import (
    ForbiddenError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from journeys.domain.events import Recipient
from journeys.infrastructure.models import (
    CanceledJourneyModel,
    DriverRequestModel,
    JourneyDecisionModel,
    JourneyModel,
    PassengerRequestModel,
)
from tests.conftest import create_offer, fetch, status_of


def _draft(user_id) -> DriverRequestDraft:
    return DriverRequestDraft(
        user_id=user_id, origin_lat=19.0760, origin_lng=72.8777, origin_place="Andheri"
    )


async def _accepted_by_passenger(services, offer) -> int:
    decision_id = offer.decision.journey_decision_id
    await services.drivers.accept_passenger_request(decision_id, offer.drivers[0].id, 900.0)
    await services.passengers.accept_driver_offer(
        offer.passenger_request_id, decision_id, offer.passenger.id
    )
    return decision_id


class TestCreateDriverRequest:
    @pytest.mark.asyncio
    async def test_new_request_picks_up_waiting_passengers(
        self, seeder, services, session_factory
    ):
        vehicle_type_id = await seeder.vehicle_type()
        passenger = await seeder.user()
        request_id = await seeder.passenger_request(passenger.id, vehicle_type_id)
        driver, _ = await seeder.driver(vehicle_type_id, with_request=False)

        created = await services.drivers.create_driver_request(_draft(driver.id))

        assert created.created
        driver_request = created.requests[0]
        assert [m.passenger_request_id for m in created.matches if m.matched] == [request_id]
        assert [e.recipient for e in created.events] == [Recipient.DRIVER]
        assert await status_of(session_factory, DriverRequestModel, driver_request.id) == (
            JourneyStatus.REQUESTED
        )

    @pytest.mark.asyncio
    async def test_existing_active_request_is_returned(self, seeder, services):
        vehicle_type_id = await seeder.vehicle_type()
        driver, driver_request_id = await seeder.driver(vehicle_type_id)

        created = await services.drivers.create_driver_request(_draft(driver.id))

        assert created.created is False
        assert created.requests[0].id == driver_request_id

    @pytest.mark.asyncio
    async def test_matching_can_be_skipped(self, seeder, services, session_factory):
        vehicle_type_id = await seeder.vehicle_type()
        passenger = await seeder.user()
        request_id = await seeder.passenger_request(passenger.id, vehicle_type_id)
        driver, _ = await seeder.driver(vehicle_type_id, with_request=False)

        created = await services.drivers.create_driver_request(
            _draft(driver.id), find_passengers=False
        )

        assert created.matches == []
        assert await status_of(session_factory, PassengerRequestModel, request_id) == (
            JourneyStatus.WAITING
        )

    @pytest.mark.asyncio
    async def test_driver_without_vehicle_is_forbidden(self, seeder, services):
        vehicle_type_id = await seeder.vehicle_type()
        driver, _ = await seeder.driver(
            vehicle_type_id, with_request=False, with_vehicle=False
        )

        with pytest.raises(ForbiddenError):
            await services.drivers.create_driver_request(_draft(driver.id))

    @pytest.mark.asyncio
    async def test_only_waiting_is_a_valid_initial_status(self, services):
        with pytest.raises(ValidationError):
            await services.drivers.create_driver_request(
                _draft(1), initial_status=JourneyStatus.REQUESTED
            )

    @pytest.mark.asyncio
    async def test_unknown_request_is_not_found(self, services):
        with pytest.raises(NotFoundError):
            await services.drivers.get_driver_request(31337)


class TestAnswerOffer:
    @pytest.mark.asyncio
    async def test_accept_quotes_price_and_notifies_passenger(
        self, seeder, services, session_factory
    ):
        offer = await create_offer(seeder, services)
        decision_id = offer.decision.journey_decision_id

        result = await services.drivers.accept_passenger_request(
            decision_id, offer.drivers[0].id, shipping_cost_by_driver=1250.0
        )

        assert result.rows_changed == 3
        [event] = result.events
        assert event.recipient == Recipient.PASSENGER
        assert event.message_type == MessageType.DRIVER_ACCEPTED_SHIPPER_REQUEST
        assert event.payload["shipping_cost_by_driver"] == 1250.0
        decision = await fetch(session_factory, JourneyDecisionModel, decision_id)
        assert decision.status == JourneyStatus.ACCEPTED_BY_DRIVER
        assert decision.shipping_cost_by_driver == 1250.0

    @pytest.mark.asyncio
    async def test_other_driver_may_not_accept(self, seeder, services):
        offer = await create_offer(seeder, services)
        intruder = await seeder.user(ActorRole.DRIVER, name="Intruder")

        with pytest.raises(ForbiddenError):
            await services.drivers.accept_passenger_request(
                offer.decision.journey_decision_id, intruder.id
            )

    @pytest.mark.asyncio
    async def test_accepting_twice_is_an_invalid_transition(self, seeder, services):
        offer = await create_offer(seeder, services)
        decision_id = offer.decision.journey_decision_id
        await services.drivers.accept_passenger_request(decision_id, offer.drivers[0].id)

        with pytest.raises(InvalidStateTransition) as excinfo:
            await services.drivers.accept_passenger_request(decision_id, offer.drivers[0].id)

        assert excinfo.value.status_code == 409

    @pytest.mark.asyncio
    async def test_no_answer_requeues_single_offer(self, seeder, services, session_factory):
        offer = await create_offer(seeder, services)
        decision_id = offer.decision.journey_decision_id

        result = await services.drivers.no_answer_from_driver(decision_id)

        assert result.status == JourneyStatus.NO_ANSWER_FROM_DRIVER
        assert result.data["requeued"] is True
        assert [e.message_type for e in result.events] == [
            MessageType.DRIVER_NOT_ANSWERED,
            MessageType.REQUEST_OTHER_DRIVER,
        ]
        assert await status_of(
            session_factory, PassengerRequestModel, offer.passenger_request_id
        ) == JourneyStatus.WAITING
        assert await status_of(
            session_factory, DriverRequestModel, offer.decision.driver_request_id
        ) == JourneyStatus.NO_ANSWER_FROM_DRIVER

        repeat = await services.drivers.no_answer_from_driver(decision_id)
        assert repeat.data == {"driver_answered": True}
        assert repeat.events == []

    @pytest.mark.asyncio
    async def test_no_answer_keeps_request_while_other_offers_open(
        self, seeder, services, session_factory
    ):
        offer = await create_offer(seeder, services, drivers=2)

        result = await services.drivers.no_answer_from_driver(
            offer.decision.journey_decision_id
        )

        assert result.data["requeued"] is False
        assert [e.recipient for e in result.events] == [Recipient.DRIVER]
        assert await status_of(
            session_factory, PassengerRequestModel, offer.passenger_request_id
        ) == JourneyStatus.REQUESTED

    @pytest.mark.asyncio
    async def test_answered_offer_is_not_expired(self, seeder, services, session_factory):
        offer = await create_offer(seeder, services)
        decision_id = offer.decision.journey_decision_id
        await services.drivers.accept_passenger_request(decision_id, offer.drivers[0].id)

        result = await services.drivers.no_answer_from_driver(decision_id)

        assert result.data == {"driver_answered": True}
        assert await status_of(session_factory, JourneyDecisionModel, decision_id) == (
            JourneyStatus.ACCEPTED_BY_DRIVER
        )

    @pytest.mark.asyncio
    async def test_find_timed_out_decisions(self, seeder, services, session_factory):
        offer = await create_offer(seeder, services)
        decision_id = offer.decision.journey_decision_id

        assert await services.drivers.find_timed_out_decisions() == []

        async with session_factory() as session:
            await session.execute(
                update(JourneyDecisionModel)
                .where(JourneyDecisionModel.id == decision_id)
                .values(decision_time=datetime(2020, 1, 1))
            )
            await session.commit()

        assert await services.drivers.find_timed_out_decisions() == [decision_id]


class TestCancelDriverRequest:
    @pytest.mark.asyncio
    async def test_before_acceptance_is_a_rejection(self, seeder, services, session_factory):
        offer = await create_offer(seeder, services)
        driver = offer.drivers[0]

        result = await services.drivers.cancel_driver_request(driver.id, driver.id)

        assert result.status == JourneyStatus.REJECTED_BY_DRIVER
        assert result.data["requeued"] is True
        assert result.data["audit_recorded"] is True
        # The passenger is not told about a rejection; only the admin feed is.
        [event] = result.events
        assert event.recipient == Recipient.ADMIN
        assert event.message_type == MessageType.CANCELLED_JOURNEY
        assert event.payload["context_type"] == "DriverRequest"
        assert event.payload["cancellation_status"] == JourneyStatus.REJECTED_BY_DRIVER
        decision = await fetch(
            session_factory, JourneyDecisionModel, offer.decision.journey_decision_id
        )
        assert decision.status == JourneyStatus.REJECTED_BY_DRIVER
        assert decision.cancellation_seen_by_passenger == SeenState.UNSET
        assert await status_of(
            session_factory, PassengerRequestModel, offer.passenger_request_id
        ) == JourneyStatus.WAITING

    @pytest.mark.asyncio
    async def test_after_acceptance_is_a_cancellation(self, seeder, services, session_factory):
        offer = await create_offer(seeder, services)
        driver = offer.drivers[0]
        await services.drivers.accept_passenger_request(
            offer.decision.journey_decision_id, driver.id
        )

        result = await services.drivers.cancel_driver_request(driver.id, driver.id)

        assert result.status == JourneyStatus.CANCELLED_BY_DRIVER
        assert [e.message_type for e in result.events] == [
            MessageType.DRIVER_CANCELLED_REQUEST,
            MessageType.CANCELLED_JOURNEY,
        ]
        decision = await fetch(
            session_factory, JourneyDecisionModel, offer.decision.journey_decision_id
        )
        assert decision.cancellation_seen_by_passenger == SeenState.PENDING
        async with session_factory() as session:
            record = (await session.execute(select(CanceledJourneyModel))).scalar_one()
        assert record.context_type == "DriverRequest"
        assert record.context_id == offer.decision.driver_request_id

    @pytest.mark.asyncio
    async def test_idle_driver_withdraws(self, seeder, services, session_factory):
        vehicle_type_id = await seeder.vehicle_type()
        driver, driver_request_id = await seeder.driver(vehicle_type_id)

        result = await services.drivers.cancel_driver_request(driver.id, driver.id)

        assert result.data["requeued"] is False
        assert await status_of(session_factory, DriverRequestModel, driver_request_id) == (
            JourneyStatus.REJECTED_BY_DRIVER
        )

    @pytest.mark.asyncio
    async def test_admin_cancels_started_journey(self, seeder, services, session_factory):
        offer = await create_offer(seeder, services)
        driver = offer.drivers[0]
        decision_id = await _accepted_by_passenger(services, offer)
        started = await services.drivers.start_journey(decision_id, driver.id)
        admin = await seeder.user(ActorRole.ADMIN, name="Ops")

        result = await services.drivers.cancel_driver_request(
            driver.id, admin.id, ActorRole.ADMIN, reason_type_id=2
        )

        assert result.status == JourneyStatus.CANCELLED_BY_ADMIN
        assert await status_of(session_factory, JourneyModel, started.data["journey_id"]) == (
            JourneyStatus.CANCELLED_BY_ADMIN
        )
        assert await status_of(session_factory, JourneyDecisionModel, decision_id) == (
            JourneyStatus.CANCELLED_BY_ADMIN
        )
        assert result.data["requeued"] is True

    @pytest.mark.asyncio
    async def test_non_admin_may_not_cancel_for_driver(self, seeder, services):
        vehicle_type_id = await seeder.vehicle_type()
        driver, _ = await seeder.driver(vehicle_type_id)
        other = await seeder.user(ActorRole.DRIVER, name="Other")

        with pytest.raises(ForbiddenError):
            await services.drivers.cancel_driver_request(driver.id, other.id)

    @pytest.mark.asyncio
    async def test_driver_without_active_request(self, seeder, services):
        vehicle_type_id = await seeder.vehicle_type()
        driver, _ = await seeder.driver(vehicle_type_id, with_request=False)

        with pytest.raises(NotFoundError):
            await services.drivers.cancel_driver_request(driver.id, driver.id)


class TestJourney:
    @pytest.mark.asyncio
    async def test_start_and_complete(self, seeder, services, session_factory):
        offer = await create_offer(seeder, services)
        driver = offer.drivers[0]
        decision_id = await _accepted_by_passenger(services, offer)

        started = await services.drivers.start_journey(decision_id, driver.id)
        journey_id = started.data["journey_id"]

        assert [e.message_type for e in started.events] == [MessageType.JOURNEY_STARTED]
        for model, row_id in (
            (PassengerRequestModel, offer.passenger_request_id),
            (JourneyDecisionModel, decision_id),
            (DriverRequestModel, offer.decision.driver_request_id),
            (JourneyModel, journey_id),
        ):
            assert await status_of(session_factory, model, row_id) == (
                JourneyStatus.JOURNEY_STARTED
            )

        completed = await services.drivers.complete_journey(decision_id, driver.id)

        assert completed.status == JourneyStatus.JOURNEY_COMPLETED
        assert completed.rows_changed == 4
        journey = await fetch(session_factory, JourneyModel, journey_id)
        assert journey.status == JourneyStatus.JOURNEY_COMPLETED
        assert journey.end_time is not None

    @pytest.mark.asyncio
    async def test_start_requires_passenger_acceptance(self, seeder, services):
        offer = await create_offer(seeder, services)
        decision_id = offer.decision.journey_decision_id
        await services.drivers.accept_passenger_request(decision_id, offer.drivers[0].id)

        with pytest.raises(InvalidStateTransition):
            await services.drivers.start_journey(decision_id, offer.drivers[0].id)

    @pytest.mark.asyncio
    async def test_admin_completion(self, seeder, services, session_factory):
        offer = await create_offer(seeder, services)
        decision_id = await _accepted_by_passenger(services, offer)
        await services.drivers.start_journey(decision_id, offer.drivers[0].id)
        admin = await seeder.user(ActorRole.SUPER_ADMIN, name="Root")

        result = await services.drivers.complete_journey(
            decision_id, admin.id, ActorRole.SUPER_ADMIN
        )

        assert result.status == JourneyStatus.COMPLETED_BY_ADMIN
        assert await status_of(
            session_factory, PassengerRequestModel, offer.passenger_request_id
        ) == JourneyStatus.COMPLETED_BY_ADMIN

    @pytest.mark.asyncio
    async def test_passenger_may_not_complete(self, seeder, services):
        offer = await create_offer(seeder, services)
        decision_id = await _accepted_by_passenger(services, offer)
        await services.drivers.start_journey(decision_id, offer.drivers[0].id)

        with pytest.raises(ForbiddenError):
            await services.drivers.complete_journey(
                decision_id, offer.passenger.id, ActorRole.PASSENGER
            )

    @pytest.mark.asyncio
    async def test_complete_without_journey_is_not_found(self, seeder, services):
        offer = await create_offer(seeder, services)

        with pytest.raises(NotFoundError):
            await services.drivers.complete_journey(
                offer.decision.journey_decision_id, offer.drivers[0].id
            )

    @pytest.mark.asyncio
    async def test_completing_twice_is_an_invalid_transition(self, seeder, services):
        offer = await create_offer(seeder, services)
        driver = offer.drivers[0]
        decision_id = await _accepted_by_passenger(services, offer)
        await services.drivers.start_journey(decision_id, driver.id)
        await services.drivers.complete_journey(decision_id, driver.id)

        with pytest.raises(InvalidStateTransition):
            await services.drivers.complete_journey(decision_id, driver.id)


class TestNegativeStatusSeen:
    @pytest.mark.asyncio
    async def test_not_selected_is_acknowledged_on_decision(
        self, seeder, services, session_factory
    ):
        offer = await create_offer(seeder, services, drivers=2)
        chosen, lost = offer.decisions
        await services.passengers.accept_driver_offer(
            offer.passenger_request_id, chosen.journey_decision_id, offer.passenger.id
        )

        result = await services.drivers.mark_negative_status_seen(
            lost.driver_request_id, offer.drivers[1].id
        )

        assert result.rows_changed == 1
        decision = await fetch(session_factory, JourneyDecisionModel, lost.journey_decision_id)
        assert decision.not_selected_seen == SeenState.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_passenger_cancellation_is_acknowledged_on_request(
        self, seeder, services, session_factory
    ):
        offer = await create_offer(seeder, services)
        await services.passengers.cancel_passenger_request(
            CancellationCommand(
                passenger_request_id=offer.passenger_request_id,
                actor_user_id=offer.passenger.id,
            )
        )

        result = await services.drivers.mark_negative_status_seen(
            offer.decision.driver_request_id, offer.drivers[0].id
        )

        assert result.status == JourneyStatus.CANCELLED_BY_PASSENGER
        driver_request = await fetch(
            session_factory, DriverRequestModel, offer.decision.driver_request_id
        )
        assert driver_request.cancellation_seen == SeenState.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_nothing_to_acknowledge(self, seeder, services):
        vehicle_type_id = await seeder.vehicle_type()
        driver, driver_request_id = await seeder.driver(vehicle_type_id)

        with pytest.raises(ValidationError):
            await services.drivers.mark_negative_status_seen(driver_request_id, driver.id)

    @pytest.mark.asyncio
    async def test_other_driver_is_forbidden(self, seeder, services):
        vehicle_type_id = await seeder.vehicle_type()
        _, driver_request_id = await seeder.driver(vehicle_type_id)
        other = await seeder.user(ActorRole.DRIVER, name="Other")

        with pytest.raises(ForbiddenError):
            await services.drivers.mark_negative_status_seen(driver_request_id, other.id)
