"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Status writes are *conditional*: they carry
the set of statuses the row may currently hold and report how many rows
actually changed, so callers can tell a lost race from a success.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Collection, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from .models import (
    CanceledJourneyModel,
    DriverRequestModel,
    JourneyDecisionModel,
    JourneyModel,
    PassengerRequestModel,
    RatingModel,
    UserModel,
    VehicleDriverModel,
    VehicleModel,
)
from journeys.domain.enums import (
    ACTIVE_STATUSES,
    DecisionActor,
    JourneyStatus,
    SeenState,
)


def _codes(statuses: Collection[JourneyStatus]) -> list[int]:
    return sorted(int(s) for s in statuses)


class _StatusRepository:
    model: Any

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _conditional_update(
        self,
        where: list[Any],
        *,
        sources: Optional[Collection[JourneyStatus]],
        previous: Optional[JourneyStatus] = None,
        values: dict[str, Any],
    ) -> int:
        """UPDATE ... WHERE <where> AND status IN <sources>; returns rowcount.

        An empty *sources* set means no transition is legal and nothing is
        written.  ``None`` means the caller applies no status guard.
        """
        if sources is not None and not sources:
            return 0
        stmt = update(self.model).where(*where)
        if sources is not None:
            stmt = stmt.where(self.model.status.in_(_codes(sources)))
        if previous is not None:
            stmt = stmt.where(self.model.status == int(previous))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def get_status(self, row_id: int) -> Optional[JourneyStatus]:
        result = await self.session.execute(
            select(self.model.status).where(self.model.id == row_id)
        )
        status = result.scalar_one_or_none()
        return JourneyStatus(status) if status is not None else None


class PassengerRequestRepository(_StatusRepository):
    model = PassengerRequestModel

    async def create(self, request: PassengerRequestModel) -> PassengerRequestModel:
        self.session.add(request)
        await self.session.flush()
        return request

    async def get_by_id(self, request_id: int) -> Optional[PassengerRequestModel]:
        return await self.session.get(PassengerRequestModel, request_id)

    async def count_in_batch(self, user_id: int, batch_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(PassengerRequestModel)
            .where(
                PassengerRequestModel.user_id == user_id,
                PassengerRequestModel.batch_id == batch_id,
            )
        )
        return result.scalar() or 0

    async def list_waiting(
        self, *, vehicle_type_id: Optional[int] = None, limit: int = 50
    ) -> list[PassengerRequestModel]:
        """Oldest waiting requests first."""
        query = (
            select(PassengerRequestModel)
            .where(PassengerRequestModel.status == int(JourneyStatus.WAITING))
            .order_by(PassengerRequestModel.id.asc())
            .limit(limit)
        )
        if vehicle_type_id is not None:
            query = query.where(PassengerRequestModel.vehicle_type_id == vehicle_type_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def update_status(
        self,
        request_id: int,
        target: JourneyStatus,
        *,
        sources: Optional[Collection[JourneyStatus]],
        previous: Optional[JourneyStatus] = None,
    ) -> int:
        return await self._conditional_update(
            [PassengerRequestModel.id == request_id],
            sources=sources,
            previous=previous,
            values={"status": int(target)},
        )

    async def mark_completion_seen(self, request_id: int) -> int:
        result = await self.session.execute(
            update(PassengerRequestModel)
            .where(PassengerRequestModel.id == request_id)
            .values(is_completion_seen=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def delete(self, request_id: int) -> int:
        result = await self.session.execute(
            delete(PassengerRequestModel)
            .where(PassengerRequestModel.id == request_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


@dataclass
class DriverCandidate:
    driver_request_id: int
    driver_user_id: int
    driver_name: Optional[str]
    driver_phone: Optional[str]
    vehicle_id: int
    license_plate: Optional[str]
    vehicle_type_id: int


class DriverRequestRepository(_StatusRepository):
    model = DriverRequestModel

    async def create(self, request: DriverRequestModel) -> DriverRequestModel:
        self.session.add(request)
        await self.session.flush()
        return request

    async def get_by_id(self, request_id: int) -> Optional[DriverRequestModel]:
        return await self.session.get(DriverRequestModel, request_id)

    async def get_active_for_user(self, user_id: int) -> Optional[DriverRequestModel]:
        result = await self.session.execute(
            select(DriverRequestModel)
            .where(
                DriverRequestModel.user_id == user_id,
                DriverRequestModel.status.in_(_codes(ACTIVE_STATUSES)),
            )
            .order_by(DriverRequestModel.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_candidates(
        self, vehicle_type_id: int, limit: int
    ) -> list[DriverCandidate]:
        """Waiting drivers whose active vehicle has the given type, FIFO."""
        result = await self.session.execute(
            select(
                DriverRequestModel.id,
                DriverRequestModel.user_id,
                UserModel.full_name,
                UserModel.phone_number,
                VehicleModel.id,
                VehicleModel.license_plate,
                VehicleModel.vehicle_type_id,
            )
            .join(
                VehicleDriverModel,
                and_(
                    VehicleDriverModel.driver_user_id == DriverRequestModel.user_id,
                    VehicleDriverModel.is_active.is_(True),
                ),
            )
            .join(VehicleModel, VehicleModel.id == VehicleDriverModel.vehicle_id)
            .join(UserModel, UserModel.id == DriverRequestModel.user_id)
            .where(
                DriverRequestModel.status == int(JourneyStatus.WAITING),
                VehicleModel.vehicle_type_id == vehicle_type_id,
            )
            .order_by(DriverRequestModel.id.asc())
            .limit(limit)
        )
        return [DriverCandidate(*row) for row in result.all()]

    async def update_status(
        self,
        request_id: int,
        target: JourneyStatus,
        *,
        sources: Optional[Collection[JourneyStatus]],
        previous: Optional[JourneyStatus] = None,
        cancellation_seen: Optional[SeenState] = None,
    ) -> int:
        values: dict[str, Any] = {"status": int(target)}
        if cancellation_seen is not None:
            values["cancellation_seen"] = cancellation_seen
        return await self._conditional_update(
            [DriverRequestModel.id == request_id],
            sources=sources,
            previous=previous,
            values=values,
        )

    async def set_cancellation_seen(self, request_id: int, state: SeenState) -> int:
        result = await self.session.execute(
            update(DriverRequestModel)
            .where(DriverRequestModel.id == request_id)
            .values(cancellation_seen=state)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


@dataclass
class DecisionParties:
    """A decision together with both requests and both phone numbers."""

    decision: JourneyDecisionModel
    driver_request: DriverRequestModel
    passenger_request: PassengerRequestModel
    driver_phone: Optional[str]
    passenger_phone: Optional[str]


class JourneyDecisionRepository(_StatusRepository):
    model = JourneyDecisionModel

    async def create(
        self,
        *,
        passenger_request_id: int,
        driver_request_id: int,
        status: JourneyStatus = JourneyStatus.REQUESTED,
        decision_by: DecisionActor = DecisionActor.SYSTEM,
        created_by: Optional[int] = None,
    ) -> JourneyDecisionModel:
        decision = JourneyDecisionModel(
            passenger_request_id=passenger_request_id,
            driver_request_id=driver_request_id,
            status=int(status),
            decision_by=decision_by,
            created_by=created_by,
        )
        self.session.add(decision)
        await self.session.flush()
        return decision

    async def get_by_id(self, decision_id: int) -> Optional[JourneyDecisionModel]:
        return await self.session.get(JourneyDecisionModel, decision_id)

    async def get_with_parties(self, decision_id: int) -> Optional[DecisionParties]:
        driver_user = aliased(UserModel)
        passenger_user = aliased(UserModel)
        result = await self.session.execute(
            select(
                JourneyDecisionModel,
                DriverRequestModel,
                PassengerRequestModel,
                driver_user.phone_number,
                passenger_user.phone_number,
            )
            .join(
                DriverRequestModel,
                DriverRequestModel.id == JourneyDecisionModel.driver_request_id,
            )
            .join(
                PassengerRequestModel,
                PassengerRequestModel.id == JourneyDecisionModel.passenger_request_id,
            )
            .join(driver_user, driver_user.id == DriverRequestModel.user_id)
            .join(passenger_user, passenger_user.id == PassengerRequestModel.user_id)
            .where(JourneyDecisionModel.id == decision_id)
        )
        row = result.one_or_none()
        return DecisionParties(*row) if row else None

    async def list_for_passenger(
        self,
        passenger_request_id: int,
        statuses: Optional[Collection[JourneyStatus]] = None,
    ) -> list[tuple[JourneyDecisionModel, Optional[str]]]:
        """Decisions of a passenger request with each driver's phone number."""
        query = (
            select(JourneyDecisionModel, UserModel.phone_number)
            .join(
                DriverRequestModel,
                DriverRequestModel.id == JourneyDecisionModel.driver_request_id,
            )
            .join(UserModel, UserModel.id == DriverRequestModel.user_id)
            .where(JourneyDecisionModel.passenger_request_id == passenger_request_id)
            .order_by(JourneyDecisionModel.id.asc())
        )
        if statuses is not None:
            query = query.where(JourneyDecisionModel.status.in_(_codes(statuses)))
        result = await self.session.execute(query)
        return [(decision, phone) for decision, phone in result.all()]

    async def count_for_passenger(
        self,
        passenger_request_id: int,
        statuses: Collection[JourneyStatus],
    ) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(JourneyDecisionModel)
            .where(
                JourneyDecisionModel.passenger_request_id == passenger_request_id,
                JourneyDecisionModel.status.in_(_codes(statuses)),
            )
        )
        return result.scalar() or 0

    async def get_latest_for_driver_request(
        self,
        driver_request_id: int,
        statuses: Collection[JourneyStatus],
    ) -> Optional[JourneyDecisionModel]:
        result = await self.session.execute(
            select(JourneyDecisionModel)
            .where(
                JourneyDecisionModel.driver_request_id == driver_request_id,
                JourneyDecisionModel.status.in_(_codes(statuses)),
            )
            .order_by(JourneyDecisionModel.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_timed_out(self, requested_before: datetime, limit: int) -> list[int]:
        """Ids of decisions still waiting for the driver since before the cutoff."""
        result = await self.session.execute(
            select(JourneyDecisionModel.id)
            .where(
                JourneyDecisionModel.status == int(JourneyStatus.REQUESTED),
                JourneyDecisionModel.decision_time < requested_before,
            )
            .order_by(JourneyDecisionModel.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        decision_id: int,
        target: JourneyStatus,
        *,
        sources: Optional[Collection[JourneyStatus]],
        previous: Optional[JourneyStatus] = None,
        shipping_cost_by_driver: Optional[float] = None,
        not_selected_seen: Optional[SeenState] = None,
        rejection_seen: Optional[SeenState] = None,
        cancellation_seen_by_passenger: Optional[SeenState] = None,
    ) -> int:
        values: dict[str, Any] = {"status": int(target)}
        if shipping_cost_by_driver is not None:
            values["shipping_cost_by_driver"] = shipping_cost_by_driver
        if not_selected_seen is not None:
            values["not_selected_seen"] = not_selected_seen
        if rejection_seen is not None:
            values["rejection_seen"] = rejection_seen
        if cancellation_seen_by_passenger is not None:
            values["cancellation_seen_by_passenger"] = cancellation_seen_by_passenger
        return await self._conditional_update(
            [JourneyDecisionModel.id == decision_id],
            sources=sources,
            previous=previous,
            values=values,
        )

    async def acknowledge(self, decision_id: int, flag: str) -> int:
        """Move one PENDING seen flag of the decision to ACKNOWLEDGED."""
        column = getattr(JourneyDecisionModel, flag)
        result = await self.session.execute(
            update(JourneyDecisionModel)
            .where(JourneyDecisionModel.id == decision_id, column == SeenState.PENDING)
            .values({flag: SeenState.ACKNOWLEDGED})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class JourneyRepository(_StatusRepository):
    model = JourneyModel

    async def create(
        self,
        *,
        journey_decision_id: int,
        status: JourneyStatus = JourneyStatus.JOURNEY_STARTED,
        start_time: Optional[datetime] = None,
        created_by: Optional[int] = None,
    ) -> JourneyModel:
        journey = JourneyModel(
            journey_decision_id=journey_decision_id,
            status=int(status),
            start_time=start_time,
            created_by=created_by,
        )
        self.session.add(journey)
        await self.session.flush()
        return journey

    async def get_by_id(self, journey_id: int) -> Optional[JourneyModel]:
        return await self.session.get(JourneyModel, journey_id)

    async def get_by_decision(self, decision_id: int) -> Optional[JourneyModel]:
        result = await self.session.execute(
            select(JourneyModel).where(JourneyModel.journey_decision_id == decision_id)
        )
        return result.scalar_one_or_none()

    async def update_status(
        self,
        *,
        target: JourneyStatus,
        sources: Optional[Collection[JourneyStatus]],
        journey_id: Optional[int] = None,
        journey_decision_id: Optional[int] = None,
        previous: Optional[JourneyStatus] = None,
        end_time: Optional[datetime] = None,
    ) -> int:
        if journey_id is not None:
            where = [JourneyModel.id == journey_id]
        elif journey_decision_id is not None:
            where = [JourneyModel.journey_decision_id == journey_decision_id]
        else:
            raise ValueError("journey_id or journey_decision_id is required")
        values: dict[str, Any] = {"status": int(target)}
        if end_time is not None:
            values["end_time"] = end_time
        return await self._conditional_update(
            where, sources=sources, previous=previous, values=values
        )


class CanceledJourneyRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(
        self, context_id: int, context_type: str
    ) -> Optional[CanceledJourneyModel]:
        result = await self.session.execute(
            select(CanceledJourneyModel).where(
                CanceledJourneyModel.context_id == context_id,
                CanceledJourneyModel.context_type == context_type,
            )
        )
        return result.scalar_one_or_none()

    async def create(self, record: CanceledJourneyModel) -> CanceledJourneyModel:
        self.session.add(record)
        await self.session.flush()
        return record

    async def list_recent(self, limit: int = 50, offset: int = 0) -> list[CanceledJourneyModel]:
        result = await self.session.execute(
            select(CanceledJourneyModel)
            .order_by(CanceledJourneyModel.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())


class RatingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_decision(self, decision_id: int) -> Optional[RatingModel]:
        result = await self.session.execute(
            select(RatingModel).where(RatingModel.journey_decision_id == decision_id)
        )
        return result.scalar_one_or_none()

    async def create(self, rating: RatingModel) -> RatingModel:
        self.session.add(rating)
        await self.session.flush()
        return rating


class VehicleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_for_driver(self, driver_user_id: int) -> Optional[VehicleModel]:
        result = await self.session.execute(
            select(VehicleModel)
            .join(VehicleDriverModel, VehicleDriverModel.vehicle_id == VehicleModel.id)
            .where(
                VehicleDriverModel.driver_user_id == driver_user_id,
                VehicleDriverModel.is_active.is_(True),
            )
            .order_by(VehicleDriverModel.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
