"""
Shared test fixtures.

Each test gets its own SQLite file database (via aiosqlite) built from the
production metadata, so tests run without Docker / PostgreSQL / Redis.
A file database (rather than ``:memory:``) lets several sessions run
concurrently; the engine serialises their transactions with
``BEGIN IMMEDIATE``.

Helpers never keep a session open across a service call: every write here
commits before the next step starts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from journeys.config import settings
from journeys.domain.entities import MatchedDriver, PassengerRequestDraft
from journeys.domain.enums import ActorRole, JourneyStatus
from journeys.infrastructure.database import Base, build_engine, instrument_engine
from journeys.infrastructure.models import (
    DriverRequestModel,
    PassengerRequestModel,
    UserModel,
    VehicleDriverModel,
    VehicleModel,
    VehicleTypeModel,
)
from journeys.services.container import Services, build_services


# ── Test DB (SQLite file per test) ────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    test_engine = instrument_engine(
        build_engine(f"sqlite+aiosqlite:///{tmp_path / 'journeys.db'}"),
        slow_query_ms=1000,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def services(session_factory) -> Services:
    return build_services(session_factory, settings)


# ── Seeding ───────────────────────────────────────────────────────────


class Seeder:
    """Inserts reference rows directly, one committed session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._phones = 0

    def _next_phone(self) -> str:
        self._phones += 1
        return f"9198200{self._phones:05d}"

    async def _add(self, *rows: Any) -> None:
        async with self.session_factory() as session:
            session.add_all(rows)
            await session.commit()

    async def vehicle_type(self, name: str = "Pickup") -> int:
        vehicle_type = VehicleTypeModel(name=name)
        await self._add(vehicle_type)
        return vehicle_type.id

    async def user(self, role: ActorRole = ActorRole.PASSENGER, name: str = "User") -> UserModel:
        user = UserModel(full_name=name, phone_number=self._next_phone(), role=role)
        await self._add(user)
        return user

    async def driver(
        self,
        vehicle_type_id: int,
        *,
        with_request: bool = True,
        with_vehicle: bool = True,
        name: str = "Driver",
    ) -> tuple[UserModel, Optional[int]]:
        """Returns the driver user and the id of its waiting request."""
        user = await self.user(ActorRole.DRIVER, name)
        if with_vehicle:
            vehicle = VehicleModel(
                vehicle_type_id=vehicle_type_id, license_plate=f"MH01-{user.id:04d}"
            )
            await self._add(vehicle)
            await self._add(VehicleDriverModel(vehicle_id=vehicle.id, driver_user_id=user.id))
        if not with_request:
            return user, None
        request = DriverRequestModel(
            user_id=user.id,
            origin_lat=19.09,
            origin_lng=72.86,
            status=int(JourneyStatus.WAITING),
        )
        await self._add(request)
        return user, request.id

    async def passenger_request(
        self,
        user_id: int,
        vehicle_type_id: int,
        *,
        status: JourneyStatus = JourneyStatus.WAITING,
        batch_id: str = "batch-1",
    ) -> int:
        request = PassengerRequestModel(
            user_id=user_id,
            batch_id=batch_id,
            vehicle_type_id=vehicle_type_id,
            origin_lat=19.09,
            origin_lng=72.86,
            destination_lat=19.12,
            destination_lng=72.85,
            status=int(status),
        )
        await self._add(request)
        return request.id


@pytest_asyncio.fixture
async def seeder(session_factory) -> Seeder:
    return Seeder(session_factory)


def passenger_draft(user_id: int, vehicle_type_id: int, **overrides: Any) -> PassengerRequestDraft:
    values: dict[str, Any] = dict(
        user_id=user_id,
        batch_id="batch-1",
        vehicle_type_id=vehicle_type_id,
        origin_lat=19.0896,
        origin_lng=72.8656,
        destination_lat=19.1176,
        destination_lng=72.9060,
        origin_place="Cargo terminal",
        destination_place="Powai",
    )
    values.update(overrides)
    return PassengerRequestDraft(**values)


async def fetch(session_factory: async_sessionmaker[AsyncSession], model: Any, row_id: int):
    """Load one row in a fresh, immediately closed session."""
    async with session_factory() as session:
        return await session.get(model, row_id)


async def status_of(
    session_factory: async_sessionmaker[AsyncSession], model: Any, row_id: int
) -> JourneyStatus:
    row = await fetch(session_factory, model, row_id)
    return JourneyStatus(row.status)


# ── Notifications ─────────────────────────────────────────────────────


class FakeNotifier:
    """Records every delivery instead of publishing it."""

    def __init__(self, fail_for: Optional[str] = None):
        self.sent: list[tuple[str, Optional[str], dict[str, Any]]] = []
        self.fail_for = fail_for

    async def _record(self, party: str, phone: Optional[str], payload: dict[str, Any]) -> bool:
        if self.fail_for is not None and phone == self.fail_for:
            raise ConnectionError("channel unavailable")
        self.sent.append((party, phone, payload))
        return True

    async def notify_driver(self, phone_number: str, payload: dict[str, Any]) -> bool:
        return await self._record("driver", phone_number, payload)

    async def notify_passenger(self, phone_number: str, payload: dict[str, Any]) -> bool:
        return await self._record("passenger", phone_number, payload)

    async def notify_admin(self, payload: dict[str, Any]) -> bool:
        return await self._record("admin", None, payload)

    def message_types(self, party: Optional[str] = None) -> list[str]:
        return [
            payload["message_type"]
            for sent_party, _, payload in self.sent
            if party is None or sent_party == party
        ]


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


# ── Scenarios ─────────────────────────────────────────────────────────


@dataclass
class Offer:
    """A passenger request offered to one or more fresh drivers."""

    passenger: UserModel
    passenger_request_id: int
    decisions: list[MatchedDriver]
    drivers: list[UserModel]
    vehicle_type_id: int

    @property
    def decision(self) -> MatchedDriver:
        return self.decisions[0]


async def create_offer(seeder: Seeder, services: Services, *, drivers: int = 1) -> Offer:
    vehicle_type_id = await seeder.vehicle_type()
    passenger = await seeder.user(name="Passenger")
    driver_users = [
        (await seeder.driver(vehicle_type_id, name=f"Driver {n}"))[0] for n in range(drivers)
    ]
    created = await services.passengers.create_passenger_request(
        passenger_draft(passenger.id, vehicle_type_id)
    )
    return Offer(
        passenger=passenger,
        passenger_request_id=created.requests[0].id,
        decisions=created.matches[0].decisions,
        drivers=driver_users,
        vehicle_type_id=vehicle_type_id,
    )
