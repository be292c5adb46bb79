"""Wires the engine's services onto one session factory."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from journeys.config import Settings
from journeys.services.driver_flows import DriverRequestService
from journeys.services.matching import MatchingEngine
from journeys.services.passenger_flows import PassengerRequestService
from journeys.services.transitions import TransitionOrchestrator


@dataclass
class Services:
    session_factory: async_sessionmaker[AsyncSession]
    orchestrator: TransitionOrchestrator
    matching: MatchingEngine
    passengers: PassengerRequestService
    drivers: DriverRequestService


def build_services(
    session_factory: async_sessionmaker[AsyncSession], settings: Settings
) -> Services:
    orchestrator = TransitionOrchestrator(
        session_factory, timeout_seconds=settings.multi_table_timeout_seconds
    )
    matching = MatchingEngine(
        session_factory,
        candidate_limit=settings.matching_candidate_limit,
        timeout_seconds=settings.multi_table_timeout_seconds,
    )
    return Services(
        session_factory=session_factory,
        orchestrator=orchestrator,
        matching=matching,
        passengers=PassengerRequestService(
            session_factory,
            orchestrator,
            matching,
            timeout_seconds=settings.multi_table_timeout_seconds,
            rejection_timeout_seconds=settings.rejection_timeout_seconds,
            cancellation_timeout_seconds=settings.cancellation_timeout_seconds,
        ),
        drivers=DriverRequestService(
            session_factory,
            orchestrator,
            matching,
            timeout_seconds=settings.multi_table_timeout_seconds,
            driver_response_timeout_minutes=settings.driver_response_timeout_minutes,
            rematch_batch_size=settings.rematch_batch_size,
        ),
    )
