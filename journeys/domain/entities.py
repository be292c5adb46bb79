"""
Domain value objects passed between the API, the services and the workers.

Patterns used
-------------
- **Command objects** (``StatusChange``, ``CancellationCommand``, the
  drafts) describe one requested change; services validate them.
- **Result objects** carry what changed plus the post-commit
  ``NotificationEvent`` list, so callers decide when to dispatch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from .enums import (
    DRIVER_SIDE_ONLY_STATUSES,
    ActorRole,
    EntityKind,
    JourneyStatus,
)
from .events import NotificationEvent


# ── Commands ──────────────────────────────────────────────────────────


@dataclass
class StatusChange:
    """One logical status change addressed to up to four tables."""

    target_status: JourneyStatus
    journey_id: Optional[int] = None
    passenger_request_id: Optional[int] = None
    journey_decision_id: Optional[int] = None
    driver_request_id: Optional[int] = None
    previous_status: Optional[JourneyStatus] = None
    shipping_cost_by_driver: Optional[float] = None

    def addressed_tables(self) -> list[EntityKind]:
        tables: list[EntityKind] = []
        if self.journey_id is not None:
            tables.append(EntityKind.JOURNEY)
        if (
            self.passenger_request_id is not None
            and self.target_status not in DRIVER_SIDE_ONLY_STATUSES
        ):
            tables.append(EntityKind.PASSENGER_REQUEST)
        if self.journey_decision_id is not None:
            tables.append(EntityKind.JOURNEY_DECISION)
        if self.driver_request_id is not None:
            tables.append(EntityKind.DRIVER_REQUEST)
        return tables


@dataclass
class PassengerRequestDraft:
    user_id: Optional[int]
    batch_id: Optional[str]
    vehicle_type_id: Optional[int]
    origin_lat: float
    origin_lng: float
    destination_lat: float
    destination_lng: float
    origin_place: Optional[str] = None
    destination_place: Optional[str] = None
    shippable_item_name: Optional[str] = None
    shippable_item_qty: Optional[float] = None
    shipping_date: Optional[date] = None
    delivery_date: Optional[date] = None
    shipping_cost: Optional[float] = None
    number_of_vehicles: int = 1
    created_by: Optional[int] = None
    created_by_role: ActorRole = ActorRole.PASSENGER


@dataclass
class DriverRequestDraft:
    user_id: Optional[int]
    origin_lat: float
    origin_lng: float
    origin_place: Optional[str] = None
    created_by: Optional[int] = None


@dataclass
class CancellationCommand:
    passenger_request_id: int
    actor_user_id: int
    actor_role: ActorRole = ActorRole.PASSENGER
    cancellation_status: Optional[JourneyStatus] = None
    reason_type_id: Optional[int] = None


# ── Results ───────────────────────────────────────────────────────────


@dataclass
class TransitionResult:
    target_status: JourneyStatus
    affected: dict[EntityKind, int] = field(default_factory=dict)

    @property
    def rows_changed(self) -> int:
        return sum(self.affected.values())

    @property
    def partial(self) -> bool:
        return bool(self.affected) and 0 in self.affected.values()

    def rows(self, entity: EntityKind) -> int:
        return self.affected.get(entity, 0)


@dataclass
class MatchedDriver:
    journey_decision_id: int
    driver_request_id: int
    driver_user_id: int
    driver_name: Optional[str]
    driver_phone: Optional[str]
    vehicle_id: int
    license_plate: Optional[str]
    vehicle_type_id: int


@dataclass
class MatchResult:
    passenger_request_id: int
    decisions: list[MatchedDriver] = field(default_factory=list)
    events: list[NotificationEvent] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return bool(self.decisions)


@dataclass
class FlowResult:
    """Outcome of an acceptance / cancellation / journey flow."""

    status: JourneyStatus
    rows_changed: int = 0
    events: list[NotificationEvent] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class CreatedRequests:
    requests: list[Any]
    matches: list[MatchResult] = field(default_factory=list)
    events: list[NotificationEvent] = field(default_factory=list)
    created: bool = True


@dataclass
class TimeoutSweep:
    checked_at: datetime
    timed_out: int = 0
    rematched: int = 0
    events: list[NotificationEvent] = field(default_factory=list)
