"""Domain enumerations and the journey status registry.

The registry is pure data: for every target status it lists the statuses a
row may currently hold for the transition to be legal.  Repositories turn
these sets into ``WHERE status IN (...)`` guards, so a conditional UPDATE
that matches zero rows is how an illegal or already-applied transition
shows up at runtime.
"""

from __future__ import annotations

import enum
from typing import Optional


class JourneyStatus(enum.IntEnum):
    WAITING = 1
    REQUESTED = 2
    ACCEPTED_BY_DRIVER = 3
    ACCEPTED_BY_PASSENGER = 4
    JOURNEY_STARTED = 5
    JOURNEY_COMPLETED = 6
    CANCELLED_BY_PASSENGER = 7
    REJECTED_BY_PASSENGER = 8
    CANCELLED_BY_DRIVER = 9
    CANCELLED_BY_ADMIN = 10
    COMPLETED_BY_ADMIN = 11
    CANCELLED_BY_SYSTEM = 12
    NO_ANSWER_FROM_DRIVER = 13
    NOT_SELECTED_IN_BID = 14
    REJECTED_BY_DRIVER = 15


class EntityKind(str, enum.Enum):
    JOURNEY = "journey"
    PASSENGER_REQUEST = "passenger_request"
    JOURNEY_DECISION = "journey_decision"
    DRIVER_REQUEST = "driver_request"


class SeenState(str, enum.Enum):
    """Whether a party still has to acknowledge an outcome."""

    UNSET = "UNSET"
    PENDING = "PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGED"


class DecisionActor(str, enum.Enum):
    SYSTEM = "system"
    PASSENGER = "passenger"
    DRIVER = "driver"


class ActorRole(str, enum.Enum):
    PASSENGER = "passenger"
    DRIVER = "driver"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"
    SYSTEM = "system"


class MessageType(str, enum.Enum):
    DRIVER_FOUND_SHIPPER_REQUEST = "driver_found_shipper_request"
    DRIVER_ACCEPTED_SHIPPER_REQUEST = "driver_accepted_shipper_request"
    PASSENGER_ACCEPTED_OFFER = "passenger_accepted_offer"
    NOT_SELECTED_IN_BID = "not_selected_in_bid"
    PASSENGER_REJECTED_REQUEST = "passenger_rejected_request"
    PASSENGER_CANCELLED_REQUEST = "passenger_cancelled_request"
    ADMIN_CANCELLED_REQUEST = "admin_cancelled_request"
    SYSTEM_CANCELLED_REQUEST = "system_cancelled_request"
    DRIVER_CANCELLED_REQUEST = "driver_cancelled_request"
    DRIVER_NOT_ANSWERED = "driver_not_answered"
    REQUEST_OTHER_DRIVER = "request_other_driver"
    JOURNEY_STARTED = "journey_started"
    JOURNEY_COMPLETED = "journey_completed"
    CANCELLED_JOURNEY = "cancelled_journey"


ADMIN_ROLES = frozenset({ActorRole.ADMIN, ActorRole.SUPER_ADMIN})

# ── Status groups ─────────────────────────────────────────────────────

HAPPY_PATH: tuple[JourneyStatus, ...] = (
    JourneyStatus.WAITING,
    JourneyStatus.REQUESTED,
    JourneyStatus.ACCEPTED_BY_DRIVER,
    JourneyStatus.ACCEPTED_BY_PASSENGER,
    JourneyStatus.JOURNEY_STARTED,
    JourneyStatus.JOURNEY_COMPLETED,
)

# Non-terminal statuses; a driver owns at most one request in this set.
ACTIVE_STATUSES = frozenset(HAPPY_PATH[:-1])

# A decision in one of these still binds its driver to the passenger.
OPEN_DECISION_STATUSES = frozenset(
    {
        JourneyStatus.REQUESTED,
        JourneyStatus.ACCEPTED_BY_DRIVER,
        JourneyStatus.ACCEPTED_BY_PASSENGER,
    }
)

COMPLETION_STATUSES = frozenset(
    {JourneyStatus.JOURNEY_COMPLETED, JourneyStatus.COMPLETED_BY_ADMIN}
)

NEGATIVE_STATUSES = frozenset(
    {
        JourneyStatus.CANCELLED_BY_PASSENGER,
        JourneyStatus.REJECTED_BY_PASSENGER,
        JourneyStatus.CANCELLED_BY_DRIVER,
        JourneyStatus.CANCELLED_BY_ADMIN,
        JourneyStatus.CANCELLED_BY_SYSTEM,
        JourneyStatus.NO_ANSWER_FROM_DRIVER,
        JourneyStatus.NOT_SELECTED_IN_BID,
        JourneyStatus.REJECTED_BY_DRIVER,
    }
)

TERMINAL_STATUSES = NEGATIVE_STATUSES | COMPLETION_STATUSES

# Targets accepted by the strict negative entry point, and the only
# statuses such a transition may be applied from.
NEGATIVE_ENTRY_STATUSES = frozenset(
    {
        JourneyStatus.REJECTED_BY_PASSENGER,
        JourneyStatus.CANCELLED_BY_PASSENGER,
        JourneyStatus.CANCELLED_BY_ADMIN,
        JourneyStatus.CANCELLED_BY_SYSTEM,
        JourneyStatus.NOT_SELECTED_IN_BID,
    }
)
NEGATIVE_SOURCE_STATUSES = OPEN_DECISION_STATUSES

# Outcomes that concern a single driver and must never touch the
# passenger's own request.
DRIVER_SIDE_ONLY_STATUSES = frozenset(
    {
        JourneyStatus.REJECTED_BY_PASSENGER,
        JourneyStatus.NOT_SELECTED_IN_BID,
        JourneyStatus.NO_ANSWER_FROM_DRIVER,
    }
)

PASSENGER_CANCELLATION_STATUSES = frozenset(
    {
        JourneyStatus.CANCELLED_BY_PASSENGER,
        JourneyStatus.CANCELLED_BY_ADMIN,
        JourneyStatus.CANCELLED_BY_SYSTEM,
    }
)

# ── Transition table ──────────────────────────────────────────────────

# target status -> statuses a row may hold for the move to be legal
STATUS_TRANSITIONS: dict[JourneyStatus, frozenset[JourneyStatus]] = {
    JourneyStatus.REQUESTED: frozenset({JourneyStatus.WAITING}),
    JourneyStatus.ACCEPTED_BY_DRIVER: frozenset({JourneyStatus.REQUESTED}),
    JourneyStatus.ACCEPTED_BY_PASSENGER: frozenset(
        {JourneyStatus.REQUESTED, JourneyStatus.ACCEPTED_BY_DRIVER}
    ),
    JourneyStatus.JOURNEY_STARTED: frozenset({JourneyStatus.ACCEPTED_BY_PASSENGER}),
    JourneyStatus.JOURNEY_COMPLETED: frozenset({JourneyStatus.JOURNEY_STARTED}),
    JourneyStatus.COMPLETED_BY_ADMIN: frozenset({JourneyStatus.JOURNEY_STARTED}),
    JourneyStatus.CANCELLED_BY_PASSENGER: NEGATIVE_SOURCE_STATUSES,
    JourneyStatus.CANCELLED_BY_ADMIN: NEGATIVE_SOURCE_STATUSES,
    JourneyStatus.CANCELLED_BY_SYSTEM: NEGATIVE_SOURCE_STATUSES,
    JourneyStatus.REJECTED_BY_PASSENGER: NEGATIVE_SOURCE_STATUSES,
    JourneyStatus.NOT_SELECTED_IN_BID: NEGATIVE_SOURCE_STATUSES,
    JourneyStatus.CANCELLED_BY_DRIVER: NEGATIVE_SOURCE_STATUSES
    | {JourneyStatus.JOURNEY_STARTED},
    JourneyStatus.NO_ANSWER_FROM_DRIVER: frozenset({JourneyStatus.REQUESTED}),
    JourneyStatus.REJECTED_BY_DRIVER: frozenset(
        {JourneyStatus.WAITING, JourneyStatus.REQUESTED}
    ),
}

_PASSENGER_CANCEL_SOURCES = NEGATIVE_SOURCE_STATUSES | {JourneyStatus.WAITING}

ENTITY_TRANSITIONS: dict[EntityKind, dict[JourneyStatus, frozenset[JourneyStatus]]] = {
    EntityKind.PASSENGER_REQUEST: {
        # Requeued when the last open decision goes away.
        JourneyStatus.WAITING: OPEN_DECISION_STATUSES | {JourneyStatus.JOURNEY_STARTED},
        JourneyStatus.CANCELLED_BY_PASSENGER: _PASSENGER_CANCEL_SOURCES,
        JourneyStatus.CANCELLED_BY_ADMIN: _PASSENGER_CANCEL_SOURCES,
        JourneyStatus.CANCELLED_BY_SYSTEM: _PASSENGER_CANCEL_SOURCES,
        JourneyStatus.CANCELLED_BY_DRIVER: frozenset(),
        JourneyStatus.REJECTED_BY_DRIVER: frozenset(),
        **{status: frozenset() for status in DRIVER_SIDE_ONLY_STATUSES},
    },
    EntityKind.DRIVER_REQUEST: {
        JourneyStatus.CANCELLED_BY_ADMIN: ACTIVE_STATUSES,
    },
    EntityKind.JOURNEY_DECISION: {
        JourneyStatus.CANCELLED_BY_ADMIN: NEGATIVE_SOURCE_STATUSES
        | {JourneyStatus.JOURNEY_STARTED},
    },
    EntityKind.JOURNEY: {
        JourneyStatus.CANCELLED_BY_ADMIN: frozenset({JourneyStatus.JOURNEY_STARTED}),
        JourneyStatus.CANCELLED_BY_DRIVER: frozenset({JourneyStatus.JOURNEY_STARTED}),
    },
}


def coerce_status(value: int | JourneyStatus) -> Optional[JourneyStatus]:
    """Return the ``JourneyStatus`` for *value*, or ``None`` if unknown."""
    try:
        return JourneyStatus(value)
    except ValueError:
        return None


def allowed_source_statuses(
    target: int | JourneyStatus, entity: Optional[EntityKind] = None
) -> frozenset[JourneyStatus]:
    """Statuses a row may hold for a move to *target*; empty if unknown."""
    status = coerce_status(target)
    if status is None:
        return frozenset()
    if entity is not None:
        override = ENTITY_TRANSITIONS.get(entity, {})
        if status in override:
            return override[status]
    return STATUS_TRANSITIONS.get(status, frozenset())


def is_valid_transition(
    entity: EntityKind, current: int | JourneyStatus, target: int | JourneyStatus
) -> bool:
    current_status = coerce_status(current)
    if current_status is None:
        return False
    return current_status in allowed_source_statuses(target, entity)
