"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``users``              -- passengers, drivers and admins
* ``vehicle_types``      -- reference data used for matching
* ``vehicles``           -- vehicles with a type
* ``vehicle_drivers``    -- which driver currently operates which vehicle
* ``passenger_requests`` -- capacity needed by a passenger (shipper)
* ``driver_requests``    -- one driver's availability window
* ``journey_decisions``  -- pairing of one passenger and one driver request
* ``journeys``           -- execution of a pairing once started
* ``canceled_journeys``  -- cancellation audit, one row per context
* ``ratings``            -- passenger rating per decision

Constraints
-----------
* ``journey_decisions (passenger_request_id, driver_request_id)`` is unique;
  the matching engine relies on it to detect concurrent passes.
* ``canceled_journeys (context_id, context_type)`` is unique so a retried
  cancellation cannot write a second audit row.

Status columns hold ``JourneyStatus`` integer codes.
"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    UniqueConstraint,
    func,
)

from .database import Base
from journeys.domain.enums import (
    ActorRole,
    DecisionActor,
    JourneyStatus,
    SeenState,
)


def _seen_column() -> Column:
    return Column(
        Enum(SeenState, native_enum=False, length=16),
        default=SeenState.UNSET,
        nullable=False,
    )


class UserModel(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String(120), nullable=False)
    phone_number = Column(String(20), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=True)
    role = Column(
        Enum(ActorRole, native_enum=False, length=16),
        default=ActorRole.PASSENGER,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class VehicleTypeModel(Base):
    __tablename__ = "vehicle_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(60), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class VehicleModel(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicle_type_id = Column(Integer, ForeignKey("vehicle_types.id"), nullable=False)
    license_plate = Column(String(20), unique=True, nullable=False)
    color = Column(String(30), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_vehicles_type", "vehicle_type_id"),)


class VehicleDriverModel(Base):
    __tablename__ = "vehicle_drivers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    driver_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_vehicle_drivers_driver", "driver_user_id", "is_active"),
        Index("idx_vehicle_drivers_vehicle", "vehicle_id"),
    )


class PassengerRequestModel(Base):
    __tablename__ = "passenger_requests"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    batch_id = Column(String(64), nullable=False)
    vehicle_type_id = Column(Integer, ForeignKey("vehicle_types.id"), nullable=False)

    origin_lat = Column(Float, nullable=False)
    origin_lng = Column(Float, nullable=False)
    origin_place = Column(String(255), nullable=True)
    destination_lat = Column(Float, nullable=False)
    destination_lng = Column(Float, nullable=False)
    destination_place = Column(String(255), nullable=True)

    shippable_item_name = Column(String(255), nullable=True)
    shippable_item_qty = Column(Float, nullable=True)
    shipping_date = Column(Date, nullable=True)
    delivery_date = Column(Date, nullable=True)
    shipping_cost = Column(Float, nullable=True)

    status = Column(SmallInteger, default=int(JourneyStatus.WAITING), nullable=False)
    is_completion_seen = Column(Boolean, default=False, nullable=False)
    created_by = Column(Integer, nullable=True)
    created_by_role = Column(
        Enum(ActorRole, native_enum=False, length=16),
        default=ActorRole.PASSENGER,
        nullable=False,
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_passenger_requests_status_type", "status", "vehicle_type_id"),
        Index("idx_passenger_requests_batch", "batch_id", "user_id"),
        Index("idx_passenger_requests_user", "user_id"),
    )


class DriverRequestModel(Base):
    __tablename__ = "driver_requests"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    origin_lat = Column(Float, nullable=False)
    origin_lng = Column(Float, nullable=False)
    origin_place = Column(String(255), nullable=True)
    status = Column(SmallInteger, default=int(JourneyStatus.WAITING), nullable=False)
    cancellation_seen = _seen_column()
    created_by = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_driver_requests_status", "status"),
        Index("idx_driver_requests_user_status", "user_id", "status"),
    )


class JourneyDecisionModel(Base):
    __tablename__ = "journey_decisions"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    passenger_request_id = Column(
        Integer, ForeignKey("passenger_requests.id"), nullable=False
    )
    driver_request_id = Column(
        Integer, ForeignKey("driver_requests.id"), nullable=False
    )
    status = Column(SmallInteger, default=int(JourneyStatus.REQUESTED), nullable=False)
    decision_time = Column(DateTime(timezone=True), server_default=func.now())
    decision_by = Column(
        Enum(DecisionActor, native_enum=False, length=16),
        default=DecisionActor.SYSTEM,
        nullable=False,
    )
    shipping_cost_by_driver = Column(Float, nullable=True)
    not_selected_seen = _seen_column()
    rejection_seen = _seen_column()
    cancellation_seen_by_passenger = _seen_column()
    created_by = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "passenger_request_id",
            "driver_request_id",
            name="uq_journey_decisions_pair",
        ),
        Index("idx_journey_decisions_status", "status"),
        Index("idx_journey_decisions_driver", "driver_request_id"),
    )


class JourneyModel(Base):
    __tablename__ = "journeys"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    journey_decision_id = Column(
        Integer, ForeignKey("journey_decisions.id"), unique=True, nullable=False
    )
    status = Column(
        SmallInteger, default=int(JourneyStatus.JOURNEY_STARTED), nullable=False
    )
    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CanceledJourneyModel(Base):
    __tablename__ = "canceled_journeys"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    context_id = Column(Integer, nullable=False)
    context_type = Column(String(30), nullable=False)
    canceled_by = Column(Integer, nullable=True)
    canceled_by_role = Column(
        Enum(ActorRole, native_enum=False, length=16), nullable=True
    )
    cancellation_status = Column(SmallInteger, nullable=False)
    cancellation_reason_type_id = Column(Integer, nullable=True)
    canceled_time = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "context_id", "context_type", name="uq_canceled_journeys_context"
        ),
    )


class RatingModel(Base):
    __tablename__ = "ratings"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    journey_decision_id = Column(
        Integer, ForeignKey("journey_decisions.id"), unique=True, nullable=False
    )
    rated_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    rating = Column(SmallInteger, nullable=False)
    comment = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
