"""Initial schema: reference data, requests, decisions, journeys and audit.

Revision ID: 001
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    ]


def _seen(name: str) -> sa.Column:
    return sa.Column(name, sa.String(16), server_default="UNSET", nullable=False)


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("full_name", sa.String(120), nullable=False),
        sa.Column("phone_number", sa.String(20), unique=True, nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=True),
        sa.Column("role", sa.String(16), server_default="PASSENGER", nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── vehicle_types / vehicles / vehicle_drivers ────────────────────
    op.create_table(
        "vehicle_types",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(60), unique=True, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_table(
        "vehicles",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "vehicle_type_id",
            sa.Integer,
            sa.ForeignKey("vehicle_types.id"),
            nullable=False,
        ),
        sa.Column("license_plate", sa.String(20), unique=True, nullable=False),
        sa.Column("color", sa.String(30), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_vehicles_type", "vehicles", ["vehicle_type_id"])

    op.create_table(
        "vehicle_drivers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("vehicle_id", sa.Integer, sa.ForeignKey("vehicles.id"), nullable=False),
        sa.Column(
            "driver_user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("is_active", sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_vehicle_drivers_driver", "vehicle_drivers", ["driver_user_id", "is_active"]
    )
    op.create_index("idx_vehicle_drivers_vehicle", "vehicle_drivers", ["vehicle_id"])

    # ── passenger_requests ────────────────────────────────────────────
    op.create_table(
        "passenger_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("batch_id", sa.String(64), nullable=False),
        sa.Column(
            "vehicle_type_id",
            sa.Integer,
            sa.ForeignKey("vehicle_types.id"),
            nullable=False,
        ),
        sa.Column("origin_lat", sa.Float, nullable=False),
        sa.Column("origin_lng", sa.Float, nullable=False),
        sa.Column("origin_place", sa.String(255), nullable=True),
        sa.Column("destination_lat", sa.Float, nullable=False),
        sa.Column("destination_lng", sa.Float, nullable=False),
        sa.Column("destination_place", sa.String(255), nullable=True),
        sa.Column("shippable_item_name", sa.String(255), nullable=True),
        sa.Column("shippable_item_qty", sa.Float, nullable=True),
        sa.Column("shipping_date", sa.Date, nullable=True),
        sa.Column("delivery_date", sa.Date, nullable=True),
        sa.Column("shipping_cost", sa.Float, nullable=True),
        sa.Column("status", sa.SmallInteger, server_default="1", nullable=False),
        sa.Column(
            "is_completion_seen", sa.Boolean, server_default=sa.false(), nullable=False
        ),
        sa.Column("created_by", sa.Integer, nullable=True),
        sa.Column(
            "created_by_role", sa.String(16), server_default="PASSENGER", nullable=False
        ),
        *_timestamps(),
    )
    op.create_index(
        "idx_passenger_requests_status_type",
        "passenger_requests",
        ["status", "vehicle_type_id"],
    )
    op.create_index(
        "idx_passenger_requests_batch", "passenger_requests", ["batch_id", "user_id"]
    )
    op.create_index("idx_passenger_requests_user", "passenger_requests", ["user_id"])

    # ── driver_requests ───────────────────────────────────────────────
    op.create_table(
        "driver_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("origin_lat", sa.Float, nullable=False),
        sa.Column("origin_lng", sa.Float, nullable=False),
        sa.Column("origin_place", sa.String(255), nullable=True),
        sa.Column("status", sa.SmallInteger, server_default="1", nullable=False),
        _seen("cancellation_seen"),
        sa.Column("created_by", sa.Integer, nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_driver_requests_status", "driver_requests", ["status"])
    op.create_index(
        "idx_driver_requests_user_status", "driver_requests", ["user_id", "status"]
    )

    # ── journey_decisions ─────────────────────────────────────────────
    op.create_table(
        "journey_decisions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "passenger_request_id",
            sa.Integer,
            sa.ForeignKey("passenger_requests.id"),
            nullable=False,
        ),
        sa.Column(
            "driver_request_id",
            sa.Integer,
            sa.ForeignKey("driver_requests.id"),
            nullable=False,
        ),
        sa.Column("status", sa.SmallInteger, server_default="2", nullable=False),
        sa.Column(
            "decision_time",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column("decision_by", sa.String(16), server_default="SYSTEM", nullable=False),
        sa.Column("shipping_cost_by_driver", sa.Float, nullable=True),
        _seen("not_selected_seen"),
        _seen("rejection_seen"),
        _seen("cancellation_seen_by_passenger"),
        sa.Column("created_by", sa.Integer, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "passenger_request_id",
            "driver_request_id",
            name="uq_journey_decisions_pair",
        ),
    )
    op.create_index("idx_journey_decisions_status", "journey_decisions", ["status"])
    op.create_index(
        "idx_journey_decisions_driver", "journey_decisions", ["driver_request_id"]
    )

    # ── journeys ──────────────────────────────────────────────────────
    op.create_table(
        "journeys",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "journey_decision_id",
            sa.Integer,
            sa.ForeignKey("journey_decisions.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("status", sa.SmallInteger, server_default="5", nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.Integer, nullable=True),
        *_timestamps(),
    )

    # ── canceled_journeys ─────────────────────────────────────────────
    op.create_table(
        "canceled_journeys",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("context_id", sa.Integer, nullable=False),
        sa.Column("context_type", sa.String(30), nullable=False),
        sa.Column("canceled_by", sa.Integer, nullable=True),
        sa.Column("canceled_by_role", sa.String(16), nullable=True),
        sa.Column("cancellation_status", sa.SmallInteger, nullable=False),
        sa.Column("cancellation_reason_type_id", sa.Integer, nullable=True),
        sa.Column(
            "canceled_time",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "context_id", "context_type", name="uq_canceled_journeys_context"
        ),
    )

    # ── ratings ───────────────────────────────────────────────────────
    op.create_table(
        "ratings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "journey_decision_id",
            sa.Integer,
            sa.ForeignKey("journey_decisions.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("rated_by", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("rating", sa.SmallInteger, nullable=False),
        sa.Column("comment", sa.String(500), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )


def downgrade() -> None:
    op.drop_table("ratings")
    op.drop_table("canceled_journeys")
    op.drop_table("journeys")
    op.drop_table("journey_decisions")
    op.drop_table("driver_requests")
    op.drop_table("passenger_requests")
    op.drop_table("vehicle_drivers")
    op.drop_table("vehicles")
    op.drop_table("vehicle_types")
    op.drop_table("users")
