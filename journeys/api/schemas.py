"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from journeys.domain.entities import TransitionResult
from journeys.domain.enums import ActorRole, JourneyStatus, SeenState


# ── Requests ──────────────────────────────────────────────────────────


class PassengerRequestCreate(BaseModel):
    user_id: int
    batch_id: str = Field(..., min_length=1, max_length=64)
    vehicle_type_id: int
    origin_lat: float = Field(..., ge=-90, le=90)
    origin_lng: float = Field(..., ge=-180, le=180)
    destination_lat: float = Field(..., ge=-90, le=90)
    destination_lng: float = Field(..., ge=-180, le=180)
    origin_place: Optional[str] = Field(None, max_length=255)
    destination_place: Optional[str] = Field(None, max_length=255)
    shippable_item_name: Optional[str] = Field(None, max_length=255)
    shippable_item_qty: Optional[float] = None
    shipping_date: Optional[date] = None
    delivery_date: Optional[date] = None
    shipping_cost: Optional[float] = None
    number_of_vehicles: int = Field(1, ge=1, le=50)
    initial_status: int = int(JourneyStatus.WAITING)
    created_by: Optional[int] = None
    created_by_role: ActorRole = ActorRole.PASSENGER


class OfferAction(BaseModel):
    user_id: int
    journey_decision_id: int


class PassengerCancel(BaseModel):
    actor_user_id: int
    actor_role: ActorRole = ActorRole.PASSENGER
    cancellation_status: Optional[int] = None
    reason_type_id: Optional[int] = None


class CompletionSeen(BaseModel):
    user_id: int
    journey_decision_id: int
    rating: Optional[int] = None
    comment: Optional[str] = Field(None, max_length=500)


class UserAction(BaseModel):
    user_id: int


class ActorAction(BaseModel):
    actor_user_id: int
    actor_role: ActorRole


class DriverRequestCreate(BaseModel):
    user_id: int
    origin_lat: float = Field(..., ge=-90, le=90)
    origin_lng: float = Field(..., ge=-180, le=180)
    origin_place: Optional[str] = Field(None, max_length=255)
    initial_status: int = int(JourneyStatus.WAITING)
    find_passengers: bool = True
    created_by: Optional[int] = None


class DriverCancel(BaseModel):
    owner_user_id: int
    actor_user_id: int
    actor_role: ActorRole = ActorRole.DRIVER
    reason_type_id: Optional[int] = None


class DriverAccept(BaseModel):
    driver_user_id: int
    shipping_cost_by_driver: Optional[float] = Field(None, ge=0)


class DriverAction(BaseModel):
    driver_user_id: int


class StatusChangeRequest(BaseModel):
    target_status: int
    journey_id: Optional[int] = None
    passenger_request_id: Optional[int] = None
    journey_decision_id: Optional[int] = None
    driver_request_id: Optional[int] = None
    previous_status: Optional[int] = None
    shipping_cost_by_driver: Optional[float] = None


# ── Responses ─────────────────────────────────────────────────────────


class PassengerRequestResponse(BaseModel):
    id: int
    user_id: int
    batch_id: str
    vehicle_type_id: int
    origin_lat: float
    origin_lng: float
    origin_place: Optional[str] = None
    destination_lat: float
    destination_lng: float
    destination_place: Optional[str] = None
    shipping_date: Optional[date] = None
    shipping_cost: Optional[float] = None
    status: int
    is_completion_seen: bool = False
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DriverRequestResponse(BaseModel):
    id: int
    user_id: int
    origin_lat: float
    origin_lng: float
    origin_place: Optional[str] = None
    status: int
    cancellation_seen: SeenState
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class MatchedDriverResponse(BaseModel):
    journey_decision_id: int
    driver_request_id: int
    driver_user_id: int
    driver_name: Optional[str] = None
    vehicle_id: int
    license_plate: Optional[str] = None
    vehicle_type_id: int

    model_config = {"from_attributes": True}


class MatchResponse(BaseModel):
    passenger_request_id: int
    matched: bool
    decisions: list[MatchedDriverResponse] = []

    model_config = {"from_attributes": True}


class PassengerRequestsCreated(BaseModel):
    created: bool
    requests: list[PassengerRequestResponse]
    matches: list[MatchResponse] = []

    model_config = {"from_attributes": True}


class DriverRequestCreated(BaseModel):
    created: bool
    requests: list[DriverRequestResponse]
    matches: list[MatchResponse] = []

    model_config = {"from_attributes": True}


class FlowResponse(BaseModel):
    status: int
    rows_changed: int
    data: dict[str, Any] = {}

    model_config = {"from_attributes": True}


class TransitionResponse(BaseModel):
    target_status: int
    rows_changed: int
    partial: bool
    affected: dict[str, int]

    @classmethod
    def from_result(cls, result: TransitionResult) -> "TransitionResponse":
        return cls(
            target_status=int(result.target_status),
            rows_changed=result.rows_changed,
            partial=result.partial,
            affected={entity.value: rows for entity, rows in result.affected.items()},
        )


class CanceledJourneyResponse(BaseModel):
    id: int
    context_id: int
    context_type: str
    canceled_by: Optional[int] = None
    canceled_by_role: Optional[ActorRole] = None
    cancellation_status: int
    cancellation_reason_type_id: Optional[int] = None
    canceled_time: Optional[datetime] = None

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"
