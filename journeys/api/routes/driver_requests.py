"""
Driver request endpoints
========================

POST /api/v1/driver-requests                           -- open availability (202)
GET  /api/v1/driver-requests/{id}                      -- current status
POST /api/v1/driver-requests/cancel                    -- withdraw the active request
POST /api/v1/driver-requests/{id}/negative-status-seen -- acknowledge the outcome
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from journeys.api.dependencies import get_dispatcher, get_services
from journeys.api.middleware import limiter
from journeys.api.schemas import (
    DriverCancel,
    DriverRequestCreate,
    DriverRequestCreated,
    DriverRequestResponse,
    FlowResponse,
    UserAction,
)
from journeys.config import settings
from journeys.domain.entities import DriverRequestDraft
from journeys.services.container import Services
from journeys.services.dispatch import EventDispatcher

router = APIRouter(prefix="/driver-requests", tags=["driver-requests"])


@router.post(
    "",
    status_code=202,
    response_model=DriverRequestCreated,
    summary="Open a driver availability window",
    description="Returns the driver's active request instead of opening a second one.",
)
@limiter.limit(settings.rate_limit)
async def create_driver_request(
    request: Request,
    body: DriverRequestCreate,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    created = await services.drivers.create_driver_request(
        DriverRequestDraft(
            user_id=body.user_id,
            origin_lat=body.origin_lat,
            origin_lng=body.origin_lng,
            origin_place=body.origin_place,
            created_by=body.created_by,
        ),
        initial_status=body.initial_status,
        find_passengers=body.find_passengers,
    )
    background_tasks.add_task(dispatcher.dispatch, created.events)
    return DriverRequestCreated.model_validate(created)


@router.post(
    "/cancel",
    response_model=FlowResponse,
    summary="Cancel the driver's active request",
)
@limiter.limit(settings.rate_limit)
async def cancel_driver_request(
    request: Request,
    body: DriverCancel,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = await services.drivers.cancel_driver_request(
        body.owner_user_id,
        body.actor_user_id,
        actor_role=body.actor_role,
        reason_type_id=body.reason_type_id,
    )
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return FlowResponse.model_validate(result)


@router.get(
    "/{driver_request_id}",
    response_model=DriverRequestResponse,
    summary="Get a driver request",
)
@limiter.limit(settings.rate_limit)
async def get_driver_request(
    request: Request,
    driver_request_id: int,
    services: Services = Depends(get_services),
):
    found = await services.drivers.get_driver_request(driver_request_id)
    return DriverRequestResponse.model_validate(found)


@router.post(
    "/{driver_request_id}/negative-status-seen",
    response_model=FlowResponse,
    summary="Acknowledge a cancellation, rejection or lost bid",
)
@limiter.limit(settings.rate_limit)
async def mark_negative_status_seen(
    request: Request,
    driver_request_id: int,
    body: UserAction,
    services: Services = Depends(get_services),
):
    result = await services.drivers.mark_negative_status_seen(
        driver_request_id, body.user_id
    )
    return FlowResponse.model_validate(result)
