"""
Journey decision endpoints (driver side of a pairing)
=====================================================

POST /api/v1/journey-decisions/{id}/accept     -- driver answers an offer
POST /api/v1/journey-decisions/{id}/no-answer  -- expire an unanswered offer
POST /api/v1/journey-decisions/{id}/start      -- start the journey
POST /api/v1/journey-decisions/{id}/complete   -- finish the journey
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from journeys.api.dependencies import get_dispatcher, get_services
from journeys.api.middleware import limiter
from journeys.api.schemas import ActorAction, DriverAccept, DriverAction, FlowResponse
from journeys.config import settings
from journeys.services.container import Services
from journeys.services.dispatch import EventDispatcher

router = APIRouter(prefix="/journey-decisions", tags=["journey-decisions"])


@router.post(
    "/{journey_decision_id}/accept",
    response_model=FlowResponse,
    summary="Driver accepts a passenger request",
)
@limiter.limit(settings.rate_limit)
async def accept_passenger_request(
    request: Request,
    journey_decision_id: int,
    body: DriverAccept,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = await services.drivers.accept_passenger_request(
        journey_decision_id,
        body.driver_user_id,
        shipping_cost_by_driver=body.shipping_cost_by_driver,
    )
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return FlowResponse.model_validate(result)


@router.post(
    "/{journey_decision_id}/no-answer",
    response_model=FlowResponse,
    summary="Mark an offer as unanswered by the driver",
    description="A decision the driver already answered is left untouched.",
)
@limiter.limit(settings.rate_limit)
async def no_answer_from_driver(
    request: Request,
    journey_decision_id: int,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = await services.drivers.no_answer_from_driver(journey_decision_id)
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return FlowResponse.model_validate(result)


@router.post(
    "/{journey_decision_id}/start",
    response_model=FlowResponse,
    summary="Start the journey",
)
@limiter.limit(settings.rate_limit)
async def start_journey(
    request: Request,
    journey_decision_id: int,
    body: DriverAction,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = await services.drivers.start_journey(journey_decision_id, body.driver_user_id)
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return FlowResponse.model_validate(result)


@router.post(
    "/{journey_decision_id}/complete",
    response_model=FlowResponse,
    summary="Complete the journey",
)
@limiter.limit(settings.rate_limit)
async def complete_journey(
    request: Request,
    journey_decision_id: int,
    body: ActorAction,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = await services.drivers.complete_journey(
        journey_decision_id, body.actor_user_id, actor_role=body.actor_role
    )
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return FlowResponse.model_validate(result)
