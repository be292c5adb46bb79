"""
Passenger request endpoints
===========================

POST   /api/v1/passenger-requests                          -- create a batch (202)
GET    /api/v1/passenger-requests/{id}                     -- current status
POST   /api/v1/passenger-requests/{id}/match               -- manual re-match
POST   /api/v1/passenger-requests/{id}/accept-offer        -- pick a driver's bid
POST   /api/v1/passenger-requests/{id}/reject-offer        -- turn a driver down
POST   /api/v1/passenger-requests/{id}/cancel              -- cancel and cascade
POST   /api/v1/passenger-requests/{id}/completion-seen     -- acknowledge and rate
POST   /api/v1/passenger-requests/decisions/{id}/cancellation-seen
DELETE /api/v1/passenger-requests/{id}                     -- admin delete

Notifications are dispatched as background tasks, after the service call
has committed and the response is sent.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from journeys.api.dependencies import get_dispatcher, get_services
from journeys.api.middleware import limiter
from journeys.api.schemas import (
    ActorAction,
    CompletionSeen,
    FlowResponse,
    MatchResponse,
    OfferAction,
    PassengerCancel,
    PassengerRequestCreate,
    PassengerRequestResponse,
    PassengerRequestsCreated,
    UserAction,
)
from journeys.config import settings
from journeys.domain.entities import CancellationCommand, PassengerRequestDraft
from journeys.services.container import Services
from journeys.services.dispatch import EventDispatcher

router = APIRouter(prefix="/passenger-requests", tags=["passenger-requests"])


@router.post(
    "",
    status_code=202,
    response_model=PassengerRequestsCreated,
    summary="Create passenger requests for a batch",
    responses={202: {"description": "Requests stored; drivers are notified async."}},
)
@limiter.limit(settings.rate_limit)
async def create_passenger_request(
    request: Request,
    body: PassengerRequestCreate,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    draft = PassengerRequestDraft(
        **body.model_dump(exclude={"initial_status"}),
    )
    created = await services.passengers.create_passenger_request(
        draft, initial_status=body.initial_status
    )
    background_tasks.add_task(dispatcher.dispatch, created.events)
    return PassengerRequestsCreated.model_validate(created)


@router.get(
    "/{passenger_request_id}",
    response_model=PassengerRequestResponse,
    summary="Get a passenger request",
)
@limiter.limit(settings.rate_limit)
async def get_passenger_request(
    request: Request,
    passenger_request_id: int,
    services: Services = Depends(get_services),
):
    found = await services.passengers.get_passenger_request(passenger_request_id)
    return PassengerRequestResponse.model_validate(found)


@router.post(
    "/{passenger_request_id}/match",
    response_model=MatchResponse,
    summary="Run a matching pass for a waiting request",
)
@limiter.limit(settings.rate_limit)
async def match_passenger_request(
    request: Request,
    passenger_request_id: int,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = await services.passengers.match_passenger_request(passenger_request_id)
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return MatchResponse.model_validate(result)


@router.post(
    "/{passenger_request_id}/accept-offer",
    response_model=FlowResponse,
    summary="Accept one driver's offer",
    description="Every other open offer for the request becomes not-selected.",
)
@limiter.limit(settings.rate_limit)
async def accept_driver_offer(
    request: Request,
    passenger_request_id: int,
    body: OfferAction,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = await services.passengers.accept_driver_offer(
        passenger_request_id, body.journey_decision_id, body.user_id
    )
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return FlowResponse.model_validate(result)


@router.post(
    "/{passenger_request_id}/reject-offer",
    response_model=FlowResponse,
    summary="Reject one driver's offer",
)
@limiter.limit(settings.rate_limit)
async def reject_driver_offer(
    request: Request,
    passenger_request_id: int,
    body: OfferAction,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = await services.passengers.reject_driver_offer(
        passenger_request_id, body.journey_decision_id, body.user_id
    )
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return FlowResponse.model_validate(result)


@router.post(
    "/{passenger_request_id}/cancel",
    response_model=FlowResponse,
    summary="Cancel a passenger request",
    description=(
        "Cancels the request and every open decision and driver request "
        "linked to it.  Repeating the call changes nothing."
    ),
)
@limiter.limit(settings.rate_limit)
async def cancel_passenger_request(
    request: Request,
    passenger_request_id: int,
    body: PassengerCancel,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = await services.passengers.cancel_passenger_request(
        CancellationCommand(passenger_request_id=passenger_request_id, **body.model_dump())
    )
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return FlowResponse.model_validate(result)


@router.post(
    "/{passenger_request_id}/completion-seen",
    response_model=FlowResponse,
    summary="Acknowledge a completed journey and optionally rate it",
)
@limiter.limit(settings.rate_limit)
async def acknowledge_completion(
    request: Request,
    passenger_request_id: int,
    body: CompletionSeen,
    services: Services = Depends(get_services),
):
    result = await services.passengers.acknowledge_completion(
        passenger_request_id,
        body.user_id,
        body.journey_decision_id,
        rating=body.rating,
        comment=body.comment,
    )
    return FlowResponse.model_validate(result)


@router.post(
    "/decisions/{journey_decision_id}/cancellation-seen",
    response_model=FlowResponse,
    summary="Acknowledge that a driver dropped out",
)
@limiter.limit(settings.rate_limit)
async def mark_cancellation_seen(
    request: Request,
    journey_decision_id: int,
    body: UserAction,
    services: Services = Depends(get_services),
):
    result = await services.passengers.mark_cancellation_seen(
        journey_decision_id, body.user_id
    )
    return FlowResponse.model_validate(result)


@router.delete(
    "/{passenger_request_id}",
    status_code=204,
    summary="Delete a passenger request that was never matched",
)
@limiter.limit(settings.rate_limit)
async def delete_passenger_request(
    request: Request,
    passenger_request_id: int,
    body: ActorAction,
    services: Services = Depends(get_services),
):
    await services.passengers.delete_passenger_request(
        passenger_request_id, body.actor_role
    )
