"""
Admin / observability endpoints
===============================

GET  /api/v1/admin/health            -- simple health check
POST /api/v1/admin/status            -- apply a status to any set of rows
POST /api/v1/admin/negative-status   -- apply a terminal negative status
GET  /api/v1/admin/canceled-journeys -- cancellation audit trail
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from journeys.api.dependencies import get_services, get_session_factory
from journeys.api.middleware import limiter
from journeys.api.schemas import (
    CanceledJourneyResponse,
    HealthResponse,
    StatusChangeRequest,
    TransitionResponse,
)
from journeys.config import settings
from journeys.domain.entities import StatusChange
from journeys.infrastructure.repositories import CanceledJourneyRepository
from journeys.services.container import Services

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post(
    "/status",
    response_model=TransitionResponse,
    summary="Apply a journey status to the addressed rows",
    description=(
        "Every addressed row only moves if its current status allows it; "
        "rows that did not move are reported in ``affected``."
    ),
)
@limiter.limit(settings.rate_limit)
async def apply_journey_status(
    request: Request,
    body: StatusChangeRequest,
    services: Services = Depends(get_services),
):
    result = await services.orchestrator.apply_journey_status(
        StatusChange(**body.model_dump())
    )
    return TransitionResponse.from_result(result)


@router.post(
    "/negative-status",
    response_model=TransitionResponse,
    summary="Apply a terminal negative status",
)
@limiter.limit(settings.rate_limit)
async def apply_negative_status(
    request: Request,
    body: StatusChangeRequest,
    services: Services = Depends(get_services),
):
    result = await services.orchestrator.apply_negative_status(
        StatusChange(**body.model_dump())
    )
    return TransitionResponse.from_result(result)


@router.get(
    "/canceled-journeys",
    response_model=list[CanceledJourneyResponse],
    summary="List recorded cancellations, newest first",
)
@limiter.limit(settings.rate_limit)
async def list_canceled_journeys(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        records = await CanceledJourneyRepository(session).list_recent(limit, offset)
    return [CanceledJourneyResponse.model_validate(r) for r in records]


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
