"""
FastAPI application factory.

* Registers routes for passenger requests, driver requests, journey
  decisions and admin.
* Starts / stops the driver-response timeout worker via lifespan events.
* Renders ``JourneyError`` as ``{"status", "detail"}`` with its status code.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from journeys.api.middleware import limiter
from journeys.api.routes import admin, driver_requests, journey_decisions, passenger_requests
from journeys.config import settings
from journeys.domain.errors import JourneyError
from journeys.infrastructure.redis_client import close_redis
from journeys.workers import timeouts as _timeouts

logging.basicConfig(level=logging.INFO)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the timeout worker on startup; stop it and Redis on shutdown."""
    if settings.enable_background_worker:
        await _timeouts.start_timeout_loop()
    yield
    if settings.enable_background_worker:
        await _timeouts.stop_timeout_loop()
    await close_redis()


async def journey_error_handler(request: Request, exc: JourneyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": exc.status, "detail": exc.message},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Journey Matching API",
        description=(
            "Matches passenger (shipper) requests with idle drivers and "
            "keeps journeys, decisions and both requests in step through "
            "guarded status transitions."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(JourneyError, journey_error_handler)

    # Routers
    app.include_router(passenger_requests.router, prefix="/api/v1")
    app.include_router(driver_requests.router, prefix="/api/v1")
    app.include_router(journey_decisions.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
