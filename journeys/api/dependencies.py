"""FastAPI dependency injection helpers."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from journeys.config import settings
from journeys.infrastructure.database import async_session_factory
from journeys.infrastructure.notifier import Notifier, RedisNotifier
from journeys.infrastructure.redis_client import get_redis
from journeys.services.container import Services, build_services
from journeys.services.dispatch import EventDispatcher


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Services own their transactions, so routes receive the factory."""
    return async_session_factory


async def get_notifier() -> Notifier:
    return RedisNotifier(await get_redis(), settings.notification_channel_prefix)


def get_services(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> Services:
    return build_services(session_factory, settings)


def get_dispatcher(notifier: Notifier = Depends(get_notifier)) -> EventDispatcher:
    return EventDispatcher(notifier)
