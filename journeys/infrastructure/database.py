"""
Async SQLAlchemy engine and session factory.

Uses ``asyncpg`` as the PostgreSQL driver for non-blocking I/O.  The engine
is built once and wrapped with statement timing (``instrument_engine``)
instead of patching individual query call sites.
"""

from __future__ import annotations

import logging
import time
import weakref
from typing import Any

from sqlalchemy import Engine, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from journeys.config import settings

logger = logging.getLogger(__name__)

_TIMING_KEY = "journeys_query_start"


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine, adjusting SQLite so SAVEPOINTs nest properly."""
    engine = create_async_engine(url, echo=False, **kwargs)
    if engine.dialect.name == "sqlite":
        _take_over_sqlite_transactions(engine)
    return engine


def _take_over_sqlite_transactions(engine: AsyncEngine) -> None:
    # pysqlite emits BEGIN lazily and breaks SAVEPOINT semantics; emit our own.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class StatementTimer:
    """Cursor-level timing hooks; logs statements above a threshold."""

    def __init__(self, slow_query_ms: int):
        self.slow_query_ms = slow_query_ms
        self.total_queries = 0
        self.slow_queries = 0

    def before(self, conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault(_TIMING_KEY, []).append(time.perf_counter())

    def after(self, conn, cursor, statement, parameters, context, executemany):
        started = conn.info[_TIMING_KEY].pop()
        elapsed_ms = (time.perf_counter() - started) * 1000
        self.total_queries += 1
        if elapsed_ms >= self.slow_query_ms:
            self.slow_queries += 1
            logger.warning(
                "Slow query (%.1f ms): %s", elapsed_ms, " ".join(statement.split())
            )


_timers: weakref.WeakKeyDictionary[Engine, StatementTimer] = weakref.WeakKeyDictionary()


def instrument_engine(engine: AsyncEngine, slow_query_ms: int) -> AsyncEngine:
    """Attach a ``StatementTimer`` to *engine* once; later calls are no-ops."""
    sync_engine = engine.sync_engine
    if sync_engine in _timers:
        return engine
    timer = StatementTimer(slow_query_ms)
    event.listen(sync_engine, "before_cursor_execute", timer.before)
    event.listen(sync_engine, "after_cursor_execute", timer.after)
    _timers[sync_engine] = timer
    return engine


def get_statement_timer(engine: AsyncEngine) -> StatementTimer | None:
    return _timers.get(engine.sync_engine)


engine = instrument_engine(
    build_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    ),
    settings.slow_query_threshold_ms,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
