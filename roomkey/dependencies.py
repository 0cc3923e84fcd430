from __future__ import annotations

from functools import lru_cache
from time import perf_counter
from typing import Any, AsyncIterator, Dict
from uuid import uuid4

from fastapi import Depends, Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from roomkey.config import Settings, get_settings
from roomkey.logger import get_logger
from roomkey.tokens import TokenCodec, get_token_codec

_DB_LOGGER = get_logger("db")
_DB_SESSION_LOGGER = get_logger("db.session")
_QUERY_START_KEY = "roomkey_query_start"


def _compact_sql(statement: Any, max_length: int) -> str:
    value = " ".join(str(statement or "").split())
    if max_length <= 3 or len(value) <= max_length:
        return value
    return f"{value[: max_length - 3]}..."


def _install_query_logging(engine: AsyncEngine, *, settings: Settings) -> None:
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _before_cursor_execute(
        conn: Any, cursor: Any, statement: Any, parameters: Any, context: Any, executemany: bool
    ) -> None:
        del cursor, statement, parameters, context, executemany
        conn.info.setdefault(_QUERY_START_KEY, []).append(perf_counter())

    @event.listens_for(sync_engine, "after_cursor_execute")
    def _after_cursor_execute(
        conn: Any, cursor: Any, statement: Any, parameters: Any, context: Any, executemany: bool
    ) -> None:
        del parameters, context, executemany
        starts = conn.info.get(_QUERY_START_KEY) or [perf_counter()]
        duration_ms = round((perf_counter() - starts.pop()) * 1000, 1)
        if not settings.log_db_queries:
            return
        _DB_LOGGER.debug(
            "query.execute",
            "Executed SQL statement",
            duration_ms=duration_ms,
            rowcount=getattr(cursor, "rowcount", None),
            sql=_compact_sql(statement, settings.log_sql_max_length),
        )
        if duration_ms >= 200:
            _DB_LOGGER.warning(
                "query.slow",
                "Slow SQL statement",
                duration_ms=duration_ms,
                sql=_compact_sql(statement, settings.log_sql_max_length),
            )


@lru_cache
def get_engine(database_url: str) -> AsyncEngine:
    engine = create_async_engine(database_url, pool_pre_ping=True)

    if database_url.startswith("sqlite"):

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    _install_query_logging(engine, settings=get_settings())
    return engine


@lru_cache
def get_sessionmaker(database_url: str) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=get_engine(database_url), expire_on_commit=False)


async def get_db_session(
    settings: Settings = Depends(get_settings),
) -> AsyncIterator[AsyncSession]:
    sessionmaker = get_sessionmaker(settings.database_url)
    session_id = uuid4().hex[:12]

    with _DB_SESSION_LOGGER.context(db_session_id=session_id):
        async with sessionmaker() as session:
            try:
                yield session
            except Exception as exc:
                if session.in_transaction():
                    await session.rollback()
                    _DB_SESSION_LOGGER.warning(
                        "session.rollback",
                        "Rolled back DB transaction after error",
                        error_type=type(exc).__name__,
                    )
                raise


def get_codec() -> TokenCodec:
    return get_token_codec()


def get_cookies(request: Request) -> Dict[str, str]:
    return dict(request.cookies)


def client_ip(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
