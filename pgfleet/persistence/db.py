from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pgfleet.core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict[str, Any]:
    # SQLite (tests, local dev) takes no pool sizing or server settings.
    if settings.database_url.startswith("sqlite"):
        return {}
    server_settings = {"application_name": settings.app_name}
    if settings.api_db_statement_timeout_ms > 0:
        server_settings["statement_timeout"] = str(int(settings.api_db_statement_timeout_ms))
    return {
        "pool_pre_ping": True,
        "pool_size": max(1, int(settings.api_db_pool_size)),
        "max_overflow": max(0, int(settings.api_db_max_overflow)),
        "pool_recycle": 1800,
        "connect_args": {"server_settings": server_settings},
    }


_settings = get_settings()
engine = create_async_engine(_settings.database_url, **engine_options(_settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
