"""Async engine and session makers, cached per database URL.

The admission gate and the key registry share one engine per process. A
missing ``DATABASE_URL`` is not fatal for request handling: the optional
session maker is None and the stores built on it report themselves
unavailable, which the gate turns into fail-open decisions.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from app.core.config import Settings

# Seconds a SQLite writer waits on a locked database
SQLITE_BUSY_TIMEOUT = 15


def _engine_options(database_url: str, database_echo: bool) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": database_echo}
    if make_url(database_url).get_backend_name() == "sqlite":
        options["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
    else:
        options["pool_pre_ping"] = True
    return options


@lru_cache
def _engine_for(database_url: str, database_echo: bool) -> AsyncEngine:
    return create_async_engine(database_url, **_engine_options(database_url, database_echo))


@lru_cache
def _session_maker_for(database_url: str, database_echo: bool) -> async_sessionmaker:
    return async_sessionmaker(_engine_for(database_url, database_echo), expire_on_commit=False)


def get_async_engine(settings: Settings) -> AsyncEngine:
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not configured")
    return _engine_for(settings.database_url, settings.database_echo)


def get_session_maker(settings: Settings) -> async_sessionmaker:
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not configured")
    return _session_maker_for(settings.database_url, settings.database_echo)


def get_optional_session_maker(settings: Settings) -> async_sessionmaker | None:
    if not settings.database_url:
        return None
    return _session_maker_for(settings.database_url, settings.database_echo)


async def dispose_engine(settings: Settings) -> None:
    """Close pooled connections; for one-shot scripts before the loop exits."""

    if not settings.database_url:
        return
    await _engine_for(settings.database_url, settings.database_echo).dispose()
    _session_maker_for.cache_clear()
    _engine_for.cache_clear()
