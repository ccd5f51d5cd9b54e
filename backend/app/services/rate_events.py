"""Durable append-only log of admitted requests.

Each row is one admission under one identifier (``ip:<addr>`` or
``apikey:<id>``). Rows are never updated; they are deleted by pruning once
they fall outside the retention horizon.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import StorageUnavailableError
from app.db import models


@dataclass(slots=True)
class RequestEvent:
    identifier: str
    occurred_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class WindowCount:
    """Events counted for one identifier inside a window."""

    count: int
    oldest: datetime | None


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SQLRequestEventStore:
    """Event log on the platform database."""

    def __init__(self, session_maker: async_sessionmaker | None) -> None:
        self._session_maker = session_maker

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        if self._session_maker is None:
            raise StorageUnavailableError("DATABASE_URL is not configured")
        try:
            async with self._session_maker() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError(
                "Rate limit event store unavailable", details={"error": str(exc)}
            ) from exc

    async def record(self, event: RequestEvent) -> None:
        async with self._session() as session:
            session.add(
                models.RateLimitRequest(
                    identifier=event.identifier,
                    occurred_at=event.occurred_at,
                    metadata_json=event.metadata or None,
                )
            )
            await session.commit()

    async def record_many(self, events: list[RequestEvent]) -> None:
        """Append several events in one transaction."""

        if not events:
            return
        async with self._session() as session:
            session.add_all(
                [
                    models.RateLimitRequest(
                        identifier=event.identifier,
                        occurred_at=event.occurred_at,
                        metadata_json=event.metadata or None,
                    )
                    for event in events
                ]
            )
            await session.commit()

    async def count_since(self, identifier: str, since: datetime) -> WindowCount:
        """Count events for ``identifier`` with ``occurred_at >= since``."""

        stmt = select(
            func.count(models.RateLimitRequest.id),
            func.min(models.RateLimitRequest.occurred_at),
        ).where(
            models.RateLimitRequest.identifier == identifier,
            models.RateLimitRequest.occurred_at >= since,
        )
        async with self._session() as session:
            count, oldest = (await session.execute(stmt)).one()
        return WindowCount(
            count=int(count or 0),
            oldest=as_utc(oldest) if oldest is not None else None,
        )

    async def prune_before(self, cutoff: datetime) -> int:
        """Delete events older than ``cutoff``; returns the number removed."""

        stmt = delete(models.RateLimitRequest).where(
            models.RateLimitRequest.occurred_at < cutoff
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return int(result.rowcount or 0)


__all__ = ["RequestEvent", "SQLRequestEventStore", "WindowCount", "as_utc"]
