"""SQL-backed API key registry.

Issues and verifies keys and exposes the rate-relevant fields of each key
(daily limit, daily usage counter, usage date, active flag). The counters
are only written through ``increment_api_key_daily_usage`` and
``reset_api_key_daily_usage``; both are single UPDATE statements so they
behave correctly across several server processes.
"""
from __future__ import annotations

import hashlib
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import AsyncIterator, Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import StorageUnavailableError
from app.db import models
from app.services.rate_events import as_utc


@dataclass(slots=True)
class ApiKeyRecord:
    id: str
    name: str
    prefix: str
    hashed_key: str
    scopes: list[str]
    is_active: bool
    created_at: str
    seller_id: int | None = None
    user_id: int | None = None
    expires_at: str | None = None
    last_used_at: str | None = None


@dataclass(frozen=True, slots=True)
class ApiKeyQuota:
    """Rate-relevant view of one key registry row."""

    api_key_id: str
    daily_limit: int | None
    daily_usage_count: int
    daily_usage_date: date | None
    active: bool


def hash_api_key(plaintext: str) -> str:
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def _scopes_from_row(row: models.ApiKey) -> list[str]:
    scopes: list[str] = []
    if row.scopes and isinstance(row.scopes, dict):
        maybe = row.scopes.get("scopes")
        if isinstance(maybe, list):
            scopes = [str(s) for s in maybe]
    return scopes


def _record_from_row(row: models.ApiKey) -> ApiKeyRecord:
    return ApiKeyRecord(
        id=row.id,
        name=row.name,
        prefix=row.prefix,
        hashed_key=row.hashed_key,
        scopes=_scopes_from_row(row),
        is_active=row.is_active,
        created_at=row.created_at.isoformat() if row.created_at else datetime.now(timezone.utc).isoformat(),
        seller_id=row.seller_id,
        user_id=row.user_id,
        expires_at=as_utc(row.expires_at).isoformat() if row.expires_at else None,
        last_used_at=row.last_used_at.isoformat() if row.last_used_at else None,
    )


class SQLApiKeyStore:
    """API key registry on the platform database."""

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
                "API key registry unavailable", details={"error": str(exc)}
            ) from exc

    # ---------------------
    # Issuance and lookup
    # ---------------------

    async def issue_key(
        self,
        *,
        name: str,
        scopes: Iterable[str],
        daily_limit: int | None = None,
        seller_id: int | None = None,
        user_id: int | None = None,
        expires_at: datetime | None = None,
    ) -> tuple[ApiKeyRecord, str]:
        prefix = os.urandom(6).hex()
        secret = os.urandom(24).hex()
        plaintext = f"{prefix}.{secret}"
        key_id = os.urandom(8).hex()
        scope_list = list(scopes)
        async with self._session() as session:
            row = models.ApiKey(
                id=key_id,
                name=name,
                prefix=prefix,
                hashed_key=hash_api_key(plaintext),
                scopes={"scopes": scope_list} if scope_list else None,
                seller_id=seller_id,
                user_id=user_id,
                is_active=True,
                expires_at=expires_at,
                usage_count=0,
                daily_limit=daily_limit,
                daily_usage_count=0,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            rec = _record_from_row(row)
        return rec, plaintext

    async def verify_key(self, plaintext: str) -> ApiKeyRecord | None:
        """Return the active, unexpired key matching ``plaintext``."""

        try:
            prefix, _ = plaintext.split(".", 1)
        except ValueError:
            return None
        async with self._session() as session:
            row = (
                await session.execute(
                    select(models.ApiKey).where(
                        models.ApiKey.prefix == prefix,
                        models.ApiKey.hashed_key == hash_api_key(plaintext),
                        models.ApiKey.is_active == True,  # noqa: E712
                    )
                )
            ).scalar_one_or_none()
            if not row:
                return None
            if row.expires_at and as_utc(row.expires_at) <= datetime.now(timezone.utc):
                return None
            return _record_from_row(row)

    async def touch_last_used(self, rec: ApiKeyRecord) -> None:
        async with self._session() as session:
            await session.execute(
                update(models.ApiKey)
                .where(models.ApiKey.id == rec.id)
                .values(
                    last_used_at=datetime.now(timezone.utc),
                    usage_count=models.ApiKey.usage_count + 1,
                )
            )
            await session.commit()

    async def list_keys(self) -> list[ApiKeyRecord]:
        async with self._session() as session:
            rows = (await session.execute(select(models.ApiKey))).scalars().all()
        return [_record_from_row(row) for row in rows]

    async def set_active(self, key_id: str, active: bool) -> bool:
        async with self._session() as session:
            res = await session.execute(
                update(models.ApiKey).where(models.ApiKey.id == key_id).values(is_active=bool(active))
            )
            await session.commit()
        return (res.rowcount or 0) > 0

    async def set_daily_limit(self, key_id: str, daily_limit: int | None) -> bool:
        async with self._session() as session:
            res = await session.execute(
                update(models.ApiKey).where(models.ApiKey.id == key_id).values(daily_limit=daily_limit)
            )
            await session.commit()
        return (res.rowcount or 0) > 0

    # ---------------------
    # Quota counters
    # ---------------------

    async def get_api_key_quota(self, api_key_id: str) -> ApiKeyQuota | None:
        async with self._session() as session:
            row = (
                await session.execute(select(models.ApiKey).where(models.ApiKey.id == api_key_id))
            ).scalar_one_or_none()
            if not row:
                return None
            active = bool(row.is_active)
            if active and row.expires_at and as_utc(row.expires_at) <= datetime.now(timezone.utc):
                active = False
            return ApiKeyQuota(
                api_key_id=row.id,
                daily_limit=row.daily_limit,
                daily_usage_count=int(row.daily_usage_count or 0),
                daily_usage_date=row.daily_usage_date,
                active=active,
            )

    async def increment_api_key_daily_usage(self, api_key_id: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(models.ApiKey)
                .where(models.ApiKey.id == api_key_id)
                .values(daily_usage_count=models.ApiKey.daily_usage_count + 1)
            )
            await session.commit()

    async def reset_api_key_daily_usage(self, api_key_id: str, day: date) -> bool:
        """Zero the daily counter unless it was already reset for ``day``.

        Compare-and-set on ``daily_usage_date``: of several concurrent callers
        for the same key and day, exactly one sees ``True``.
        """

        async with self._session() as session:
            res = await session.execute(
                update(models.ApiKey)
                .where(
                    models.ApiKey.id == api_key_id,
                    or_(
                        models.ApiKey.daily_usage_date.is_(None),
                        models.ApiKey.daily_usage_date != day,
                    ),
                )
                .values(daily_usage_count=0, daily_usage_date=day)
            )
            await session.commit()
        return (res.rowcount or 0) > 0


__all__ = ["ApiKeyQuota", "ApiKeyRecord", "SQLApiKeyStore", "hash_api_key"]
