from __future__ import annotations

import pytest
from sqlalchemy import func, select

from app.db import models
from app.security import (
    RateLimitError,
    authenticate_and_rate_limit,
    authenticate_api_request,
    get_api_key_from_request,
)
from app.services.api_keys import SQLApiKeyStore
from app.services.rate_events import SQLRequestEventStore
from app.services.rate_limit import (
    AdmissionGate,
    DecisionReason,
    QuotaSource,
    RateLimitPolicy,
    RequestContext,
)


class SpyKeyStore(SQLApiKeyStore):
    def __init__(self, session_maker) -> None:
        super().__init__(session_maker)
        self.verify_calls = 0

    async def verify_key(self, plaintext: str):
        self.verify_calls += 1
        return await super().verify_key(plaintext)


def _ctx(ip: str = "1.2.3.4", key: str | None = None, *, bearer: bool = False) -> RequestContext:
    headers = {"X-Forwarded-For": ip}
    if key is not None:
        if bearer:
            headers["Authorization"] = f"Bearer {key}"
        else:
            headers["X-API-Key"] = key
    return RequestContext.from_headers(headers, method="GET", url="http://test/api/v1/products")


def _gate(session_maker, clock, store: SQLApiKeyStore) -> AdmissionGate:
    return AdmissionGate(
        events=SQLRequestEventStore(session_maker),
        quota=QuotaSource(store),
        clock=clock,
    )


async def _events_for(session_maker, identifier: str) -> int:
    async with session_maker() as session:
        result = await session.execute(
            select(func.count(models.RateLimitRequest.id)).where(
                models.RateLimitRequest.identifier == identifier
            )
        )
        return int(result.scalar_one())


def test_api_key_header_extraction() -> None:
    assert get_api_key_from_request(_ctx(key="abc.def", bearer=True)) == "abc.def"
    assert get_api_key_from_request(_ctx(key="abc.def")) == "abc.def"
    assert get_api_key_from_request(_ctx()) is None


@pytest.mark.anyio
async def test_authenticate_checks_scopes(session_maker) -> None:
    store = SQLApiKeyStore(session_maker)
    _, plaintext = await store.issue_key(name="reader", scopes=["products:read"])

    ok = await authenticate_api_request(_ctx(key=plaintext), "products:read", store)
    forbidden = await authenticate_api_request(_ctx(key=plaintext), "orders:write", store)
    invalid = await authenticate_api_request(_ctx(key="nope.nope"), None, store)

    assert ok.success
    assert ok.api_key is not None
    assert (forbidden.success, forbidden.status_code, forbidden.error) == (False, 403, "Insufficient permissions")
    assert (invalid.status_code, invalid.error) == (401, "Invalid or expired API key")


@pytest.mark.anyio
async def test_unavailable_registry_is_reported_as_503() -> None:
    result = await authenticate_api_request(_ctx(key="abc.def"), None, SQLApiKeyStore(None))

    assert not result.success
    assert result.status_code == 503


@pytest.mark.anyio
async def test_missing_key_still_counts_against_ip(session_maker, clock) -> None:
    store = SQLApiKeyStore(session_maker)
    gate = _gate(session_maker, clock, store)

    result = await authenticate_and_rate_limit(_ctx("9.9.9.9"), None, gate=gate, store=store)

    assert not isinstance(result, RateLimitError)
    assert not result.success
    assert result.status_code == 401
    assert result.error == "API key required"
    assert result.decision is not None and result.decision.allowed
    assert await _events_for(session_maker, "ip:9.9.9.9") == 1


@pytest.mark.anyio
async def test_successful_request_is_decided_by_key_tier(session_maker, clock) -> None:
    store = SQLApiKeyStore(session_maker)
    rec, plaintext = await store.issue_key(name="ci", scopes=["*"], daily_limit=20)
    gate = _gate(session_maker, clock, store)

    result = await authenticate_and_rate_limit(
        _ctx(key=plaintext, bearer=True), "orders:read", gate=gate, store=store
    )

    assert not isinstance(result, RateLimitError)
    assert result.success
    assert result.api_key is not None and result.api_key.id == rec.id
    assert result.decision is not None
    assert result.decision.tier == "apikey"
    assert result.decision.limit == 20
    assert await _events_for(session_maker, f"apikey:{rec.id}") == 1


@pytest.mark.anyio
async def test_over_limit_ip_is_refused_before_key_lookup(session_maker, clock) -> None:
    store = SpyKeyStore(session_maker)
    _, plaintext = await store.issue_key(name="ci", scopes=["*"])
    gate = _gate(session_maker, clock, store)
    policy = RateLimitPolicy(window_seconds=60, max_requests=1)

    await gate.check_rate_limit(_ctx("6.6.6.6"), policy=policy)
    result = await authenticate_and_rate_limit(
        _ctx("6.6.6.6", key=plaintext), None, policy, gate=gate, store=store
    )

    assert isinstance(result, RateLimitError)
    assert result.status_code == 429
    assert result.error == "Rate limit exceeded"
    assert result.decision.retry_after_seconds == 60
    assert store.verify_calls == 0


@pytest.mark.anyio
async def test_daily_quota_denial_surfaces_as_rate_limit_error(session_maker, clock) -> None:
    store = SQLApiKeyStore(session_maker)
    _, plaintext = await store.issue_key(name="ci", scopes=["*"], daily_limit=1)
    gate = _gate(session_maker, clock, store)

    first = await authenticate_and_rate_limit(_ctx("1.1.1.1", key=plaintext), None, gate=gate, store=store)
    clock.advance(120)
    second = await authenticate_and_rate_limit(_ctx("1.1.1.2", key=plaintext), None, gate=gate, store=store)

    assert not isinstance(first, RateLimitError)
    assert isinstance(second, RateLimitError)
    assert second.decision.reason is DecisionReason.DAILY_QUOTA_EXCEEDED
    assert second.status_code == 429
    assert second.error == "API key daily quota exceeded"
