"""End-to-end tests for the rate limit dependencies on real routes."""
from __future__ import annotations

import asyncio
from pathlib import Path

from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import Settings, get_settings
from app.db.base import Base
from app.main import app
from app.services.api_keys import SQLApiKeyStore


def _prepare_db(db_url: str, *, daily_limit: int | None = None) -> str:
    async def _go() -> str:
        engine = create_async_engine(db_url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        store = SQLApiKeyStore(async_sessionmaker(engine, expire_on_commit=False))
        _, plaintext = await store.issue_key(name="api-test", scopes=["*"], daily_limit=daily_limit)
        await engine.dispose()
        return plaintext

    return asyncio.run(_go())


def _override_settings(db_url: str, **overrides: object) -> None:
    values: dict[str, object] = {"rate_limit_api_max_requests": 2, "rate_limit_feed_max_requests": 1}
    values.update(overrides)
    app.dependency_overrides[get_settings] = lambda: Settings(database_url=db_url, **values)


def test_api_key_window_headers_and_429(tmp_path: Path) -> None:
    db_url = "sqlite+aiosqlite:///" + str(tmp_path / "api_window.db")
    key = _prepare_db(db_url)
    _override_settings(db_url)

    with TestClient(app) as client:
        r1 = client.get("/api/v1/rate-limit", headers={"X-API-Key": key, "X-Forwarded-For": "10.0.0.1"})
        assert r1.status_code == 200, r1.text
        assert r1.headers["X-RateLimit-Limit"] == "2"
        assert r1.headers["X-RateLimit-Remaining"] == "1"
        assert "X-RateLimit-Reset" in r1.headers
        assert "Retry-After" not in r1.headers
        body = r1.json()
        assert body["window"]["policy"] == "api"
        assert body["window"]["remaining"] == 1
        assert body["daily"]["daily_limit"] == 1000
        assert body["daily"]["daily_usage_count"] == 1

        r2 = client.get("/api/v1/rate-limit", headers={"Authorization": f"Bearer {key}", "X-Forwarded-For": "10.0.0.2"})
        assert r2.status_code == 200
        assert r2.headers["X-RateLimit-Remaining"] == "0"

        r3 = client.get("/api/v1/rate-limit", headers={"X-API-Key": key, "X-Forwarded-For": "10.0.0.3"})
        assert r3.status_code == 429
        assert r3.json()["detail"] == "API key rate limit exceeded"
        assert int(r3.headers["Retry-After"]) >= 1
        assert r3.headers["X-RateLimit-Remaining"] == "0"

    app.dependency_overrides.pop(get_settings, None)


def test_missing_key_is_401_and_counts_against_ip(tmp_path: Path) -> None:
    db_url = "sqlite+aiosqlite:///" + str(tmp_path / "api_nokey.db")
    _prepare_db(db_url)
    _override_settings(db_url)

    with TestClient(app) as client:
        headers = {"X-Forwarded-For": "10.9.9.9"}
        r1 = client.get("/api/v1/rate-limit", headers=headers)
        assert r1.status_code == 401
        assert r1.json()["detail"] == "API key required"
        r2 = client.get("/api/v1/rate-limit", headers=headers)
        assert r2.status_code == 401
        r3 = client.get("/api/v1/rate-limit", headers=headers)
        assert r3.status_code == 429
        assert r3.json()["detail"] == "Rate limit exceeded"
        assert "Retry-After" in r3.headers

    app.dependency_overrides.pop(get_settings, None)


def test_daily_quota_exhaustion_returns_429(tmp_path: Path) -> None:
    db_url = "sqlite+aiosqlite:///" + str(tmp_path / "api_daily.db")
    key = _prepare_db(db_url, daily_limit=1)
    _override_settings(db_url, rate_limit_api_max_requests=100)

    with TestClient(app) as client:
        r1 = client.get("/api/v1/rate-limit", headers={"X-API-Key": key})
        assert r1.status_code == 200
        assert r1.headers["X-RateLimit-Limit"] == "1"
        r2 = client.get("/api/v1/rate-limit", headers={"X-API-Key": key})
        assert r2.status_code == 429
        assert r2.json()["detail"] == "API key daily quota exceeded"

    app.dependency_overrides.pop(get_settings, None)


def test_feed_policy_limits_by_ip(tmp_path: Path) -> None:
    db_url = "sqlite+aiosqlite:///" + str(tmp_path / "feed.db")
    _prepare_db(db_url)
    _override_settings(db_url)

    with TestClient(app) as client:
        r1 = client.get("/api/feeds/rate-limit", headers={"X-Real-IP": "172.16.0.5"})
        assert r1.status_code == 200
        assert r1.json()["window"]["policy"] == "feed"
        assert r1.headers["X-RateLimit-Limit"] == "1"

        r2 = client.get("/api/feeds/rate-limit", headers={"X-Real-IP": "172.16.0.5"})
        assert r2.status_code == 429
        assert 1 <= int(r2.headers["Retry-After"]) <= 300

        other = client.get("/api/feeds/rate-limit", headers={"X-Real-IP": "172.16.0.6"})
        assert other.status_code == 200

    app.dependency_overrides.pop(get_settings, None)


def test_storage_outage_fails_open(tmp_path: Path) -> None:
    # No tables: every gate query fails
    db_url = "sqlite+aiosqlite:///" + str(tmp_path / "empty.db")
    _override_settings(db_url)

    with TestClient(app) as client:
        for _ in range(3):
            r = client.get("/api/feeds/rate-limit")
            assert r.status_code == 200
            assert r.json()["window"]["degraded"] is True

    app.dependency_overrides.pop(get_settings, None)


def test_disabled_rate_limiting_only_authenticates(tmp_path: Path) -> None:
    db_url = "sqlite+aiosqlite:///" + str(tmp_path / "disabled.db")
    key = _prepare_db(db_url)
    _override_settings(db_url, rate_limit_enabled=False)

    with TestClient(app) as client:
        for _ in range(3):
            r = client.get("/api/v1/rate-limit", headers={"X-API-Key": key})
            assert r.status_code == 200
            assert "X-RateLimit-Limit" not in r.headers
        assert client.get("/api/feeds/rate-limit").status_code == 200

    app.dependency_overrides.pop(get_settings, None)
