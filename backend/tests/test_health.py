"""Integration tests for the health endpoint and app wiring."""
import pytest
from httpx import ASGITransport, AsyncClient

from app.main import app


@pytest.mark.anyio("asyncio")
async def test_health_endpoint_is_not_rate_limited() -> None:
    transport = ASGITransport(app=app, raise_app_exceptions=True)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        responses = [await client.get("/health") for _ in range(3)]

    assert [r.status_code for r in responses] == [200, 200, 200]
    assert responses[0].json() == {"status": "ok"}
    assert "X-RateLimit-Limit" not in responses[0].headers


@pytest.mark.anyio("asyncio")
async def test_cors_exposes_rate_limit_headers() -> None:
    transport = ASGITransport(app=app, raise_app_exceptions=True)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health", headers={"Origin": "https://shop.example"})

    exposed = response.headers["access-control-expose-headers"]
    for name in ("X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"):
        assert name in exposed
