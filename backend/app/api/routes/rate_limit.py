"""Rate limit status endpoints for API clients and feed consumers."""
from __future__ import annotations

import math

from fastapi import APIRouter, Depends, Request

from app.core.config import Settings, get_settings
from app.core.errors import StorageUnavailableError
from app.deps import get_api_key_store
from app.schemas.rate_limit import DailyQuotaStatus, RateLimitStatusResponse, WindowStatus
from app.security import rate_limit, require_api_key
from app.services.api_keys import ApiKeyRecord, SQLApiKeyStore
from app.services.rate_limit import Decision, named_policies


router = APIRouter(tags=["rate-limit"])


def _window_status(decision: Decision | None, policy_name: str, settings: Settings) -> WindowStatus:
    policy = named_policies(settings)[policy_name]
    if decision is None:
        return WindowStatus(
            policy=policy_name, limit=policy.max_requests, remaining=policy.max_requests, reset=0
        )
    return WindowStatus(
        policy=policy_name,
        limit=decision.limit,
        remaining=max(0, decision.remaining),
        reset=int(math.ceil(decision.reset_time.timestamp())),
        degraded=decision.degraded,
    )


@router.get(
    "/v1/rate-limit",
    response_model=RateLimitStatusResponse,
    summary="Current window and daily quota for the calling API key",
)
async def api_key_rate_limit_status(
    request: Request,
    api_key: ApiKeyRecord = Depends(require_api_key(None, "api")),
    settings: Settings = Depends(get_settings),
    store: SQLApiKeyStore = Depends(get_api_key_store),
) -> RateLimitStatusResponse:
    decision = getattr(request.state, "rate_limit_decision", None)
    window = _window_status(decision, "api", settings)

    daily: DailyQuotaStatus | None = None
    try:
        quota = await store.get_api_key_quota(api_key.id)
    except StorageUnavailableError:
        quota = None
    if quota is not None:
        daily = DailyQuotaStatus(
            api_key_id=quota.api_key_id,
            daily_limit=(
                quota.daily_limit
                if quota.daily_limit is not None
                else settings.api_key_default_daily_limit
            ),
            daily_usage_count=quota.daily_usage_count,
            daily_usage_date=quota.daily_usage_date,
        )
    return RateLimitStatusResponse(window=window, daily=daily)


@router.get(
    "/feeds/rate-limit",
    response_model=RateLimitStatusResponse,
    summary="Current feed export window for the calling client",
)
async def feed_rate_limit_status(
    decision: Decision | None = Depends(rate_limit("feed")),
    settings: Settings = Depends(get_settings),
) -> RateLimitStatusResponse:
    return RateLimitStatusResponse(window=_window_status(decision, "feed", settings))
