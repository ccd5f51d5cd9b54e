"""Schemas for rate limit status endpoints."""
from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field


class WindowStatus(BaseModel):
    policy: str = Field(..., description="Named policy applied to the request")
    limit: int = Field(..., description="Requests allowed per window")
    remaining: int = Field(..., description="Requests left in the current window")
    reset: int = Field(..., description="Unix seconds when capacity frees up")
    degraded: bool = Field(default=False, description="Limiter storage was unavailable")


class DailyQuotaStatus(BaseModel):
    api_key_id: str
    daily_limit: int
    daily_usage_count: int
    daily_usage_date: date | None = None


class RateLimitStatusResponse(BaseModel):
    window: WindowStatus
    daily: DailyQuotaStatus | None = None
