"""SQLAlchemy ORM models."""
from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Date, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ApiKey(Base):
    """API key registry row, including the daily quota counters."""

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    prefix: Mapped[str] = mapped_column(String(24), nullable=False, unique=True, index=True)
    hashed_key: Mapped[str] = mapped_column(String(64), nullable=False)
    scopes: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    seller_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Quota counters; written only by the admission gate
    daily_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    daily_usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_usage_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RateLimitRequest(Base):
    """One admitted request, appended by the admission gate."""

    __tablename__ = "rate_limit_requests"
    __table_args__ = (
        Index("ix_rate_limit_requests_identifier_occurred_at", "identifier", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # "ip:<canonical address>" or "apikey:<key id>"
    identifier: Mapped[str] = mapped_column(String(128), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
