"""Celery integration (optional).

If REDIS_URL is configured and Celery is installed, this module exposes a Celery
app that prunes the rate limit event log on a beat schedule. Otherwise it no-ops
and pruning relies on the gate's opportunistic background runs.
"""
from __future__ import annotations

import os
from typing import Any

from app.core.config import get_settings
from app.services.rate_limit import build_admission_gate
from app.db.session import dispose_engine, get_optional_session_maker

PRUNE_TASK_NAME = "rate_limit.prune_events"

_CELERY = None


async def prune_rate_limit_events() -> int:
    """One prune pass; pooled connections are released before returning."""

    settings = get_settings()
    gate = build_admission_gate(settings, get_optional_session_maker(settings))
    try:
        return await gate.prune()
    finally:
        await dispose_engine(settings)


def _get_celery() -> Any | None:
    global _CELERY
    if _CELERY is not None:
        return _CELERY
    settings = get_settings()
    redis_url = os.environ.get("REDIS_URL") or settings.redis_url
    if not redis_url:
        _CELERY = None
        return None
    try:
        from celery import Celery  # type: ignore
    except ImportError:
        _CELERY = None
        return None
    app = Celery("commerce_gate", broker=redis_url, backend=redis_url)
    app.conf.beat_schedule = {
        "prune-rate-limit-events": {
            "task": PRUNE_TASK_NAME,
            "schedule": float(settings.rate_limit_prune_interval_seconds),
        }
    }

    @app.task(name=PRUNE_TASK_NAME)
    def _prune() -> int:  # type: ignore[no-redef]
        import asyncio as _asyncio

        return _asyncio.run(prune_rate_limit_events())

    _CELERY = app
    return _CELERY


celery_app = _get_celery()

__all__ = ["celery_app", "prune_rate_limit_events"]
