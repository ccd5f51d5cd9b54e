#!/usr/bin/env python3
"""Delete rate limit events past the retention horizon.

Usage:
  python backend/bin/prune_rate_limit_events.py

Suitable for cron when Celery beat is not deployed. Retention comes from
RATE_LIMIT_RETENTION_SECONDS (default 24h).
"""
from __future__ import annotations

import asyncio


async def main() -> int:
    from app.core.errors import StorageUnavailableError
    from app.worker.celery_app import prune_rate_limit_events

    try:
        removed = await prune_rate_limit_events()
    except StorageUnavailableError as exc:
        print("FATAL:", exc.message, exc.details or "")
        return 1
    print("Removed", removed, "events")
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
