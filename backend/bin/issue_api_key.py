#!/usr/bin/env python3
"""Issue an API key with an optional daily quota.

Usage:
  python backend/bin/issue_api_key.py --name "ci" \
    [--scope products:read --scope orders:read] [--daily-limit 5000] \
    [--seller-id 12] [--user-id 34]

Reads DATABASE_URL from the environment. The plaintext key is printed once.
"""
from __future__ import annotations

import argparse
import asyncio


async def _issue(args: argparse.Namespace) -> int:
    from app.core.config import get_settings
    from app.core.errors import StorageUnavailableError
    from app.db.base import Base
    from app.db.session import dispose_engine, get_async_engine, get_optional_session_maker
    from app.services.api_keys import SQLApiKeyStore

    settings = get_settings()
    if not settings.database_url:
        print("DATABASE_URL not set; cannot issue key")
        return 2

    engine = get_async_engine(settings)
    async with engine.begin() as conn:
        # Ensure tables exist (in case migrations were not run)
        await conn.run_sync(Base.metadata.create_all)

    store = SQLApiKeyStore(get_optional_session_maker(settings))
    try:
        rec, plaintext = await store.issue_key(
            name=args.name,
            scopes=args.scope or ["*"],
            daily_limit=args.daily_limit,
            seller_id=args.seller_id,
            user_id=args.user_id,
        )
    except StorageUnavailableError as exc:
        print("FATAL:", exc.message, exc.details or "")
        return 1
    finally:
        await dispose_engine(settings)

    print("Issued key", rec.id, "prefix", rec.prefix)
    print(plaintext)
    return 0


def main() -> int:
    ap = argparse.ArgumentParser(description="Issue an API key")
    ap.add_argument("--name", required=True, help="Human-readable key name")
    ap.add_argument("--scope", action="append", help="Permission scope; repeatable (default: *)")
    ap.add_argument("--daily-limit", type=int, default=None, help="Requests per UTC day")
    ap.add_argument("--seller-id", type=int, default=None)
    ap.add_argument("--user-id", type=int, default=None)
    args = ap.parse_args()
    return asyncio.run(_issue(args))


if __name__ == "__main__":
    raise SystemExit(main())
