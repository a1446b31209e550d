#!/usr/bin/env python3
"""Inspect or lift a login suspension for an identifier/origin pair.

Usage:
    python scripts/clear_attempts.py --identifier alice@example.com --origin 1.2.3.4
    python scripts/clear_attempts.py --identifier alice@example.com --origin 1.2.3.4 --show

Environment Variables:
    REDIS_URL: Redis holding the shared attempt counters (required)
    DATABASE_URL: PostgreSQL connection string (in-memory user store when unset)

Counters only outlive a process in Redis. The in-memory fallback used under
TEST_MODE or ALLOW_REDIS_FALLBACK_DEV belongs to the serving process, so this
script refuses to run without REDIS_URL rather than clear an empty store.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def clear_attempts(identifier: str, origin: str, *, show_only: bool = False) -> dict:
    from warden.service.runtime import get_runtime

    tracker = get_runtime().tracker
    count = await tracker.get(identifier, origin)
    suspended = await tracker.is_suspended(identifier, origin)
    result = {"identifier": identifier, "origin": origin, "attempts": count, "suspended": suspended}
    if not show_only:
        await tracker.clear(identifier, origin)
        result["cleared"] = True
    return result


def _apply_local_defaults() -> None:
    """Let the runtime start without a database; only the attempt store is used."""
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/warden-clear-attempts")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Inspect or clear failed-login attempts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--identifier", required=True, help="Login identifier")
    parser.add_argument("--origin", required=True, help="Client origin (IP address)")
    parser.add_argument("--show", action="store_true", help="Only print the current state")
    args = parser.parse_args(argv)

    if not os.environ.get("REDIS_URL"):
        print("Error: REDIS_URL is required; in-memory attempt counters live in the serving process")
        return 1
    _apply_local_defaults()

    try:
        result = asyncio.run(clear_attempts(args.identifier, args.origin, show_only=args.show))
    except Exception as e:
        print(f"Error: {e}")
        return 1

    state = "suspended" if result["suspended"] else "active"
    print(f"{args.identifier} from {args.origin}: {result['attempts']} failed attempts ({state})")
    if result.get("cleared"):
        print("Attempts cleared.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
