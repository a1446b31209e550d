#!/usr/bin/env python3
"""Create a warden user account for local setup and smoke testing.

Usage:
    WARDEN_EMAIL=alice@example.com WARDEN_PASSWORD='Secure-Passw0rd' python scripts/bootstrap_user.py
    python scripts/bootstrap_user.py --email alice@example.com --password 'Secure-Passw0rd'

    # Leave the account unactivated and print its activation link:
    python scripts/bootstrap_user.py --email bob@example.com --password ... --inactive

Environment Variables:
    WARDEN_EMAIL / WARDEN_USERNAME / WARDEN_PASSWORD: account fields
    DATABASE_URL: PostgreSQL connection string (in-memory store when unset)
    AUTH_USERNAME_FIELD: login identifier column (email or username)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

_SPECIAL_CHARS = set("!@#$%^&*()_+-=[]{}|;':\",./<>?")
MIN_PASSWORD_LENGTH = 12


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3 of: upper, lower, digit, special."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return False
    classes = (
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(c in _SPECIAL_CHARS for c in password),
    )
    return sum(classes) >= 3


def bootstrap_user(
    email: str,
    password: str,
    username: str | None = None,
    *,
    inactive: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the account unless its identifier is already taken."""
    # Deferred so main() can adjust the environment before settings load
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    by_username = runtime.settings.username_field.value == "username"
    identifier = username if by_username else email

    if identifier and runtime.auth.user_exists(identifier):
        existing = runtime.store.find_by_identifier(identifier)
        return {"user_id": existing.id, "email": existing.email, "status": "exists"}
    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        username,
        password_hash=runtime.hasher.hash(password),
        activated=not inactive,
    )
    result = {"user_id": user.id, "email": user.email, "status": "created"}
    if inactive:
        ticket = runtime.accounts.issue_activation_code(identifier)
        if ticket:
            result["activation_link"] = ticket.link
    return result


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create a warden user account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("WARDEN_EMAIL"))
    parser.add_argument(
        "--username",
        default=os.environ.get("WARDEN_USERNAME"),
        help="Required when AUTH_USERNAME_FIELD=username",
    )
    parser.add_argument("--password", default=os.environ.get("WARDEN_PASSWORD"))
    parser.add_argument(
        "--inactive",
        action="store_true",
        help="Create the account unactivated and print its activation link",
    )
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = _parse_args(argv)
    if not args.email or not args.password:
        print("Error: --email and --password (or WARDEN_EMAIL/WARDEN_PASSWORD) are required")
        return 1
    if not validate_password(args.password):
        print(
            f"Error: password needs {MIN_PASSWORD_LENGTH}+ characters from at least "
            "3 classes (upper, lower, digit, special)"
        )
        return 1

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/warden-bootstrap")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: DATABASE_URL unset, using the in-memory store")

    try:
        result = bootstrap_user(
            args.email,
            args.password,
            args.username,
            inactive=args.inactive,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        return 1

    status = result["status"]
    if status == "created":
        print(f"Created user {result['email']} (id: {result['user_id']})")
        if result.get("activation_link"):
            print(f"Activation link: {result['activation_link']}")
    elif status == "exists":
        print(f"User {result['email']} already exists (id: {result['user_id']}); nothing to do")
    else:
        print(f"[DRY RUN] Would create user {result['email']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
