#!/usr/bin/env python3
"""Operator account transitions.

Usage:
    python scripts/manage_account.py suspend user@example.com --reason "chargeback"
    python scripts/manage_account.py reactivate user@example.com
    python scripts/manage_account.py deactivate user@example.com
    python scripts/manage_account.py unlock user@example.com

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: use the in-memory store (with STATE_DIR for persistence)
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from korella.config import Settings
from korella.service.errors import ServiceError
from korella.service.runtime import build_runtime
from korella.storage.common import normalize_email
from korella.storage.errors import StoreError

ACTIONS = ("suspend", "reactivate", "deactivate", "unlock")


async def manage_account(settings: Settings, action: str, email: str, reason: str | None) -> dict:
    runtime = build_runtime(settings)
    try:
        user = runtime.store.get_user_by_email(normalize_email(email))
        if user is None or user.is_deleted:
            raise SystemExit(f"Error: no account for {email}")
        lifecycle = runtime.auth.lifecycle
        if action == "unlock":
            updated = lifecycle.unlock(user.id, actor="operator")
        else:
            updated = getattr(lifecycle, action)(user.id, actor="operator", reason=reason)
        return {
            "user_id": updated.id,
            "email": updated.email,
            "status": updated.account_status.value,
            "failed_login_count": updated.failed_login_count,
        }
    finally:
        await runtime.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Apply an operator transition to a Korella account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("action", choices=ACTIONS)
    parser.add_argument("email")
    parser.add_argument("--reason", default=None, help="Recorded in the audit log")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    try:
        result = asyncio.run(manage_account(settings, args.action, args.email, args.reason))
    except (ServiceError, StoreError) as exc:
        print(f"Error: {exc.message}")
        return 1

    print(f"{args.action}: {result['email']} (id: {result['user_id']})")
    print(f"  Status: {result['status']}")
    print(f"  Failed logins: {result['failed_login_count']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
