#!/usr/bin/env python3
"""Delete auth log rows and spent single-use tokens past the retention window.

Usage:
    python scripts/purge_auth_logs.py

Retention is AUTH_LOG_RETENTION_DAYS (default 7). Meant to run daily from
cron or a scheduler.
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from korella.config import Settings
from korella.logging import get_logger
from korella.service.runtime import build_runtime
from korella.storage.errors import StoreError

logger = get_logger(__name__)


async def purge(settings: Settings) -> dict[str, int]:
    runtime = build_runtime(settings)
    try:
        return runtime.auth.audit.purge()
    finally:
        await runtime.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Purge expired Korella auth logs and tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.parse_args(argv)

    settings = Settings.from_env()
    try:
        removed = asyncio.run(purge(settings))
    except StoreError as exc:
        logger.error("auth_log_purge_failed", error=exc.message)
        print(f"Error: {exc.message}")
        return 1
    print(f"Removed {removed['auth_logs']} auth log rows and {removed['tokens']} tokens")
    return 0


if __name__ == "__main__":
    sys.exit(main())
