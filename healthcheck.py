#!/usr/bin/env python3
"""
Health check for the conversation monitor.

Checks: imports, database, stale cron locks, account credentials,
disabled conversations.

Usage:
    python healthcheck.py          # Run checks, report
    python healthcheck.py --fix    # Auto-fix: remove expired lock records
"""

import sys
import time
import asyncio
import argparse
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from dotenv import load_dotenv
load_dotenv()

from config.accounts import list_accounts, missing_credentials
from tools import storage
from tools.common import notify, setup_logging

log = setup_logging("healthcheck")

DISABLED_WARN_THRESHOLD = 10


def check_imports() -> tuple[bool, str]:
    """Try importing every runtime module to catch broken dependencies."""
    modules = [
        "tools.common",
        "tools.xapi",
        "tools.completion",
        "tools.storage",
        "tools.locks",
        "agents.conversation_analyst",
        "agents.responder",
    ]
    failures = []
    for module_name in modules:
        try:
            __import__(module_name)
        except Exception as e:
            failures.append(f"{module_name}: {e}")

    if failures:
        return False, f"Import failures: {'; '.join(failures)}"
    return True, f"All {len(modules)} modules import OK"


async def check_database() -> tuple[bool, str]:
    try:
        await storage.init_db()
        stats = await storage.get_conversation_stats()
    except Exception as e:
        return False, f"Database unreachable ({storage.DB_PATH}): {e}"
    return True, f"{stats['total_active_conversations']} conversations tracked"


async def check_stale_locks() -> tuple[bool, list[dict]]:
    """Lock records past their expiry (left behind by crashed runs)."""
    now = time.time()
    stale = [lock for lock in await storage.list_lock_records() if lock["expires_at"] < now]
    return not stale, stale


def check_credentials() -> tuple[bool, str]:
    warnings = []
    for account_id in list_accounts():
        missing = missing_credentials(account_id)
        if missing:
            warnings.append(f"{account_id} missing {', '.join(missing)}")
    if warnings:
        return False, "; ".join(warnings)
    return True, f"{len(list_accounts())} accounts configured"


async def check_disabled_conversations() -> tuple[bool, str]:
    disabled = await storage.get_disabled_conversations(limit=DISABLED_WARN_THRESHOLD + 1)
    if not disabled:
        return True, "No disabled conversations"
    reasons = [f"#{d['id']} {d['conv_disabled_reason'] or 'no reason'}" for d in disabled[:3]]
    msg = f"{len(disabled)}{'+' if len(disabled) > DISABLED_WARN_THRESHOLD else ''} disabled (latest: {'; '.join(reasons)})"
    return len(disabled) <= DISABLED_WARN_THRESHOLD, msg


async def run_checks(fix: bool = False) -> list[tuple[str, bool, str]]:
    checks = []

    ok, msg = check_imports()
    checks.append(("Imports", ok, msg))

    ok, msg = await check_database()
    checks.append(("Database", ok, msg))
    if not ok:
        return checks

    ok, stale = await check_stale_locks()
    if stale:
        msg = f"Stale: {', '.join(lock['lock_id'] for lock in stale)}"
        if fix:
            removed = await storage.delete_expired_lock_records(time.time())
            msg += f" ({removed} removed)"
    else:
        msg = "No stale locks"
    checks.append(("Locks", ok, msg))

    ok, msg = check_credentials()
    checks.append(("Auth", ok, msg))

    ok, msg = await check_disabled_conversations()
    checks.append(("Disabled", ok, msg))
    return checks


def main():
    parser = argparse.ArgumentParser(description="Health check for the conversation monitor")
    parser.add_argument("--fix", action="store_true", help="Auto-fix: remove expired lock records")
    args = parser.parse_args()

    log.info("Running health check...")
    checks = asyncio.run(run_checks(fix=args.fix))
    for name, ok, msg in checks:
        log.info(f"  {'OK' if ok else 'WARN'} {name}: {msg}")

    passed = sum(1 for _, ok, _ in checks if ok)
    total = len(checks)
    warnings = [f"{name}: {msg}" for name, ok, msg in checks if not ok]

    summary = f"Health: {passed}/{total} OK"
    if warnings:
        summary += ". WARN: " + "; ".join(warnings)

    log.info(f"\n  {summary}")
    notify("health check", summary, priority="default" if passed == total else "high")
    return 0 if passed == total else 1


if __name__ == "__main__":
    sys.exit(main())
