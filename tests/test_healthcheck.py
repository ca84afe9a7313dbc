"""Tests for the operational health check."""

import pytest

import healthcheck
from tools import locks, storage


@pytest.mark.asyncio
async def test_expired_locks_flagged_and_fixed(db, monkeypatch):
    for suffix in ("CONSUMER_KEY", "CONSUMER_SECRET", "ACCESS_TOKEN", "ACCESS_TOKEN_SECRET"):
        monkeypatch.setenv(f"X_API_{suffix}", "test")
        monkeypatch.setenv(f"X_API_MUSEUM_{suffix}", "test")
    await locks.acquire_lock("conversation-monitor", ttl_seconds=-60, holder="crashed")

    checks = {name: (ok, msg) for name, ok, msg in await healthcheck.run_checks(fix=True)}

    assert checks["Database"][0]
    assert checks["Locks"] == (False, "Stale: cron:conversation-monitor (1 removed)")
    assert checks["Auth"][0]
    assert await storage.list_lock_records() == []


@pytest.mark.asyncio
async def test_missing_credentials_and_disabled_conversations(db, monkeypatch):
    for suffix in ("CONSUMER_KEY", "CONSUMER_SECRET", "ACCESS_TOKEN", "ACCESS_TOKEN_SECRET"):
        monkeypatch.delenv(f"X_API_MUSEUM_{suffix}", raising=False)
    engagement_id = await storage.add_engagement("tatamispaces", "1000", our_reply_id="500")
    await storage.initialize_conversation(engagement_id, "1000", "500", "Hinoki beams")
    await storage.disable_auto_response(engagement_id, "Auth error: Unauthorized")

    checks = {name: (ok, msg) for name, ok, msg in await healthcheck.run_checks()}

    assert not checks["Auth"][0]
    assert "museumstories missing X_API_MUSEUM_CONSUMER_KEY" in checks["Auth"][1]
    assert checks["Disabled"][0]
    assert "Auth error: Unauthorized" in checks["Disabled"][1]
