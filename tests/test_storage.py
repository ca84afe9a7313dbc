"""Tests for SQLite persistence of engagements and aggregate commands."""

import json
from datetime import timedelta

import pytest

from tools import storage
from tools.common import reset_config_cache
from tools.engagements import (
    AppendMessages,
    CapReachedError,
    DecrementResponseCount,
    Disable,
    IncrementResponseCount,
    InitializeConversation,
    MarkChecked,
    RecordFailure,
    ResetFailures,
    STATUS_CONVERSATION,
    STATUS_DISABLED,
    STATUS_PENDING,
    synthesize_conversation,
)

from conftest import NOW, make_message


async def tracked_engagement(**kwargs) -> int:
    engagement_id = await storage.add_engagement("tatamispaces", "1000", our_reply_id="500", **kwargs)
    await storage.initialize_conversation(engagement_id, "1000", "500", "Those ceiling beams are hinoki")
    return engagement_id


@pytest.mark.asyncio
class TestFindEngagements:
    async def test_legacy_engagement_with_outreach_reply_is_found(self, db):
        engagement_id = await storage.add_engagement("tatamispaces", "1000", our_reply_id="500")
        found = await storage.find_engagements_to_check()
        assert [e.id for e in found] == [engagement_id]
        assert found[0].conversation is None

    async def test_engagement_without_reply_is_ignored(self, db):
        await storage.add_engagement("tatamispaces", "1000")
        assert await storage.find_engagements_to_check() == []

    async def test_they_replied_flag_selects_legacy_engagement(self, db):
        await storage.add_engagement("tatamispaces", "1000", they_replied=True)
        assert len(await storage.find_engagements_to_check()) == 1

    async def test_disabled_and_capped_conversations_are_excluded(self, db):
        disabled = await tracked_engagement()
        capped = await tracked_engagement()
        active = await tracked_engagement()
        await storage.disable_auto_response(disabled, "test")
        for _ in range(3):
            await storage.apply_command(capped, IncrementResponseCount())
        found = await storage.find_engagements_to_check()
        assert [e.id for e in found] == [active]

    async def test_account_filter(self, db):
        await storage.add_engagement("tatamispaces", "1000", our_reply_id="500")
        other = await storage.add_engagement("museumstories", "2000", our_reply_id="600")
        found = await storage.find_engagements_to_check(account="museumstories")
        assert [e.id for e in found] == [other]

    async def test_least_recently_checked_first(self, db):
        older = await tracked_engagement()
        newer = await tracked_engagement()
        never = await storage.add_engagement("tatamispaces", "3000", our_reply_id="700")
        await storage.apply_command(older, MarkChecked(NOW - timedelta(hours=3)))
        await storage.apply_command(newer, MarkChecked(NOW - timedelta(hours=1)))
        found = await storage.find_engagements_to_check()
        assert [e.id for e in found] == [never, older, newer]


@pytest.mark.asyncio
class TestCommands:
    async def test_initialize_conversation_seeds_our_reply(self, db):
        engagement_id = await tracked_engagement()
        engagement = await storage.get_engagement(engagement_id)
        conv = engagement.conversation
        assert conv.thread_id == "1000"
        assert conv.auto_response_enabled
        assert conv.max_auto_responses == 3
        assert [m.id for m in conv.messages] == ["500"]
        assert conv.messages[0].is_from_us

    async def test_initialize_twice_does_not_reset(self, db):
        engagement_id = await tracked_engagement()
        await storage.apply_command(engagement_id, IncrementResponseCount())
        assert not await storage.apply_command(engagement_id, InitializeConversation(thread_id="1000"))
        engagement = await storage.get_engagement(engagement_id)
        assert engagement.conversation.current_auto_response_count == 1

    async def test_append_dedupes_by_id(self, db):
        engagement_id = await tracked_engagement()
        msg = make_message("601")
        assert await storage.apply_command(engagement_id, AppendMessages([msg]))
        assert not await storage.apply_command(engagement_id, AppendMessages([msg]))
        engagement = await storage.get_engagement(engagement_id)
        assert [m.id for m in engagement.conversation.messages] == ["500", "601"]
        assert engagement.conversation_length == 2
        assert engagement.they_replied and not engagement.we_replied_again

    async def test_increment_is_guarded_at_the_cap(self, db):
        engagement_id = await tracked_engagement()
        results = [await storage.apply_command(engagement_id, IncrementResponseCount()) for _ in range(5)]
        assert results == [True, True, True, False, False]
        engagement = await storage.get_engagement(engagement_id)
        assert engagement.conversation.current_auto_response_count == 3
        assert engagement.status == STATUS_CONVERSATION

    async def test_record_raises_when_cap_refuses(self, db):
        engagement_id = await tracked_engagement()
        for _ in range(3):
            await storage.apply_command(engagement_id, IncrementResponseCount())
        engagement = await storage.get_engagement(engagement_id)
        with pytest.raises(CapReachedError):
            await storage.record(engagement, IncrementResponseCount())

    async def test_decrement_gives_back_a_reserved_slot(self, db):
        engagement_id = await tracked_engagement()
        engagement = await storage.get_engagement(engagement_id)
        await storage.record(engagement, IncrementResponseCount())
        assert engagement.status == STATUS_CONVERSATION

        assert await storage.record(engagement, DecrementResponseCount())
        assert engagement.conversation.current_auto_response_count == 0
        assert engagement.status == STATUS_PENDING
        stored = await storage.get_engagement(engagement_id)
        assert stored.conversation.current_auto_response_count == 0
        assert stored.status == STATUS_PENDING

    async def test_decrement_never_goes_below_zero(self, db):
        engagement_id = await tracked_engagement()
        assert not await storage.apply_command(engagement_id, DecrementResponseCount())
        assert (await storage.get_engagement(engagement_id)).conversation.current_auto_response_count == 0

    async def test_initialize_uses_configured_cap(self, db, tmp_path, monkeypatch):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"limits": {"max_responses_per_conversation": 5}}))
        monkeypatch.setenv("MONITOR_CONFIG", str(config_path))
        reset_config_cache()

        engagement_id = await tracked_engagement()
        assert (await storage.get_engagement(engagement_id)).conversation.max_auto_responses == 5

    async def test_failures_and_reset(self, db):
        engagement_id = await tracked_engagement()
        await storage.apply_command(engagement_id, RecordFailure(consecutive_failures=2, checked_at=NOW))
        engagement = await storage.get_engagement(engagement_id)
        assert engagement.conversation.consecutive_failures == 2
        assert engagement.conversation.last_checked_at == NOW
        await storage.apply_command(engagement_id, ResetFailures())
        assert (await storage.get_engagement(engagement_id)).conversation.consecutive_failures == 0

    async def test_disable_sets_reason_and_status(self, db):
        engagement_id = await tracked_engagement()
        await storage.apply_command(engagement_id, Disable(reason="Auth error: Unauthorized", checked_at=NOW))
        engagement = await storage.get_engagement(engagement_id)
        assert engagement.status == STATUS_DISABLED
        assert not engagement.conversation.auto_response_enabled
        assert engagement.conversation.disabled_reason == "Auth error: Unauthorized"
        assert engagement.conversation.last_checked_at == NOW

    async def test_record_keeps_memory_and_disk_in_step(self, db):
        engagement_id = await storage.add_engagement(
            "tatamispaces", "1000", our_reply_id="500", our_reply_content="Hinoki beams",
        )
        engagement = (await storage.find_engagements_to_check())[0]
        await storage.record(engagement, synthesize_conversation(engagement, NOW))
        await storage.record(engagement, AppendMessages([make_message("601")]))
        await storage.record(engagement, MarkChecked(NOW))

        reloaded = await storage.get_engagement(engagement_id)
        assert reloaded.conversation.message_ids() == engagement.conversation.message_ids() == {"500", "601"}
        assert reloaded.conversation.last_checked_at == engagement.conversation.last_checked_at == NOW
        assert reloaded.conversation_length == engagement.conversation_length == 2


@pytest.mark.asyncio
class TestReporting:
    async def test_conversation_stats(self, db):
        first = await tracked_engagement()
        second = await tracked_engagement()
        await storage.add_engagement("tatamispaces", "3000")
        await storage.apply_command(first, AppendMessages([make_message("601")]))
        await storage.apply_command(first, IncrementResponseCount())
        await storage.disable_auto_response(second)

        stats = await storage.get_conversation_stats()
        assert stats["total_active_conversations"] == 2
        assert stats["conversations_with_replies"] == 1
        assert stats["auto_responses_enabled"] == 1
        assert stats["auto_responses_sent"] == 1
        assert stats["disabled_conversations"] == 1
        assert stats["average_conversation_length"] == pytest.approx(4 / 3, rel=1e-2)

    async def test_disabled_conversations_listing(self, db):
        engagement_id = await tracked_engagement()
        await storage.disable_auto_response(engagement_id, "Safety: Spam pattern detected (URL)")
        disabled = await storage.get_disabled_conversations()
        assert disabled[0]["id"] == engagement_id
        assert disabled[0]["conv_disabled_reason"] == "Safety: Spam pattern detected (URL)"

    async def test_count_messages_from_us_window(self, db):
        engagement_id = await tracked_engagement()
        await storage.apply_command(engagement_id, AppendMessages([
            make_message("700", is_from_us=True, at=NOW),
            make_message("701", is_from_us=True, at=NOW - timedelta(days=2)),
        ]))
        count = await storage.count_messages_from_us(NOW - timedelta(hours=1), NOW + timedelta(hours=1))
        assert count == 1
