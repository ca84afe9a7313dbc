"""
Pytest configuration and fixtures.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio

from tools import storage
from tools.common import reset_config_cache
from tools.engagements import Conversation, Engagement, Message
from tools.xapi import ConversationCheckResult, ReplyResult, XReply

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
OUR_USER_ID = "100"
THEIR_USER_ID = "200"


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Never read a developer's config.json during tests."""
    monkeypatch.setenv("MONITOR_CONFIG", str(tmp_path / "missing-config.json"))
    reset_config_cache()
    yield
    reset_config_cache()


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    """Fresh SQLite database for one test."""
    monkeypatch.setattr(storage, "DB_PATH", str(tmp_path / "monitor.db"))
    await storage.init_db()
    return storage


def make_message(
    id: str,
    content: str = "I love how the light falls through the shoji screens",
    is_from_us: bool = False,
    at: Optional[datetime] = None,
) -> Message:
    return Message(
        id=id,
        author_id=OUR_USER_ID if is_from_us else THEIR_USER_ID,
        content=content,
        timestamp=at or NOW,
        is_from_us=is_from_us,
    )


def make_engagement(
    messages: Optional[list[Message]] = None,
    last_checked_at: Optional[datetime] = None,
    with_conversation: bool = True,
    **kwargs,
) -> Engagement:
    engagement = Engagement(
        id=kwargs.pop("id", 1),
        account=kwargs.pop("account", "tatamispaces"),
        target_post_id=kwargs.pop("target_post_id", "1000"),
        target_post_content=kwargs.pop("target_post_content", "A tea house in Kyoto with original tatami"),
        **kwargs,
    )
    if with_conversation:
        engagement.conversation = Conversation(
            thread_id=engagement.target_post_id,
            messages=list(messages or []),
            last_checked_at=last_checked_at,
        )
    return engagement


def make_reply(id: str, text: str = "Where is this tea house? I'd love to visit", author_id: str = THEIR_USER_ID) -> XReply:
    return XReply(id=id, author_id=author_id, text=text, created_at=NOW)


class FakeAdapter:
    """Platform adapter double with scripted responses and a call log."""

    def __init__(self, replies=None, error=None, own_user_id=OUR_USER_ID, send_error=None):
        self.replies = list(replies or [])
        self.error = error
        self.own_user_id = own_user_id
        self.send_error = send_error
        self.checks = []
        self.sent = []

    def check_conversation_replies(self, account, thread_id, since=None, own_last_message_id=None):
        self.checks.append((account, thread_id, since, own_last_message_id))
        if self.error:
            return ConversationCheckResult(success=False, error=self.error)
        return ConversationCheckResult(success=True, new_replies=list(self.replies))

    def get_own_user_id(self, account):
        return self.own_user_id

    def reply_to_post(self, account, tweet_id, text):
        if self.send_error:
            return ReplyResult(success=False, error=self.send_error)
        reply_id = f"9{len(self.sent):04d}"
        self.sent.append((account, tweet_id, text))
        return ReplyResult(success=True, reply_id=reply_id, reply_url=f"https://twitter.com/i/web/status/{reply_id}")


class FakeCompletion:
    """Completion service double.

    classify() answers with `decision` for decision prompts and `score` for
    quality prompts; generate() pops from `generations` (the last repeats).
    """

    def __init__(self, decision='{"should_respond": true, "reason": "question", "tone": "educational"}',
                 score="0.9", generations=None):
        self.decision = decision
        self.score = score
        self.generations = list(generations or [
            "The tea house is in the Higashiyama district of Kyoto, a short walk from Kiyomizu-dera. "
            "Visit early in the morning when the light through the shoji is softest.",
        ])
        self.classify_calls = []
        self.generate_calls = []

    def model_chain(self, prefer_fast, model=None):
        return ["fake-fast"] if prefer_fast else ["fake-quality", "fake-quality-fallback"]

    def classify(self, prompt, system=None, max_tokens=300):
        self.classify_calls.append(prompt)
        if "Rate this reply" in prompt:
            return self.score
        return self.decision

    def generate(self, messages, temperature=0.7, max_tokens=300, prefer_fast=False, model=None):
        self.generate_calls.append({"prefer_fast": prefer_fast, "model": model})
        if len(self.generations) > 1:
            return self.generations.pop(0)
        return self.generations[0]
