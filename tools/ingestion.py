"""
Reply ingestion: pull new replies for one conversation from the platform.

Drops our own messages and anything already recorded (by id), appends the
rest to the conversation, and stamps last_checked_at whether or not anything
new turned up.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from tools import storage
from tools.engagements import AppendMessages, Engagement, MarkChecked, Message
from tools.escalation import clear_failures

log = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    success: bool
    new_messages: list[Message] = field(default_factory=list)
    error: Optional[str] = None
    adapter_failed: bool = False      # the thread fetch itself failed; escalate
    own_user_id: Optional[str] = None


async def fetch_new_replies(engagement: Engagement, adapter, now: datetime) -> IngestionResult:
    conv = engagement.conversation
    if conv is None:
        raise ValueError(f"Engagement {engagement.id} has no conversation to check")

    log.info(
        f"Checking engagement {engagement.id}: thread {conv.thread_id}, "
        f"anchor {engagement.own_last_message_id()}, last checked {conv.last_checked_at}"
    )
    result = adapter.check_conversation_replies(
        engagement.account,
        conv.thread_id,
        conv.last_checked_at,
        engagement.own_last_message_id(),
    )
    if not result.success:
        return IngestionResult(success=False, error=result.error or "Unknown error", adapter_failed=True)

    for command in clear_failures(engagement):
        await storage.record(engagement, command)

    own_user_id = adapter.get_own_user_id(engagement.account)
    await storage.record(engagement, MarkChecked(checked_at=now))

    if not own_user_id:
        # The thread fetch worked, so this is not escalated; try again next run
        return IngestionResult(
            success=False,
            error=f"Could not get own user ID for engagement {engagement.id}",
        )

    known = conv.message_ids()
    fresh = []
    for reply in result.new_replies or []:
        if reply.author_id == own_user_id or reply.id in known:
            continue
        known.add(reply.id)
        fresh.append(Message(
            id=reply.id,
            author_id=reply.author_id,
            content=reply.text,
            timestamp=reply.created_at or now,
            is_from_us=False,
            url=reply.url,
        ))

    if fresh:
        await storage.record(engagement, AppendMessages(messages=fresh))
        log.info(f"Engagement {engagement.id}: {len(fresh)} new replies")

    return IngestionResult(success=True, new_messages=fresh, own_user_id=own_user_id)
