"""
SQLite storage for the conversation monitor.
Uses aiosqlite for async database operations.

Holds engagement records (with their nested conversation and messages) and
the cron lock records. Engagement mutations go through apply_command(), which
maps each aggregate command to one field-scoped update.
"""

import aiosqlite
import os
from pathlib import Path
from datetime import datetime
from typing import Optional

from config.limits import get_limits
from tools.common import iso, to_utc, utc_now
from tools.engagements import (
    AppendMessages,
    CapReachedError,
    Command,
    Conversation,
    DecrementResponseCount,
    Disable,
    Engagement,
    IncrementResponseCount,
    InitializeConversation,
    MarkChecked,
    Message,
    RecordFailure,
    ResetFailures,
    STATUS_PENDING,
)

# Database path - overridable for production disks and tests
DB_PATH = os.environ.get("DB_PATH", "db/monitor.db")

SCHEMA_PATH = Path(__file__).parent.parent / "db" / "schema.sql"

# Seconds sqlite waits on a locked database before raising
BUSY_TIMEOUT = 10.0


def get_db_path() -> Path:
    """Get database path, ensuring parent directory exists."""
    db_path = Path(DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


def _connect():
    return aiosqlite.connect(get_db_path(), timeout=BUSY_TIMEOUT)


async def init_db():
    """Initialize database with schema."""
    async with _connect() as db:
        with open(SCHEMA_PATH) as f:
            await db.executescript(f.read())
        await db.commit()


# Engagement operations

async def add_engagement(
    account: str,
    target_post_id: str,
    target_post_content: str = "",
    target_user_id: str = "",
    target_username: str = "",
    platform: str = "twitter",
    our_reply_id: Optional[str] = None,
    our_reply_content: Optional[str] = None,
    our_reply_url: Optional[str] = None,
    engaged_at: Optional[datetime] = None,
    they_replied: bool = False,
) -> int:
    """Record an outreach engagement. Conversation tracking starts later."""
    async with _connect() as db:
        cursor = await db.execute(
            """
            INSERT INTO engagements
            (account, platform, status, target_post_id, target_post_content, target_user_id,
             target_username, our_reply_id, our_reply_content, our_reply_url, engaged_at, they_replied)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                account, platform, STATUS_PENDING, target_post_id, target_post_content,
                target_user_id, target_username, our_reply_id, our_reply_content,
                our_reply_url, iso(engaged_at or utc_now()), int(they_replied),
            ),
        )
        await db.commit()
        return cursor.lastrowid


def _message_from_row(row) -> Message:
    return Message(
        id=row["message_id"],
        author_id=row["author_id"],
        content=row["content"],
        timestamp=to_utc(row["timestamp"]),
        is_from_us=bool(row["is_from_us"]),
        url=row["url"],
    )


def _engagement_from_row(row, messages: list[Message]) -> Engagement:
    conversation = None
    if row["conv_thread_id"] is not None:
        conversation = Conversation(
            thread_id=row["conv_thread_id"],
            messages=messages,
            auto_response_enabled=bool(row["conv_auto_response_enabled"]),
            max_auto_responses=row["conv_max_auto_responses"],
            current_auto_response_count=row["conv_current_auto_response_count"],
            last_checked_at=to_utc(row["conv_last_checked_at"]),
            consecutive_failures=row["conv_consecutive_failures"],
            disabled_reason=row["conv_disabled_reason"],
        )
    return Engagement(
        id=row["id"],
        account=row["account"],
        platform=row["platform"],
        status=row["status"],
        target_post_id=row["target_post_id"],
        target_post_content=row["target_post_content"],
        target_user_id=row["target_user_id"],
        target_username=row["target_username"],
        our_reply_id=row["our_reply_id"],
        our_reply_content=row["our_reply_content"],
        our_reply_url=row["our_reply_url"],
        engaged_at=to_utc(row["engaged_at"]),
        they_replied=bool(row["they_replied"]),
        we_replied_again=bool(row["we_replied_again"]),
        conversation_length=row["conversation_length"],
        conversation=conversation,
    )


async def _load_messages(db, engagement_ids: list[int]) -> dict[int, list[Message]]:
    by_engagement: dict[int, list[Message]] = {eid: [] for eid in engagement_ids}
    if not engagement_ids:
        return by_engagement
    placeholders = ",".join("?" for _ in engagement_ids)
    cursor = await db.execute(
        f"""
        SELECT * FROM conversation_messages
        WHERE engagement_id IN ({placeholders})
        ORDER BY seq ASC
        """,
        engagement_ids,
    )
    for row in await cursor.fetchall():
        by_engagement[row["engagement_id"]].append(_message_from_row(row))
    return by_engagement


async def get_engagement(engagement_id: int) -> Optional[Engagement]:
    """Get a specific engagement by ID, messages included."""
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM engagements WHERE id = ?", (engagement_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        messages = await _load_messages(db, [engagement_id])
        return _engagement_from_row(row, messages[engagement_id])


async def find_engagements_to_check(
    account: Optional[str] = None,
    limit: int = 20,
    platform: str = "twitter",
) -> list[Engagement]:
    """Engagements eligible for monitoring, least recently checked first.

    Matches:
    1. tracked conversations with auto-response on and count below the cap
    2. legacy engagements with no conversation yet where they replied
       or we posted an outreach reply
    """
    query = """
        SELECT * FROM engagements
        WHERE platform = ?
        AND (
            (conv_thread_id IS NOT NULL
             AND conv_auto_response_enabled = 1
             AND conv_current_auto_response_count < conv_max_auto_responses)
            OR
            (conv_thread_id IS NULL
             AND (they_replied = 1 OR our_reply_id IS NOT NULL))
        )
    """
    params: list = [platform]
    if account:
        query += " AND account = ?"
        params.append(account)
    # NULLs sort first: never-checked conversations come out ahead
    query += " ORDER BY conv_last_checked_at ASC, id ASC LIMIT ?"
    params.append(limit)

    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
        messages = await _load_messages(db, [row["id"] for row in rows])
        return [_engagement_from_row(row, messages[row["id"]]) for row in rows]


async def apply_command(engagement_id: int, command: Command) -> bool:
    """Persist one aggregate command as a field-scoped update.

    Returns True if the record changed. IncrementResponseCount is guarded
    in SQL so the count can never pass max_auto_responses.
    """
    async with _connect() as db:
        if isinstance(command, InitializeConversation):
            cursor = await db.execute(
                """
                UPDATE engagements
                SET conv_thread_id = ?, conv_auto_response_enabled = 1,
                    conv_max_auto_responses = ?, conv_current_auto_response_count = 0,
                    conv_consecutive_failures = 0, conv_last_checked_at = ?
                WHERE id = ? AND conv_thread_id IS NULL
                """,
                (command.thread_id, command.max_auto_responses, iso(command.checked_at), engagement_id),
            )
            changed = cursor.rowcount > 0
            if changed and command.seed_message:
                await _insert_message(db, engagement_id, command.seed_message)

        elif isinstance(command, AppendMessages):
            inserted_ours = inserted_theirs = 0
            for msg in command.messages:
                if await _insert_message(db, engagement_id, msg):
                    if msg.is_from_us:
                        inserted_ours += 1
                    else:
                        inserted_theirs += 1
            changed = (inserted_ours + inserted_theirs) > 0
            if changed:
                await db.execute(
                    """
                    UPDATE engagements
                    SET conversation_length = conversation_length + ?,
                        they_replied = MAX(they_replied, ?),
                        we_replied_again = MAX(we_replied_again, ?)
                    WHERE id = ?
                    """,
                    (
                        inserted_ours + inserted_theirs,
                        int(inserted_theirs > 0),
                        int(inserted_ours > 0),
                        engagement_id,
                    ),
                )

        elif isinstance(command, IncrementResponseCount):
            cursor = await db.execute(
                """
                UPDATE engagements
                SET conv_current_auto_response_count = conv_current_auto_response_count + 1,
                    status = CASE WHEN status = 'disabled' THEN status ELSE 'conversation' END
                WHERE id = ? AND conv_current_auto_response_count < conv_max_auto_responses
                """,
                (engagement_id,),
            )
            changed = cursor.rowcount > 0

        elif isinstance(command, DecrementResponseCount):
            cursor = await db.execute(
                """
                UPDATE engagements
                SET conv_current_auto_response_count = conv_current_auto_response_count - 1,
                    status = CASE
                        WHEN status = 'conversation' AND conv_current_auto_response_count = 1 THEN 'pending'
                        ELSE status END
                WHERE id = ? AND conv_current_auto_response_count > 0
                """,
                (engagement_id,),
            )
            changed = cursor.rowcount > 0

        elif isinstance(command, MarkChecked):
            cursor = await db.execute(
                "UPDATE engagements SET conv_last_checked_at = ? WHERE id = ?",
                (iso(command.checked_at), engagement_id),
            )
            changed = cursor.rowcount > 0

        elif isinstance(command, RecordFailure):
            cursor = await db.execute(
                """
                UPDATE engagements
                SET conv_consecutive_failures = ?, conv_last_checked_at = ?
                WHERE id = ?
                """,
                (command.consecutive_failures, iso(command.checked_at), engagement_id),
            )
            changed = cursor.rowcount > 0

        elif isinstance(command, ResetFailures):
            cursor = await db.execute(
                "UPDATE engagements SET conv_consecutive_failures = 0 WHERE id = ?",
                (engagement_id,),
            )
            changed = cursor.rowcount > 0

        elif isinstance(command, Disable):
            cursor = await db.execute(
                """
                UPDATE engagements
                SET conv_auto_response_enabled = 0, conv_disabled_reason = ?, status = 'disabled',
                    conv_last_checked_at = COALESCE(?, conv_last_checked_at)
                WHERE id = ?
                """,
                (command.reason, iso(command.checked_at), engagement_id),
            )
            changed = cursor.rowcount > 0

        else:
            raise TypeError(f"Unknown command: {command!r}")

        await db.commit()
        return changed


async def record(engagement: Engagement, command: Command) -> bool:
    """Persist a command, then mirror it on the in-memory aggregate."""
    changed = await apply_command(engagement.id, command)
    if isinstance(command, IncrementResponseCount) and not changed:
        raise CapReachedError(f"Engagement {engagement.id} is at its auto-response cap")
    if isinstance(command, InitializeConversation) and not changed:
        return False
    engagement.apply(command)
    return changed


async def _insert_message(db, engagement_id: int, msg: Message) -> bool:
    """Insert a message unless its id is already recorded for this engagement."""
    cursor = await db.execute(
        """
        INSERT OR IGNORE INTO conversation_messages
        (engagement_id, message_id, author_id, content, timestamp, is_from_us, url)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            engagement_id, msg.id, msg.author_id or "", msg.content or "",
            iso(msg.timestamp or utc_now()), int(msg.is_from_us), msg.url,
        ),
    )
    return cursor.rowcount > 0


async def initialize_conversation(
    engagement_id: int,
    thread_id: str,
    our_reply_id: str,
    our_reply_content: str,
    our_reply_url: Optional[str] = None,
    max_auto_responses: Optional[int] = None,
) -> bool:
    """Start conversation tracking right after outreach posts a reply.

    The cap defaults to the configured max_responses_per_conversation.
    """
    if max_auto_responses is None:
        max_auto_responses = get_limits()["max_responses_per_conversation"]
    seed = Message(
        id=our_reply_id,
        author_id="",
        content=our_reply_content,
        timestamp=utc_now(),
        is_from_us=True,
        url=our_reply_url,
    )
    return await apply_command(
        engagement_id,
        InitializeConversation(
            thread_id=thread_id,
            seed_message=seed,
            max_auto_responses=max_auto_responses,
            checked_at=utc_now(),
        ),
    )


async def disable_auto_response(engagement_id: int, reason: str = "Disabled manually") -> bool:
    """Disable auto-responses for a conversation (manual control)."""
    return await apply_command(engagement_id, Disable(reason=reason))


async def count_messages_from_us(start: datetime, end: datetime) -> int:
    """Count our own messages across all engagements in [start, end)."""
    async with _connect() as db:
        cursor = await db.execute(
            """
            SELECT COUNT(*) FROM conversation_messages
            WHERE is_from_us = 1 AND timestamp >= ? AND timestamp < ?
            """,
            (iso(start), iso(end)),
        )
        return (await cursor.fetchone())[0]


# Analytics

async def get_conversation_stats(account: Optional[str] = None) -> dict:
    """Totals across tracked conversations for reporting."""
    query = """
        SELECT
            SUM(CASE WHEN conv_thread_id IS NOT NULL THEN 1 ELSE 0 END),
            SUM(CASE WHEN they_replied = 1 THEN 1 ELSE 0 END),
            AVG(conversation_length),
            SUM(CASE WHEN conv_thread_id IS NOT NULL AND conv_auto_response_enabled = 1 THEN 1 ELSE 0 END),
            SUM(conv_current_auto_response_count),
            SUM(CASE WHEN status = 'disabled' THEN 1 ELSE 0 END)
        FROM engagements WHERE platform = 'twitter'
    """
    params: list = []
    if account:
        query += " AND account = ?"
        params.append(account)

    async with _connect() as db:
        cursor = await db.execute(query, params)
        row = await cursor.fetchone()

    return {
        "total_active_conversations": row[0] or 0,
        "conversations_with_replies": row[1] or 0,
        "average_conversation_length": round(row[2] or 0, 2),
        "auto_responses_enabled": row[3] or 0,
        "auto_responses_sent": row[4] or 0,
        "disabled_conversations": row[5] or 0,
    }


async def get_disabled_conversations(limit: int = 50) -> list[dict]:
    """Disabled conversations and why, newest first."""
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            """
            SELECT id, account, target_username, conv_disabled_reason
            FROM engagements WHERE status = 'disabled'
            ORDER BY id DESC LIMIT ?
            """,
            (limit,),
        )
        return [dict(row) for row in await cursor.fetchall()]


# Lock records

async def try_acquire_lock_record(lock_id: str, holder: str, now: float, expires_at: float) -> bool:
    """Insert the lock, or take it over if the existing record has expired.

    Atomic in SQLite: the conflict branch only writes when the stored
    expiry has passed.
    """
    async with _connect() as db:
        cursor = await db.execute(
            """
            INSERT INTO cron_locks (lock_id, holder, acquired_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(lock_id) DO UPDATE SET
                holder = excluded.holder,
                acquired_at = excluded.acquired_at,
                expires_at = excluded.expires_at
            WHERE cron_locks.expires_at < excluded.acquired_at
            """,
            (lock_id, holder, now, expires_at),
        )
        await db.commit()
        return cursor.rowcount > 0


async def get_lock_record(lock_id: str) -> Optional[dict]:
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM cron_locks WHERE lock_id = ?", (lock_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None


async def delete_lock_record(lock_id: str, holder: str) -> bool:
    """Delete the lock only if `holder` still owns it."""
    async with _connect() as db:
        cursor = await db.execute(
            "DELETE FROM cron_locks WHERE lock_id = ? AND holder = ?",
            (lock_id, holder),
        )
        await db.commit()
        return cursor.rowcount > 0


async def extend_lock_record(lock_id: str, holder: str, expires_at: float) -> bool:
    async with _connect() as db:
        cursor = await db.execute(
            "UPDATE cron_locks SET expires_at = ? WHERE lock_id = ? AND holder = ?",
            (expires_at, lock_id, holder),
        )
        await db.commit()
        return cursor.rowcount > 0


async def list_lock_records() -> list[dict]:
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM cron_locks ORDER BY lock_id")
        return [dict(row) for row in await cursor.fetchall()]


async def delete_expired_lock_records(now: float) -> int:
    """Remove lock records whose expiry has passed. Returns how many."""
    async with _connect() as db:
        cursor = await db.execute("DELETE FROM cron_locks WHERE expires_at < ?", (now,))
        await db.commit()
        return cursor.rowcount
