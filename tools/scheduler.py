"""
Smart polling: which conversations to check this run.

The candidate pool is over-fetched (3x the batch) and then narrowed in two
stages:
  1. eligibility - skip anything checked more recently than its adaptive
     interval (exponential backoff while a thread is quiet)
  2. priority - score recency and activity, highest first, take the batch
Recently active threads get checked far more often than dormant ones, which
bounds adapter calls per run.
"""

from datetime import datetime
from typing import Optional

from tools.engagements import Engagement

POOL_MULTIPLIER = 3
BASE_INTERVAL_MINUTES = 30


def _hours_since(then: Optional[datetime], now: datetime) -> Optional[float]:
    if then is None:
        return None
    return (now - then).total_seconds() / 3600


def _last_reply_at(engagement: Engagement) -> Optional[datetime]:
    if not engagement.conversation:
        return None
    return engagement.conversation.last_message_at()


def _last_checked_at(engagement: Engagement) -> Optional[datetime]:
    if not engagement.conversation:
        return None
    return engagement.conversation.last_checked_at


def adaptive_check_interval(
    engagement: Engagement,
    now: datetime,
    base_minutes: float = BASE_INTERVAL_MINUTES,
) -> float:
    """Minutes to wait before re-checking, growing as the thread goes quiet."""
    hours = _hours_since(_last_reply_at(engagement), now)
    if hours is None:
        return base_minutes
    if hours < 2:
        return base_minutes * 0.5   # 15 min
    if hours < 6:
        return base_minutes         # 30 min
    if hours < 24:
        return base_minutes * 2     # 60 min
    if hours < 72:
        return base_minutes * 4     # 120 min
    return base_minutes * 8         # 240 min


def conversation_priority(engagement: Engagement, now: datetime) -> int:
    """Higher score = check sooner."""
    score = 0

    hours_since_reply = _hours_since(_last_reply_at(engagement), now)
    if hours_since_reply is not None:
        if hours_since_reply < 6:
            score += 100
        elif hours_since_reply < 24:
            score += 50
        elif hours_since_reply < 72:
            score += 20

    message_count = len(engagement.conversation.messages) if engagement.conversation else 0
    score += min(message_count * 5, 30)

    hours_since_check = _hours_since(_last_checked_at(engagement), now)
    if hours_since_check is None:
        score += 40
    elif hours_since_check > 12:
        score += 15

    return score


def is_due(engagement: Engagement, now: datetime, base_minutes: float = BASE_INTERVAL_MINUTES) -> bool:
    last_checked = _last_checked_at(engagement)
    if last_checked is None:
        return True
    minutes_since_check = (now - last_checked).total_seconds() / 60
    return minutes_since_check >= adaptive_check_interval(engagement, now, base_minutes)


def select_batch(
    pool: list[Engagement],
    max_batch: int,
    now: datetime,
    use_smart_polling: bool = True,
    min_time_between_checks: float = BASE_INTERVAL_MINUTES,
    base_minutes: float = BASE_INTERVAL_MINUTES,
) -> list[Engagement]:
    """Pick up to max_batch conversations from the pool, in processing order.

    Without smart polling this is a plain cutoff on last_checked_at, in pool
    order.
    """
    if not use_smart_polling:
        def past_cutoff(eng: Engagement) -> bool:
            last_checked = _last_checked_at(eng)
            return last_checked is None or (now - last_checked).total_seconds() / 60 >= min_time_between_checks
        return [eng for eng in pool if past_cutoff(eng)][:max_batch]

    due = [eng for eng in pool if is_due(eng, now, base_minutes)]
    # sorted() is stable, so ties keep the pool's least-recently-checked order
    ranked = sorted(due, key=lambda eng: conversation_priority(eng, now), reverse=True)
    return ranked[:max_batch]


def pool_size(max_batch: int, use_smart_polling: bool = True) -> int:
    return max_batch * POOL_MULTIPLIER if use_smart_polling else max_batch
