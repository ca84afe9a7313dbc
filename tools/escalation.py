"""
Adapter failure escalation.

Authentication failures (unauthorized, expired tokens, can't read our own
user) will not fix themselves, so they disable the conversation at once and
leave the failure counter alone. Anything else is counted across runs and
disables the conversation when the count reaches the threshold. A successful
adapter call resets the count.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from tools.engagements import Command, Disable, Engagement, RecordFailure, ResetFailures

log = logging.getLogger(__name__)

AUTH_ERROR_MARKERS = [
    "401",
    "unauthorized",
    "could not get user info",
    "could not get user id",
    "expired",
]

DEFAULT_FAILURE_THRESHOLD = 5

OUTCOME_AUTH_DISABLED = "auth_disabled"
OUTCOME_THRESHOLD_DISABLED = "threshold_disabled"
OUTCOME_COUNTED = "counted"


@dataclass
class Escalation:
    outcome: str
    commands: list[Command] = field(default_factory=list)

    @property
    def disabled(self) -> bool:
        return self.outcome in (OUTCOME_AUTH_DISABLED, OUTCOME_THRESHOLD_DISABLED)


def is_auth_error(error: str) -> bool:
    text = (error or "").lower()
    return any(marker in text for marker in AUTH_ERROR_MARKERS)


def escalate_failure(
    engagement: Engagement,
    error: str,
    now: datetime,
    threshold: int = DEFAULT_FAILURE_THRESHOLD,
) -> Escalation:
    """Commands to apply after a failed adapter call on this engagement."""
    if is_auth_error(error):
        log.warning(f"Auth error for engagement {engagement.id}, disabling auto-response: {error}")
        return Escalation(OUTCOME_AUTH_DISABLED, [Disable(reason=f"Auth error: {error}", checked_at=now)])

    previous = engagement.conversation.consecutive_failures if engagement.conversation else 0
    failures = previous + 1
    if failures >= threshold:
        log.warning(f"{failures} consecutive failures for engagement {engagement.id}, disabling auto-response")
        return Escalation(
            OUTCOME_THRESHOLD_DISABLED,
            [
                RecordFailure(consecutive_failures=failures, checked_at=now),
                Disable(reason=f"Too many failures: {error}", checked_at=now),
            ],
        )
    return Escalation(OUTCOME_COUNTED, [RecordFailure(consecutive_failures=failures, checked_at=now)])


def clear_failures(engagement: Engagement) -> list[Command]:
    """Commands to apply after a successful adapter call."""
    if engagement.conversation and engagement.conversation.consecutive_failures > 0:
        return [ResetFailures()]
    return []
