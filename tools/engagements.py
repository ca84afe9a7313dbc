"""
Engagement aggregate: one tracked conversation thread and its automation state.

State changes are expressed as commands (AppendMessages, IncrementResponseCount,
Disable, ...). Each command is applied in memory by Engagement.apply() and maps
to exactly one field-scoped update in tools.storage.apply_command(), so the
aggregate's invariants live in one place.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

STATUS_PENDING = "pending"
STATUS_CONVERSATION = "conversation"
STATUS_DISABLED = "disabled"

DEFAULT_MAX_AUTO_RESPONSES = 3

# Prefix for ids we make up when the platform does not return one
LOCAL_ID_PREFIX = "sent-"


class CapReachedError(Exception):
    """Raised when a send would push a conversation past max_auto_responses."""


def local_message_id(engagement_id: int, n: int) -> str:
    return f"{LOCAL_ID_PREFIX}{engagement_id}-{n}"


def is_local_id(message_id: Optional[str]) -> bool:
    return bool(message_id) and message_id.startswith(LOCAL_ID_PREFIX)


@dataclass
class Message:
    id: str
    author_id: str
    content: str
    timestamp: datetime
    is_from_us: bool
    url: Optional[str] = None


@dataclass
class Conversation:
    thread_id: str
    messages: list[Message] = field(default_factory=list)
    auto_response_enabled: bool = True
    max_auto_responses: int = DEFAULT_MAX_AUTO_RESPONSES
    current_auto_response_count: int = 0
    last_checked_at: Optional[datetime] = None
    consecutive_failures: int = 0
    disabled_reason: Optional[str] = None

    @property
    def cap_reached(self) -> bool:
        return self.current_auto_response_count >= self.max_auto_responses

    @property
    def can_respond(self) -> bool:
        return self.auto_response_enabled and not self.cap_reached

    def message_ids(self) -> set[str]:
        return {m.id for m in self.messages}

    def our_messages(self) -> list[Message]:
        return [m for m in self.messages if m.is_from_us]

    def last_message_at(self) -> Optional[datetime]:
        if not self.messages:
            return None
        return self.messages[-1].timestamp


@dataclass
class Engagement:
    id: int
    account: str
    target_post_id: str
    target_post_content: str = ""
    target_user_id: str = ""
    target_username: str = ""
    platform: str = "twitter"
    status: str = STATUS_PENDING
    our_reply_id: Optional[str] = None
    our_reply_content: Optional[str] = None
    our_reply_url: Optional[str] = None
    engaged_at: Optional[datetime] = None
    they_replied: bool = False
    we_replied_again: bool = False
    conversation_length: int = 1
    conversation: Optional[Conversation] = None

    def own_last_message_id(self) -> Optional[str]:
        """Id of the last message we sent in this thread (anchors 'replies after ours').

        Locally made-up ids are skipped, the platform would reject them.
        """
        if self.conversation:
            for msg in reversed(self.conversation.our_messages()):
                if not is_local_id(msg.id):
                    return msg.id
        return self.our_reply_id

    def apply(self, command: "Command") -> None:
        """Apply a command to this in-memory aggregate."""
        if isinstance(command, InitializeConversation):
            self.conversation = Conversation(
                thread_id=command.thread_id,
                messages=[command.seed_message] if command.seed_message else [],
                max_auto_responses=command.max_auto_responses,
                last_checked_at=command.checked_at,
            )
            return

        if self.conversation is None:
            raise ValueError(f"Engagement {self.id} has no conversation to apply {type(command).__name__} to")
        conv = self.conversation

        if isinstance(command, AppendMessages):
            known = conv.message_ids()
            for msg in command.messages:
                if msg.id in known:
                    continue
                conv.messages.append(msg)
                known.add(msg.id)
                self.conversation_length += 1
                if msg.is_from_us:
                    self.we_replied_again = True
                else:
                    self.they_replied = True
        elif isinstance(command, IncrementResponseCount):
            if conv.cap_reached:
                raise CapReachedError(
                    f"Engagement {self.id} already sent {conv.current_auto_response_count}/{conv.max_auto_responses}"
                )
            conv.current_auto_response_count += 1
            if self.status != STATUS_DISABLED:
                self.status = STATUS_CONVERSATION
        elif isinstance(command, DecrementResponseCount):
            conv.current_auto_response_count = max(conv.current_auto_response_count - 1, 0)
            if conv.current_auto_response_count == 0 and self.status == STATUS_CONVERSATION:
                self.status = STATUS_PENDING
        elif isinstance(command, MarkChecked):
            conv.last_checked_at = command.checked_at
        elif isinstance(command, RecordFailure):
            conv.consecutive_failures = command.consecutive_failures
            conv.last_checked_at = command.checked_at
        elif isinstance(command, ResetFailures):
            conv.consecutive_failures = 0
        elif isinstance(command, Disable):
            conv.auto_response_enabled = False
            conv.disabled_reason = command.reason
            if command.checked_at:
                conv.last_checked_at = command.checked_at
            self.status = STATUS_DISABLED
        else:
            raise TypeError(f"Unknown command: {command!r}")


# --- Commands ---

@dataclass
class InitializeConversation:
    thread_id: str
    seed_message: Optional[Message] = None
    max_auto_responses: int = DEFAULT_MAX_AUTO_RESPONSES
    checked_at: Optional[datetime] = None


@dataclass
class AppendMessages:
    messages: list[Message]


@dataclass
class IncrementResponseCount:
    pass


@dataclass
class DecrementResponseCount:
    """Give back a slot reserved for a send that did not go out."""


@dataclass
class MarkChecked:
    checked_at: datetime


@dataclass
class RecordFailure:
    consecutive_failures: int
    checked_at: datetime


@dataclass
class ResetFailures:
    pass


@dataclass
class Disable:
    reason: str
    checked_at: Optional[datetime] = None


Command = Union[
    InitializeConversation,
    AppendMessages,
    IncrementResponseCount,
    DecrementResponseCount,
    MarkChecked,
    RecordFailure,
    ResetFailures,
    Disable,
]


def synthesize_conversation(
    engagement: Engagement,
    now: datetime,
    max_auto_responses: int = DEFAULT_MAX_AUTO_RESPONSES,
) -> InitializeConversation:
    """Build the command that gives a legacy engagement its Conversation.

    Our outreach reply, when known, becomes the first message so the
    ingestion step can anchor on it. last_checked_at stays unset so the
    first fetch is not narrowed to "since now".
    """
    seed = None
    if engagement.our_reply_id:
        seed = Message(
            id=engagement.our_reply_id,
            author_id="",
            content=engagement.our_reply_content or "",
            timestamp=engagement.engaged_at or now,
            is_from_us=True,
            url=engagement.our_reply_url,
        )
    return InitializeConversation(
        thread_id=engagement.target_post_id,
        seed_message=seed,
        max_auto_responses=max_auto_responses,
    )
