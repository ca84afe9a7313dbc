"""
Responder Agent: writes the follow-up reply for an ongoing conversation.

Uses the last few messages of the thread plus the original post for context,
writes in the account's reply voice, and keeps the result inside the
platform's character ceiling.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config.accounts import ACCOUNTS
from tools.engagements import Engagement, Message

logger = logging.getLogger(__name__)

RESPONDER_SYSTEM = (
    "You write authentic social media replies. Return ONLY the reply text. "
    "No explanations, no meta-commentary, no hashtags. Just the reply."
)

ELLIPSIS = "..."
SENTENCE_BREAK_MIN_RATIO = 0.55   # a sentence break earlier than this loses too much


@dataclass
class GenerationStrategy:
    """How one generation attempt picks its model."""
    prefer_fast: bool
    model: Optional[str] = None


def default_strategies(completion) -> list[GenerationStrategy]:
    """Cheap first try, then quality, then the last model of the quality chain."""
    return [
        GenerationStrategy(prefer_fast=True),
        GenerationStrategy(prefer_fast=False),
        GenerationStrategy(prefer_fast=False, model=completion.model_chain(prefer_fast=False)[-1]),
    ]


def truncate_reply(text: str, limit: int) -> str:
    """Fit text into `limit` characters.

    Prefers the last sentence end inside the limit, then the last word
    boundary plus an ellipsis, then a hard cut plus an ellipsis.
    """
    if len(text) <= limit:
        return text
    if limit <= len(ELLIPSIS):
        return text[: max(limit, 0)]

    head = text[:limit]
    sentence_end = max(head.rfind("."), head.rfind("?"), head.rfind("!"))
    if sentence_end >= 0 and sentence_end + 1 > limit * SENTENCE_BREAK_MIN_RATIO:
        return head[: sentence_end + 1]

    window = text[: limit - len(ELLIPSIS)]
    last_space = window.rfind(" ")
    if last_space > 0:
        return window[:last_space].rstrip() + ELLIPSIS
    return window + ELLIPSIS


def _clean(text: str) -> str:
    reply = (text or "").strip()
    # Remove any wrapping quotes the model might add
    if len(reply) >= 2 and reply.startswith('"') and reply.endswith('"'):
        reply = reply[1:-1].strip()
    return reply


def _build_prompt(engagement: Engagement, history: list[Message], tone: str, target_length: int) -> str:
    account = ACCOUNTS.get(engagement.account, {})
    voice = account.get("reply_voice", "")
    conversation_text = "\n".join(
        f"{'[US]' if m.is_from_us else '[THEM]'}: {m.content}" for m in history
    )

    prompt = f"""Generate a follow-up reply for this {engagement.platform} conversation.

ORIGINAL POST: "{engagement.target_post_content}"

CONVERSATION:
{conversation_text}

Tone: {tone}
Max length: {target_length} characters
"""
    if voice:
        prompt += f"Voice: {voice}\n"

    prompt += """
Rules:
- Return ONLY the reply text, no quotes around it
- Be natural and conversational
- Reference something specific from their latest message
- Sound like a real person, not a bot
- Avoid "Great point!" or "Thanks for sharing!"
- If they asked a question, answer it"""
    return prompt


async def generate_response(
    engagement: Engagement,
    history: list[Message],
    tone: str,
    platform_limits: dict,
    completion,
    strategies: Optional[list[GenerationStrategy]] = None,
    attempts: int = 3,
    history_window: int = 4,
) -> str:
    """Generate reply text, or "" if every attempt came back empty.

    Attempt n uses strategies[n] (the last one repeats if attempts outnumber
    strategies). Completion errors count as an empty attempt.
    """
    strategies = strategies or default_strategies(completion)
    messages = [
        {"role": "system", "content": RESPONDER_SYSTEM},
        {"role": "user", "content": _build_prompt(
            engagement, history[-history_window:], tone, platform_limits["target"],
        )},
    ]

    for attempt in range(attempts):
        strategy = strategies[min(attempt, len(strategies) - 1)]
        try:
            text = completion.generate(
                messages,
                temperature=0.8,
                max_tokens=150,
                prefer_fast=strategy.prefer_fast,
                model=strategy.model,
            )
        except Exception as e:
            logger.warning(f"Engagement {engagement.id}: generation attempt {attempt + 1} failed: {e}")
            continue

        reply = _clean(text)
        if reply:
            final = truncate_reply(reply, platform_limits["truncate"])
            if len(final) != len(reply):
                logger.info(f"Engagement {engagement.id}: truncated reply from {len(reply)} to {len(final)} chars")
            return final

        logger.warning(f"Engagement {engagement.id}: empty reply on attempt {attempt + 1}/{attempts}")

    logger.error(f"Engagement {engagement.id}: all {attempts} generation attempts came back empty")
    return ""
