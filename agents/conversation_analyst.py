"""
Conversation Analyst: decides whether the latest reply in a conversation
deserves an auto-response, and in what tone.

Biased toward responding. We stay quiet only for bare closers ("thanks",
"bye"), hostile or dismissive messages, and conversations that already hit
their auto-response cap. If the classifier fails or answers garbage, the
default is to respond and let the safety gate catch anything bad.
"""

import re
import json
import logging
from dataclasses import dataclass
from typing import Optional

from tools.engagements import Engagement, Message

logger = logging.getLogger(__name__)

TONES = ["thoughtful", "supportive", "educational", "friendly"]
DEFAULT_TONE = "friendly"

ANALYST_SYSTEM = (
    "You are a social media engagement expert. You decide whether a reply in an "
    "ongoing conversation deserves a response. You answer with JSON only."
)


@dataclass
class Decision:
    should_respond: bool
    reason: str
    tone: str = DEFAULT_TONE


def _format_history(history: list[Message]) -> str:
    return "\n".join(
        f"{'[US]' if m.is_from_us else '[THEM]'}: {m.content}" for m in history
    )


def _build_decision_prompt(history: list[Message], latest: Message, engagement: Engagement) -> str:
    sent = engagement.conversation.current_auto_response_count if engagement.conversation else 0
    return f"""Analyze this conversation and decide whether we should reply.

Original post we engaged with:
"{engagement.target_post_content}"

Conversation so far:
{_format_history(history)}

Their latest message:
"{latest.content}"

We have already sent {sent} auto-responses in this conversation.

Default to responding. Respond unless ANY of these is clearly true:
- Their message is only a closer or acknowledgement ("thanks", "ok", "bye", "cool")
- Their tone is hostile, dismissive, or they asked us to stop
- We have already sent 3 or more responses

Good reasons to respond: they asked a question, shared an opinion or
experience, or the conversation is still developing.

Pick the tone for our reply: thoughtful, supportive, educational, or friendly.

Return JSON:
{{
  "should_respond": true,
  "reason": "Brief explanation",
  "tone": "friendly"
}}"""


def parse_decision(text: str) -> Optional[Decision]:
    """Pull a Decision out of model output. None if nothing usable is there.

    Strips markdown fences, grabs the outermost {...}, then parses it.
    """
    if not text:
        return None
    cleaned = re.sub(r"```(?:json)?", "", text).strip()
    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or "should_respond" not in data:
        return None

    should = data.get("should_respond")
    if isinstance(should, str):
        should = should.strip().lower() in ("true", "yes", "1")
    tone = str(data.get("tone") or DEFAULT_TONE).lower()
    if tone not in TONES:
        tone = DEFAULT_TONE
    return Decision(
        should_respond=bool(should),
        reason=str(data.get("reason") or "No reason given"),
        tone=tone,
    )


async def should_respond(
    history: list[Message],
    latest_message: Message,
    engagement: Engagement,
    completion,
    fail_open: bool = True,
) -> Decision:
    """Ask the completion service whether to answer `latest_message`."""
    conv = engagement.conversation
    if conv is not None and conv.cap_reached:
        return Decision(False, f"Auto-response cap reached ({conv.current_auto_response_count}/{conv.max_auto_responses})")
    if conv is not None and not conv.auto_response_enabled:
        return Decision(False, "Auto-response disabled")

    try:
        text = completion.classify(
            _build_decision_prompt(history, latest_message, engagement),
            system=ANALYST_SYSTEM,
        )
    except Exception as e:
        logger.warning(f"Engagement {engagement.id}: decision call failed: {e}")
        return _fallback(fail_open, f"Decision failed: {e}")

    decision = parse_decision(text)
    if decision is None:
        logger.warning(f"Engagement {engagement.id}: unparseable decision: {text[:80]!r}")
        return _fallback(fail_open, "Could not parse decision")

    logger.info(
        f"Engagement {engagement.id}: respond={decision.should_respond} "
        f"tone={decision.tone} ({decision.reason})"
    )
    return decision


def _fallback(fail_open: bool, reason: str) -> Decision:
    if fail_open:
        return Decision(True, f"{reason}, defaulting to respond", DEFAULT_TONE)
    return Decision(False, reason, DEFAULT_TONE)
