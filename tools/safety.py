"""
Pre-send safety gate for auto-responses.

Every candidate reply passes through the same six checks, in order, and the
first failure wins:

  1. length      - too short (low), over the platform limit (high)
  2. spam        - promo phrases, URLs, spam vocabulary (high)
  3. repetition  - token overlap >= 0.8 with one of our earlier messages (medium)
  4. relevance   - must touch their message; questions need substance (medium)
  5. quality     - model-scored 0-1, below threshold rejects (medium)
  6. toxicity    - profanity / insults / shouting (high)

Severity decides the consequence: low and medium skip this attempt only,
high disables auto-response for the conversation.
"""

import re
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from tools.engagements import Engagement

log = logging.getLogger("safety")

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"


@dataclass
class SafetyResult:
    safe: bool
    reason: Optional[str] = None
    severity: Optional[str] = None
    quality_score: Optional[float] = None
    check: Optional[str] = None


PASS = SafetyResult(safe=True)

# --- Spam lexicon ---
# Each tuple is (compiled_pattern, human-readable label)

_SPAM_DEFS = [
    (r"check out|click here|link in bio|dm me|follow me", "call to action"),
    (r"buy now|limited time|act now|don't miss", "promotional urgency"),
    (r"\b(?:viagra|cialis|forex|crypto|nft)\b", "spam vocabulary"),
    (r"(?:https?://|www\.)", "URL"),
]

SPAM_PATTERNS = [(re.compile(p, re.IGNORECASE), label) for p, label in _SPAM_DEFS]

# --- Toxicity lexicon ---

_TOXIC_DEFS = [
    (r"\b(?:fuck|shit|damn|hell|ass|bitch|bastard)\b", "profanity"),
    (r"\b(?:stupid|idiot|moron|dumb|loser)\b", "insult"),
    (r"\b(?:hate|kill|die|death)\b", "violent language"),
]

TOXIC_PATTERNS = [(re.compile(p, re.IGNORECASE), label) for p, label in _TOXIC_DEFS]

SIMILARITY_THRESHOLD = 0.8
MEANINGFUL_WORD_LENGTH = 4      # words longer than this count as topic words
QUESTION_MIN_LENGTH = 30        # a reply to a question shorter than this is a brush-off
RELEVANT_BY_LENGTH = 50         # longer replies pass relevance without shared words
CAPS_RATIO_LIMIT = 0.6
CAPS_MIN_LENGTH = 20

QUALITY_PROMPT = """Rate this reply's quality from 0 to 1.

Their message: "{their_message}"
Our response: "{response}"

Score: 1.0=highly relevant and valuable, 0.7=good and on-topic, 0.5=acceptable, 0.3=weak, 0.0=spam.

Return ONLY a single decimal number between 0 and 1 (example: 0.8). No text, no explanation."""


def _words(text: str) -> list[str]:
    return re.sub(r"[^\w\s]", "", text.lower()).split()


def string_similarity(a: str, b: str) -> float:
    """Jaccard overlap of the two texts' word sets (0-1)."""
    words_a, words_b = set(_words(a)), set(_words(b))
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def addresses_message(response: str, their_message: str) -> bool:
    """Does the response plausibly engage with what they said?"""
    if "?" in their_message and len(response) < QUESTION_MIN_LENGTH:
        return False
    their_words = [w for w in _words(their_message) if len(w) > MEANINGFUL_WORD_LENGTH]
    response_words = set(_words(response))
    shared = [w for w in their_words if w in response_words]
    return len(shared) >= 1 or len(response) > RELEVANT_BY_LENGTH


def parse_score(text: str) -> Optional[float]:
    """First number in the model's answer, clamped to [0, 1]. None if there isn't one."""
    match = re.search(r"(\d+(?:\.\d+)?)", text or "")
    if not match:
        return None
    return max(0.0, min(1.0, float(match.group(1))))


def toxicity_reason(text: str) -> Optional[str]:
    for pattern, label in TOXIC_PATTERNS:
        if pattern.search(text):
            return f"Inappropriate language detected ({label})"
    caps = sum(1 for ch in text if ch.isupper() and ch.isascii())
    if len(text) > CAPS_MIN_LENGTH and caps / len(text) > CAPS_RATIO_LIMIT:
        return "Excessive capitalization (appears aggressive)"
    return None


class SafetyGate:
    """Sequential, short-circuiting validation of a candidate reply.

    `checks` is the ordered list of stages; each takes
    (response, their_message, engagement) and returns a SafetyResult.
    """

    def __init__(
        self,
        completion=None,
        min_length: int = 20,
        max_length: int = 280,
        quality_threshold: float = 0.7,
        quality_fail_open: bool = True,
        toxicity_check_enabled: bool = True,
    ):
        self.completion = completion
        self.min_length = min_length
        self.max_length = max_length
        self.quality_threshold = quality_threshold
        self.quality_fail_open = quality_fail_open
        self.toxicity_check_enabled = toxicity_check_enabled
        self.checks: list[tuple[str, Callable[[str, str, Engagement], SafetyResult]]] = [
            ("length", self.check_length),
            ("spam", self.check_spam),
            ("repetition", self.check_repetition),
            ("relevance", self.check_relevance),
            ("quality", self.check_quality),
            ("toxicity", self.check_toxicity),
        ]

    def validate(self, response: str, their_message: str, engagement: Engagement) -> SafetyResult:
        quality_score = None
        for name, check in self.checks:
            result = check(response, their_message, engagement)
            if result.quality_score is not None:
                quality_score = result.quality_score
            if not result.safe:
                result.check = name
                log.info(f"Engagement {engagement.id}: rejected at {name} ({result.severity}): {result.reason}")
                return result
        return SafetyResult(safe=True, quality_score=quality_score)

    def check_length(self, response: str, their_message: str, engagement: Engagement) -> SafetyResult:
        if len(response) < self.min_length:
            return SafetyResult(False, "Response too short", SEVERITY_LOW)
        if len(response) > self.max_length:
            return SafetyResult(False, f"Response exceeds platform limit ({len(response)}/{self.max_length})", SEVERITY_HIGH)
        return PASS

    def check_spam(self, response: str, their_message: str, engagement: Engagement) -> SafetyResult:
        for pattern, label in SPAM_PATTERNS:
            if pattern.search(response):
                return SafetyResult(False, f"Spam pattern detected ({label})", SEVERITY_HIGH)
        return PASS

    def check_repetition(self, response: str, their_message: str, engagement: Engagement) -> SafetyResult:
        previous = engagement.conversation.our_messages() if engagement.conversation else []
        for msg in previous:
            if string_similarity(response, msg.content) >= SIMILARITY_THRESHOLD:
                return SafetyResult(False, "Response too similar to previous message", SEVERITY_MEDIUM)
        return PASS

    def check_relevance(self, response: str, their_message: str, engagement: Engagement) -> SafetyResult:
        if not addresses_message(response, their_message):
            return SafetyResult(False, "Response not relevant to their message", SEVERITY_MEDIUM)
        return PASS

    def score_quality(self, response: str, their_message: str) -> Optional[float]:
        """Model-assessed quality, or None when scoring fails."""
        if self.completion is None:
            return None
        try:
            answer = self.completion.classify(
                QUALITY_PROMPT.format(their_message=their_message, response=response),
                max_tokens=10,
            )
        except Exception as e:
            log.warning(f"Failed to score response quality: {e}")
            return None
        score = parse_score(answer)
        if score is None:
            log.warning(f"Could not parse quality score from {answer[:40]!r}")
        return score

    def check_quality(self, response: str, their_message: str, engagement: Engagement) -> SafetyResult:
        score = self.score_quality(response, their_message)
        if score is None:
            if not self.quality_fail_open:
                return SafetyResult(False, "Quality score unavailable", SEVERITY_MEDIUM)
            score = self.quality_threshold
        if score < self.quality_threshold:
            return SafetyResult(False, f"Quality score too low: {score:.2f}", SEVERITY_MEDIUM, quality_score=score)
        return SafetyResult(True, quality_score=score)

    def check_toxicity(self, response: str, their_message: str, engagement: Engagement) -> SafetyResult:
        if not self.toxicity_check_enabled:
            return PASS
        reason = toxicity_reason(response)
        if reason:
            return SafetyResult(False, f"Toxicity detected: {reason}", SEVERITY_HIGH)
        return PASS
