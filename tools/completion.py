"""
Completion service backed by the Anthropic Messages API.

Two entry points:
  classify(prompt)  - short, low-temperature answers (decisions, scores)
  generate(...)     - free text, with a fast or quality model preference

Each preference maps to an ordered model list. A rate-limit or overload on
one model moves on to the next in the same list; anything else raises
CompletionError so the caller can apply its own fail-open/fail-closed policy.
"""

import logging
from typing import Optional

import anthropic

from tools.common import get_anthropic, load_config

log = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "fast": ["claude-3-5-haiku-20241022", "claude-sonnet-4-20250514"],
    "quality": ["claude-sonnet-4-20250514", "claude-opus-4-6"],
}

REQUEST_TIMEOUT = 30.0


class CompletionError(Exception):
    """The completion service could not produce an answer."""


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, (anthropic.RateLimitError, anthropic.InternalServerError, anthropic.APITimeoutError)):
        return True
    # 529 overloaded
    return isinstance(error, anthropic.APIStatusError) and getattr(error, "status_code", None) == 529


class CompletionService:
    def __init__(self, client=None, models: Optional[dict] = None):
        self._client = client
        configured = load_config().get("models", {})
        self.models = {
            "fast": list((models or {}).get("fast") or configured.get("fast") or DEFAULT_MODELS["fast"]),
            "quality": list((models or {}).get("quality") or configured.get("quality") or DEFAULT_MODELS["quality"]),
        }

    @property
    def client(self):
        if self._client is None:
            self._client = get_anthropic()
        return self._client

    def model_chain(self, prefer_fast: bool, model: Optional[str] = None) -> list[str]:
        """Models to try in order. An explicit model goes first."""
        chain = list(self.models["fast" if prefer_fast else "quality"])
        if model:
            chain = [model] + [m for m in chain if m != model]
        return chain

    def generate(
        self,
        messages: list[dict],
        temperature: float = 0.7,
        max_tokens: int = 300,
        prefer_fast: bool = False,
        model: Optional[str] = None,
    ) -> str:
        """Run a chat completion and return its text ("" if the model said nothing).

        System-role messages are lifted into the API's system parameter.
        """
        system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
        chat = [
            {"role": m["role"], "content": m["content"]}
            for m in messages if m.get("role") in ("user", "assistant")
        ]

        last_error: Optional[Exception] = None
        for candidate in self.model_chain(prefer_fast, model):
            kwargs = {
                "model": candidate,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "messages": chat,
                "timeout": REQUEST_TIMEOUT,
            }
            if system:
                kwargs["system"] = system
            try:
                response = self.client.messages.create(**kwargs)
            except anthropic.APIError as e:
                if _is_retryable(e):
                    log.warning(f"{candidate} unavailable ({type(e).__name__}), trying next model")
                    last_error = e
                    continue
                raise CompletionError(f"{candidate}: {e}") from e

            text = "".join(
                getattr(block, "text", "") for block in response.content
                if getattr(block, "type", "text") == "text"
            )
            return text.strip()

        raise CompletionError(f"All models unavailable: {last_error}")

    def classify(self, prompt: str, system: Optional[str] = None, max_tokens: int = 300) -> str:
        """Low-temperature fast-model answer, for decisions and scores."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return self.generate(messages, temperature=0.1, max_tokens=max_tokens, prefer_fast=True)
