"""
Production safety limits for the conversation monitor.

Everything here can be overridden from the "limits" object in config.json.
Runaway costs and platform abuse flags are the failure modes these guard.
"""

from tools.common import load_config

PRODUCTION_LIMITS = {
    "max_responses_per_day": 50,           # global daily cap across all conversations
    "max_responses_per_conversation": 3,   # auto-responses before a conversation goes inert
    "max_conversations_per_run": 20,
    "max_responses_per_run": 10,
    "min_time_between_checks": 30,         # minutes, base of the adaptive interval
    "cost_budget_per_day": 5.0,            # USD, rough
    "cost_per_response": 0.02,             # USD per sent response, rough
    "quality_score_threshold": 0.7,        # 0-1
    "toxicity_check_enabled": True,
    "lock_ttl_seconds": 300,               # must exceed worst-case run duration
    "inter_response_delay": 2.0,           # seconds after each send
    "max_consecutive_failures": 5,
    "generation_attempts": 3,
    "history_window": 4,                   # messages of history fed to the generator
    "decision_fail_open": True,            # respond when the analyst can't decide
    "quality_fail_open": True,             # pass the quality stage when scoring fails
}

# Character limits per platform:
#   target   - length we ask the model for
#   truncate - ceiling applied to generated text
#   hard     - the platform's own limit, enforced by the safety gate
#   min      - anything shorter is too thin to send
PLATFORM_LIMITS = {
    "twitter": {"target": 250, "truncate": 270, "hard": 280, "min": 20},
    "linkedin": {"target": 300, "truncate": 1200, "hard": 1250, "min": 20},
}


def get_limits() -> dict:
    """Defaults overlaid with config.json "limits"."""
    limits = dict(PRODUCTION_LIMITS)
    limits.update(load_config().get("limits", {}))
    return limits


def get_platform_limits(platform: str) -> dict:
    """Character limits for a platform. Unknown platforms get twitter's."""
    overrides = load_config().get("platform_limits", {}).get(platform, {})
    limits = dict(PLATFORM_LIMITS.get(platform, PLATFORM_LIMITS["twitter"]))
    limits.update(overrides)
    return limits
