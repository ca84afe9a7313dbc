"""
Social account configurations for conversation monitoring.
The monitor is account-agnostic - add an entry here to watch another account.

Each account reads its OAuth 1.0a user-context credentials from the
environment using its env_prefix:
  {PREFIX}_CONSUMER_KEY, {PREFIX}_CONSUMER_SECRET,
  {PREFIX}_ACCESS_TOKEN, {PREFIX}_ACCESS_TOKEN_SECRET
"""

import os

ACCOUNTS = {
    "tatamispaces": {
        "handle": "@tatamispaces",
        "platform": "twitter",
        "description": "Japanese interior design and architecture",
        "env_prefix": "X_API",
        "reply_voice": (
            "Knowledgeable, casual, specific. Like a friend who studied "
            "architecture in Japan. Never salesy."
        ),
    },
    "museumstories": {
        "handle": "@museumstories",
        "platform": "twitter",
        "description": "Stories behind museum objects and the people who made them",
        "env_prefix": "X_API_MUSEUM",
        "reply_voice": "Curious and warm. Shares one concrete detail, never lectures.",
    },
}

CREDENTIAL_SUFFIXES = [
    "CONSUMER_KEY",
    "CONSUMER_SECRET",
    "ACCESS_TOKEN",
    "ACCESS_TOKEN_SECRET",
]


def get_account(account_id: str) -> dict:
    """Get configuration for a specific account."""
    if account_id not in ACCOUNTS:
        raise ValueError(f"Unknown account: {account_id}. Available: {list(ACCOUNTS.keys())}")
    return ACCOUNTS[account_id]


def list_accounts() -> list[str]:
    """List available account IDs."""
    return list(ACCOUNTS.keys())


def missing_credentials(account_id: str) -> list[str]:
    """Return the env var names this account needs but that are unset."""
    prefix = get_account(account_id)["env_prefix"]
    names = [f"{prefix}_{suffix}" for suffix in CREDENTIAL_SUFFIXES]
    return [n for n in names if not os.environ.get(n)]
