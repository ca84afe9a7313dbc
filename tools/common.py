"""
Shared utilities for the conversation monitor scripts.

Consolidates logging setup, config loading, the shared Anthropic client,
timestamps, the inter-response delay, and push notifications.
"""

import os
import sys
import json
import asyncio
import logging
import urllib.request
from pathlib import Path
from datetime import datetime, timezone

BASE_DIR = Path(__file__).parent.parent


def setup_logging(name: str) -> logging.Logger:
    """Configure logging and return a named logger."""
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
    )
    return logging.getLogger(name)


# --- Config ---

_config_cache = None


def load_config() -> dict:
    """Load config JSON (cached after first call).

    Reads MONITOR_CONFIG env var for the config filename.
    Falls back to config.json if unset.
    """
    global _config_cache
    if _config_cache is not None:
        return _config_cache
    config_name = os.environ.get("MONITOR_CONFIG", "config.json")
    config_path = BASE_DIR / config_name
    if config_path.exists():
        try:
            _config_cache = json.loads(config_path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logging.getLogger("common").warning(f"Failed to load {config_path}: {e}")
            _config_cache = {}
    else:
        _config_cache = {}
    return _config_cache


def reset_config_cache() -> None:
    """Forget the cached config so the next load_config() re-reads it."""
    global _config_cache
    _config_cache = None


# --- Anthropic singleton ---

_anthropic_client = None


def get_anthropic():
    """Return a shared Anthropic client instance (created once)."""
    global _anthropic_client
    if _anthropic_client is None:
        from anthropic import Anthropic
        _anthropic_client = Anthropic()
    return _anthropic_client


# --- Time ---

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value) -> datetime | None:
    """Parse an ISO string (X API 'Z' suffix included) or datetime into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO timestamp, safe to compare as a string in SQLite."""
    if dt is None:
        return None
    return to_utc(dt).isoformat(timespec="microseconds")


# --- Async delay ---

async def response_delay(seconds: float, label: str = "") -> None:
    """Fixed pause between sends. Throttles against platform abuse detection."""
    if seconds <= 0:
        return
    if label:
        logging.getLogger("common").info(f"Waiting {seconds:.0f}s before {label}...")
    await asyncio.sleep(seconds)


# --- Notifications ---

def notify(title: str, message: str, priority: str = "default") -> None:
    """Send a push notification via ntfy.sh. Skipped when NTFY_TOPIC is unset."""
    ntfy_topic = os.getenv("NTFY_TOPIC")
    if not ntfy_topic:
        return
    tags = "warning" if priority == "high" else "white_check_mark"
    req = urllib.request.Request(
        f"https://ntfy.sh/{ntfy_topic}",
        data=message.encode(),
        headers={"Title": title, "Priority": priority, "Tags": tags},
    )
    try:
        urllib.request.urlopen(req, timeout=5)
    except OSError as e:
        logging.getLogger("common").warning(f"Notification failed: {e}")
