"""
X/Twitter Official API v2 client for conversation monitoring.

Uses OAuth 1.0a (user context) per account. The module itself is the
platform adapter handed to the conversation monitor:
  check_conversation_replies(account, thread_id, since, own_last_message_id)
  get_own_user_id(account)
  reply_to_post(account, parent_id, text)

Credentials come from the environment using each account's env_prefix
(see config/accounts.py), e.g. for prefix X_API:
  X_API_CONSUMER_KEY, X_API_CONSUMER_SECRET,
  X_API_ACCESS_TOKEN, X_API_ACCESS_TOKEN_SECRET
"""

import os
import logging
import requests
from requests_oauthlib import OAuth1
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from config.accounts import get_account
from tools.common import to_utc, utc_now

log = logging.getLogger(__name__)

API_BASE = "https://api.twitter.com/2"
REQUEST_TIMEOUT = 15

# search/recent only reaches back 7 days
SEARCH_WINDOW = timedelta(days=7)

_user_id_cache: dict[str, str] = {}


def _get_auth(account: str) -> OAuth1:
    prefix = get_account(account)["env_prefix"]
    return OAuth1(
        os.environ[f"{prefix}_CONSUMER_KEY"],
        os.environ[f"{prefix}_CONSUMER_SECRET"],
        os.environ[f"{prefix}_ACCESS_TOKEN"],
        os.environ[f"{prefix}_ACCESS_TOKEN_SECRET"],
    )


def _error_text(r: requests.Response) -> str:
    """Best human-readable error from an X API error response."""
    try:
        body = r.json()
    except ValueError:
        return r.text[:200]
    if isinstance(body, dict):
        return body.get("detail") or body.get("title") or str(body)[:200]
    return str(body)[:200]


def _describe_failure(action: str, r: requests.Response) -> str:
    if r.status_code == 401:
        return f"Unauthorized (401): {_error_text(r)}"
    if r.status_code == 429:
        return f"Rate limited on {action} (429)"
    return f"{action} failed ({r.status_code}): {_error_text(r)}"


@dataclass
class XReply:
    """A reply inside a monitored conversation."""
    id: str
    author_id: str
    text: str
    created_at: datetime
    author_handle: str = ""
    url: Optional[str] = None


@dataclass
class ConversationCheckResult:
    success: bool
    new_replies: list[XReply] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ReplyResult:
    success: bool
    reply_id: Optional[str] = None
    reply_url: Optional[str] = None
    error: Optional[str] = None


def get_own_user_id(account: str) -> Optional[str]:
    """Get the authenticated user's ID (cached per account after first call)."""
    if account in _user_id_cache:
        return _user_id_cache[account]
    try:
        r = requests.get(f"{API_BASE}/users/me", auth=_get_auth(account), timeout=REQUEST_TIMEOUT)
    except (requests.RequestException, KeyError) as e:
        log.error(f"Could not get user info for {account}: {e}")
        return None
    if r.status_code != 200:
        log.error(f"Could not get user info for {account}: {_describe_failure('users/me', r)}")
        return None
    user_id = (r.json().get("data") or {}).get("id")
    if user_id:
        _user_id_cache[account] = user_id
    return user_id


def check_conversation_replies(
    account: str,
    thread_id: str,
    since: Optional[datetime] = None,
    own_last_message_id: Optional[str] = None,
) -> ConversationCheckResult:
    """Fetch replies in a conversation thread, oldest first.

    Anchors on our own last message id when we have one (snowflake ids are
    time-ordered, so since_id means "after our last reply"); otherwise on
    the last check time. Filtering against known ids and our own author id
    is the caller's job.
    """
    params = {
        "query": f"conversation_id:{thread_id}",
        "max_results": 100,
        "tweet.fields": "created_at,author_id,in_reply_to_user_id,referenced_tweets",
        "expansions": "author_id",
        "user.fields": "username",
    }
    if own_last_message_id:
        params["since_id"] = own_last_message_id
    elif since is not None and utc_now() - since < SEARCH_WINDOW:
        params["start_time"] = to_utc(since).strftime("%Y-%m-%dT%H:%M:%SZ")

    try:
        r = requests.get(
            f"{API_BASE}/tweets/search/recent",
            params=params,
            auth=_get_auth(account),
            timeout=REQUEST_TIMEOUT,
        )
    except KeyError as e:
        return ConversationCheckResult(success=False, error=f"Could not get user info: missing credential {e}")
    except requests.RequestException as e:
        return ConversationCheckResult(success=False, error=f"Conversation search error: {e}")

    if r.status_code != 200:
        error = _describe_failure("conversation search", r)
        log.warning(f"Thread {thread_id}: {error}")
        return ConversationCheckResult(success=False, error=error)

    data = r.json()
    if not isinstance(data, dict) or not isinstance(data.get("data"), list):
        return ConversationCheckResult(success=True)

    users = {
        u.get("id"): u.get("username", "")
        for u in data.get("includes", {}).get("users", [])
        if isinstance(u, dict)
    }

    replies = []
    for tweet in data["data"]:
        if not isinstance(tweet, dict) or not tweet.get("id"):
            continue
        handle = users.get(tweet.get("author_id"), "")
        replies.append(XReply(
            id=str(tweet["id"]),
            author_id=str(tweet.get("author_id", "")),
            text=tweet.get("text", ""),
            created_at=to_utc(tweet.get("created_at")) or utc_now(),
            author_handle=handle,
            url=f"https://x.com/{handle or 'i/web'}/status/{tweet['id']}",
        ))

    # API returns newest first
    replies.sort(key=lambda reply: (len(reply.id), reply.id))

    remaining = r.headers.get("x-rate-limit-remaining", "?")
    log.debug(f"Thread {thread_id}: {len(replies)} replies (rate limit remaining: {remaining})")
    return ConversationCheckResult(success=True, new_replies=replies)


def reply_to_post(account: str, tweet_id: str, text: str) -> ReplyResult:
    """Reply to a tweet as the given account."""
    try:
        r = requests.post(
            f"{API_BASE}/tweets",
            json={
                "text": text,
                "reply": {"in_reply_to_tweet_id": tweet_id},
            },
            auth=_get_auth(account),
            timeout=REQUEST_TIMEOUT,
        )
    except KeyError as e:
        return ReplyResult(success=False, error=f"Could not get user info: missing credential {e}")
    except requests.RequestException as e:
        return ReplyResult(success=False, error=f"Reply error: {e}")

    if r.status_code not in (200, 201):
        error = _describe_failure("reply", r)
        log.error(f"Reply to {tweet_id} failed: {error}")
        return ReplyResult(success=False, error=error)

    reply_id = (r.json().get("data") or {}).get("id")
    log.debug(f"Replied to {tweet_id}: {reply_id}")
    return ReplyResult(
        success=True,
        reply_id=reply_id,
        reply_url=f"https://twitter.com/i/web/status/{reply_id}" if reply_id else None,
    )
