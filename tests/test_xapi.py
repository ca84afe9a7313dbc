"""Tests for the X API adapter, with requests patched out."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests

from tools import xapi
from tools.common import utc_now
from tools.escalation import is_auth_error


@pytest.fixture(autouse=True)
def credentials(monkeypatch):
    for suffix in ("CONSUMER_KEY", "CONSUMER_SECRET", "ACCESS_TOKEN", "ACCESS_TOKEN_SECRET"):
        monkeypatch.setenv(f"X_API_{suffix}", "test")
    xapi._user_id_cache.clear()
    yield
    xapi._user_id_cache.clear()


def response(status: int = 200, body=None):
    r = MagicMock()
    r.status_code = status
    r.json.return_value = body if body is not None else {}
    r.text = str(body)
    r.headers = {"x-rate-limit-remaining": "99"}
    return r


SEARCH_BODY = {
    "data": [
        {"id": "1900000000000000003", "author_id": "200", "text": "newest", "created_at": "2026-03-10T11:00:00.000Z"},
        {"id": "1900000000000000001", "author_id": "200", "text": "oldest", "created_at": "2026-03-10T10:00:00.000Z"},
        {"id": "1900000000000000002", "author_id": "100", "text": "ours", "created_at": "2026-03-10T10:30:00.000Z"},
    ],
    "includes": {"users": [{"id": "200", "username": "kyotofan"}, {"id": "100", "username": "tatamispaces"}]},
}


class TestCheckConversationReplies:
    def test_returns_replies_oldest_first(self):
        with patch.object(xapi.requests, "get", return_value=response(200, SEARCH_BODY)) as get:
            result = xapi.check_conversation_replies("tatamispaces", "1000", None, "1899999999999999999")

        assert result.success
        assert [r.text for r in result.new_replies] == ["oldest", "ours", "newest"]
        assert result.new_replies[0].url == "https://x.com/kyotofan/status/1900000000000000001"
        params = get.call_args.kwargs["params"]
        assert params["query"] == "conversation_id:1000"
        assert params["since_id"] == "1899999999999999999"
        assert "start_time" not in params

    def test_uses_start_time_without_anchor(self):
        since = utc_now() - timedelta(hours=2)
        with patch.object(xapi.requests, "get", return_value=response(200, {"meta": {"result_count": 0}})) as get:
            result = xapi.check_conversation_replies("tatamispaces", "1000", since, None)
        assert result.success and result.new_replies == []
        assert get.call_args.kwargs["params"]["start_time"] == since.strftime("%Y-%m-%dT%H:%M:%SZ")

    def test_start_time_dropped_beyond_search_window(self):
        since = utc_now() - timedelta(days=10)
        with patch.object(xapi.requests, "get", return_value=response(200, {})) as get:
            xapi.check_conversation_replies("tatamispaces", "1000", since, None)
        assert "start_time" not in get.call_args.kwargs["params"]

    def test_unauthorized_is_an_auth_error(self):
        with patch.object(xapi.requests, "get", return_value=response(401, {"title": "Unauthorized"})):
            result = xapi.check_conversation_replies("tatamispaces", "1000")
        assert not result.success
        assert result.error == "Unauthorized (401): Unauthorized"
        assert is_auth_error(result.error)

    def test_rate_limit_is_transient(self):
        with patch.object(xapi.requests, "get", return_value=response(429, {})):
            result = xapi.check_conversation_replies("tatamispaces", "1000")
        assert not result.success
        assert not is_auth_error(result.error)

    def test_network_error(self):
        with patch.object(xapi.requests, "get", side_effect=requests.ConnectionError("reset")):
            result = xapi.check_conversation_replies("tatamispaces", "1000")
        assert not result.success
        assert "reset" in result.error

    def test_missing_credentials_is_an_auth_error(self, monkeypatch):
        monkeypatch.delenv("X_API_ACCESS_TOKEN")
        result = xapi.check_conversation_replies("tatamispaces", "1000")
        assert not result.success
        assert is_auth_error(result.error)


class TestOwnUserId:
    def test_cached_per_account(self):
        with patch.object(xapi.requests, "get", return_value=response(200, {"data": {"id": "100"}})) as get:
            assert xapi.get_own_user_id("tatamispaces") == "100"
            assert xapi.get_own_user_id("tatamispaces") == "100"
        assert get.call_count == 1

    def test_failure_returns_none(self):
        with patch.object(xapi.requests, "get", return_value=response(401, {"title": "Unauthorized"})):
            assert xapi.get_own_user_id("tatamispaces") is None


class TestReplyToPost:
    def test_success(self):
        with patch.object(xapi.requests, "post", return_value=response(201, {"data": {"id": "777"}})) as post:
            result = xapi.reply_to_post("tatamispaces", "601", "Hinoki, yes.")
        assert result.success and result.reply_id == "777"
        assert post.call_args.kwargs["json"] == {"text": "Hinoki, yes.", "reply": {"in_reply_to_tweet_id": "601"}}

    def test_failure(self):
        with patch.object(xapi.requests, "post", return_value=response(403, {"detail": "You are not allowed"})):
            result = xapi.reply_to_post("tatamispaces", "601", "Hinoki, yes.")
        assert not result.success
        assert result.error == "reply failed (403): You are not allowed"
