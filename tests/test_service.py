"""
Tests for the HTTP-shaped handler layer: outcome to status-code mapping
and ownership checks on stored data.
"""

from unittest.mock import MagicMock

import pytest

from errors import LoginTimeout, RateLimited, SessionNotAuthenticated
from governor import GovernorRegistry
from inbox_bot import BatchResult, ConversationError
from service import InboxService

OWNER = "https://www.linkedin.com/in/me/"


@pytest.fixture
def fake_bot():
    bot = MagicMock()
    bot.owner = OWNER
    return bot


@pytest.fixture
def service(store, fake_bot, clock):
    svc = InboxService(store=store, sessions=MagicMock(), governors=GovernorRegistry(clock=clock))
    svc.bot = lambda account, user_id=None: fake_bot
    return svc


class TestStatusMapping:
    def test_rate_limited_is_429(self, service, fake_bot):
        fake_bot.send_message.side_effect = RateLimited("Too soon after last message", 42_000, {"confidence": 0.5})

        status, payload = service.send_message("me", {"contactName": "Jane Doe", "message": "hi"})

        assert status == 429
        assert payload["success"] is False
        assert payload["reason"] == "Too soon after last message"
        assert payload["waitTime"] == 42_000
        assert payload["rateLimitStatus"] == {"confidence": 0.5}

    def test_not_authenticated_is_401(self, service, fake_bot):
        fake_bot.scrape_conversations.side_effect = SessionNotAuthenticated("Please login first.")

        status, payload = service.scrape_conversations("me")

        assert status == 401
        assert payload == {"success": False, "reason": "session_not_authenticated", "error": "Please login first."}

    def test_login_timeout_is_504(self, service, fake_bot):
        fake_bot.login.side_effect = LoginTimeout("Login wait cancelled")
        status, payload = service.login("me", wait=True)
        assert status == 504
        assert payload["reason"] == "login_timeout"

    def test_bad_input_is_400(self, service, fake_bot):
        fake_bot.send_message.side_effect = ValueError("Contact name and message are required")
        status, payload = service.send_message("me", {})
        assert status == 400
        assert payload["reason"] == "invalid_request"

    def test_unexpected_error_is_500(self, service, fake_bot):
        fake_bot.sync_conversations.side_effect = RuntimeError("kaboom")
        status, payload = service.sync_conversations("me")
        assert status == 500
        assert payload["reason"] == "internal_error"

    def test_batch_result_success(self, service, fake_bot):
        fake_bot.sync_conversations.return_value = BatchResult(
            total=2, succeeded=1, new_messages=3,
            errors=[ConversationError("Bob Ray", "not_found", "gone")],
        )

        status, payload = service.sync_conversations("me", {"limit": "2"})

        assert status == 200
        assert payload["success"] is True
        assert payload["newMessages"] == 3
        assert payload["errors"] == [{"conversation": "Bob Ray", "reason": "not_found", "detail": "gone"}]
        fake_bot.sync_conversations.assert_called_once_with(2)

    def test_default_scrape_limit(self, service, fake_bot):
        fake_bot.scrape_conversations.return_value = BatchResult()
        service.scrape_conversations("me")
        fake_bot.scrape_conversations.assert_called_once_with(5)

    def test_profile_not_found(self, service, fake_bot):
        fake_bot.detect_profile.return_value = None
        status, payload = service.detect_profile("me")
        assert status == 404
        assert payload["reason"] == "profile_not_found"

    def test_session_status(self, service, fake_bot):
        fake_bot.controller.state.value = "authenticated"
        fake_bot.controller.is_valid.return_value = True

        status, payload = service.session_status("me")

        assert status == 200
        assert payload == {"success": True, "state": "authenticated", "valid": True, "owner": OWNER}

    def test_rate_limit_status(self, service, fake_bot):
        fake_bot.rate_limit_status.return_value = {"confidence": 1.0}
        status, payload = service.rate_limit_status("me")
        assert status == 200
        assert payload["rateLimitStatus"] == {"confidence": 1.0}


class TestStoredData:
    def test_list_conversations(self, service, store):
        store.upsert_conversation("Jane Doe", OWNER)
        store.upsert_conversation("Someone", "https://www.linkedin.com/in/other/")

        status, payload = service.list_conversations("me")

        assert status == 200
        assert [c["contactName"] for c in payload["conversations"]] == ["Jane Doe"]

    def test_list_without_owner_is_empty(self, service, store, fake_bot):
        store.upsert_conversation("Jane Doe", OWNER)
        fake_bot.owner = None
        assert service.list_conversations("me") == (200, {"success": True, "conversations": []})

    def test_get_messages_of_own_conversation(self, service, store):
        cid = store.upsert_conversation("Jane Doe", OWNER)
        store.add_message(cid, "Jane Doe", "You", "Hi")

        status, payload = service.get_messages("me", cid)

        assert status == 200
        assert [m["message"] for m in payload["messages"]] == ["Hi"]

    def test_get_messages_of_foreign_conversation_is_404(self, service, store):
        cid = store.upsert_conversation("Jane Doe", "https://www.linkedin.com/in/other/")
        status, payload = service.get_messages("me", cid)
        assert status == 404
        assert payload["reason"] == "conversation_not_found"

    def test_delete_foreign_conversation_is_403(self, service, store):
        cid = store.upsert_conversation("Jane Doe", "https://www.linkedin.com/in/other/")

        status, payload = service.delete_conversation("me", cid)

        assert status == 403
        assert payload["reason"] == "permission_denied"
        assert store.get_conversation(cid) is not None

    def test_delete_own_conversation(self, service, store):
        cid = store.upsert_conversation("Jane Doe", OWNER)
        store.add_message(cid, "You", "Jane Doe", "bye")

        status, payload = service.delete_conversation("me", cid)

        assert status == 200
        assert payload["deletedMessages"] == 1
        assert store.get_conversation(cid) is None
