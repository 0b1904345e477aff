"""
service.py – HTTP-shaped handlers over the inbox bot.

Each handler returns ``(status_code, payload)`` so any web router can
serve it unchanged.  Error payloads always carry a machine-readable
``reason``.
"""

from __future__ import annotations

import threading

from bot_utils import logger
from config import DEFAULT_SCRAPE_LIMIT, DEFAULT_SYNC_LIMIT
from errors import ConversationNotFound, InboxBotError
from governor import GovernorRegistry
from inbox_bot import InboxBot
from session import SessionRegistry
from storage import InboxStore


class InboxService:
    """Routes requests to one ``InboxBot`` per account."""

    def __init__(
        self,
        store: InboxStore | None = None,
        sessions: SessionRegistry | None = None,
        governors: GovernorRegistry | None = None,
    ) -> None:
        self.store = store if store is not None else InboxStore()
        self.sessions = sessions if sessions is not None else SessionRegistry()
        self.governors = governors if governors is not None else GovernorRegistry()
        self._bots: dict[str, InboxBot] = {}
        self._lock = threading.Lock()

    def bot(self, account: str, user_id: int | None = None) -> InboxBot:
        with self._lock:
            bot = self._bots.get(account)
            if bot is None:
                bot = InboxBot(account, self.store, self.sessions, self.governors, user_id=user_id)
                self._bots[account] = bot
            return bot

    @staticmethod
    def _call(fn, *args, **kwargs) -> tuple[int, dict]:
        try:
            data = fn(*args, **kwargs)
        except InboxBotError as exc:
            logger.warning("Request failed (%s): %s", exc.reason, exc)
            return exc.http_status, {"success": False, **exc.to_dict()}
        except ValueError as exc:
            return 400, {"success": False, "reason": "invalid_request", "error": str(exc)}
        except Exception as exc:
            logger.exception("Unhandled error in handler")
            return 500, {"success": False, "reason": "internal_error", "error": str(exc)}
        if data is None:
            data = {}
        elif hasattr(data, "to_dict"):
            data = data.to_dict()
        return 200, {"success": True, **data}

    @staticmethod
    def _limit(payload: dict | None, default: int):
        value = (payload or {}).get("limit", default)
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value)
        return value

    # ── session ──
    def login(self, account: str, wait: bool = False, cancel=None, deadline=None) -> tuple[int, dict]:
        return self._call(self.bot(account).login, wait=wait, cancel=cancel, deadline=deadline)

    def detect_profile(self, account: str) -> tuple[int, dict]:
        def _detect():
            profile = self.bot(account).detect_profile()
            if not profile:
                raise ConversationNotFound("Could not detect LinkedIn profile. Make sure you are logged in.")
            return {"profile": profile}

        status, payload = self._call(_detect)
        if status == 404:
            payload["reason"] = "profile_not_found"
        return status, payload

    def logout(self, account: str) -> tuple[int, dict]:
        return self._call(self.bot(account).logout)

    def session_status(self, account: str) -> tuple[int, dict]:
        bot = self.bot(account)
        return 200, {
            "success": True,
            "state": bot.controller.state.value,
            "valid": bot.controller.is_valid(),
            "owner": bot.owner,
        }

    # ── governed operations ──
    def send_message(self, account: str, payload: dict) -> tuple[int, dict]:
        payload = payload or {}
        return self._call(
            self.bot(account).send_message,
            payload.get("contactName"),
            payload.get("message"),
            conversation_id=payload.get("conversationId"),
        )

    def scrape_conversations(self, account: str, payload: dict | None = None) -> tuple[int, dict]:
        return self._call(self.bot(account).scrape_conversations, self._limit(payload, DEFAULT_SCRAPE_LIMIT))

    def sync_conversations(self, account: str, payload: dict | None = None) -> tuple[int, dict]:
        return self._call(self.bot(account).sync_conversations, self._limit(payload, DEFAULT_SYNC_LIMIT))

    def rate_limit_status(self, account: str) -> tuple[int, dict]:
        return self._call(lambda: {"rateLimitStatus": self.bot(account).rate_limit_status()})

    # ── stored data ──
    def list_conversations(self, account: str) -> tuple[int, dict]:
        owner = self.bot(account).owner
        conversations = self.store.list_conversations(owner) if owner else []
        return 200, {"success": True, "conversations": conversations}

    def get_messages(self, account: str, conversation_id: int) -> tuple[int, dict]:
        def _messages():
            conv = self.store.get_conversation(conversation_id)
            owner = self.bot(account).owner
            if conv is None or conv["linkedin_account_id"] is None or conv["linkedin_account_id"] != owner:
                raise ConversationNotFound(f"Conversation {conversation_id} not found")
            return {"conversationId": conversation_id, "messages": self.store.get_messages(conversation_id)}

        return self._call(_messages)

    def delete_conversation(self, account: str, conversation_id: int) -> tuple[int, dict]:
        def _delete():
            owner = self.bot(account).owner
            if not owner:
                raise ConversationNotFound(f"Conversation {conversation_id} not found")
            removed = self.store.delete_conversation(conversation_id, owner)
            return {"deletedMessages": removed}

        return self._call(_delete)
