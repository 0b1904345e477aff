"""
inbox_bot.py – Per-account orchestration of LinkedIn inbox automation.

Ties the session controller, governor, extraction engine and store
together for the three governed flows: sending a reply, a full scrape of
the most recent conversations, and an incremental sync of stored ones.
"""

from __future__ import annotations

import random
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field

import behavior
import extraction
from bot_utils import is_browser_fatal, logger, random_sleep, safe_inner_text
from config import (
    DEFAULT_SCRAPE_LIMIT,
    DEFAULT_SYNC_LIMIT,
    LOGIN_TIMEOUT,
    SELF_LABEL,
    SYNC_ALL_THRESHOLD,
)
from errors import (
    BrowserFatal,
    ConversationNotFound,
    NavigationTimeout,
    PersistenceError,
    RateLimited,
    SelectorExhausted,
    SessionNotAuthenticated,
)
from governor import Category, GovernorRegistry
from session import SessionRegistry, SessionState
from storage import InboxStore


@dataclass
class ConversationError:
    conversation: str
    reason: str          # not_found | no_messages | selector_exhausted | navigation_timeout | extraction_failed
    detail: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BatchResult:
    total: int = 0
    succeeded: int = 0
    conversations: list[dict] = field(default_factory=list)
    errors: list[ConversationError] = field(default_factory=list)
    new_messages: int = 0
    message: str | None = None

    def to_dict(self) -> dict:
        data = {
            "total": self.total,
            "succeeded": self.succeeded,
            "conversations": self.conversations,
            "errors": [e.to_dict() for e in self.errors],
            "newMessages": self.new_messages,
        }
        if self.message:
            data["message"] = self.message
        return data


def _validate_limit(limit) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValueError(f"limit must be a positive integer, got {limit!r}")
    return limit


class InboxBot:
    """All automation for one LinkedIn account."""

    def __init__(
        self,
        account: str = "default",
        store: InboxStore | None = None,
        sessions: SessionRegistry | None = None,
        governors: GovernorRegistry | None = None,
        user_id: int | None = None,
    ) -> None:
        self.account = account
        self.store = store if store is not None else InboxStore()
        self.controller = (sessions or SessionRegistry()).for_account(account)
        self.governor = (governors or GovernorRegistry()).for_account(account)
        self.user_id = user_id
        self.owner: str | None = None

    # ──────────────────────────────────────────
    # Governance
    # ──────────────────────────────────────────
    @contextmanager
    def governed(self, category: Category):
        """Admit *category* or raise ``RateLimited``; always record the attempt."""
        decision = self.governor.can_perform(category)
        if not decision.allowed:
            logger.warning("[%s] %s denied: %s (wait %d ms)", self.account, category.value,
                           decision.reason, decision.wait_time_ms)
            raise RateLimited(decision.reason, decision.wait_time_ms, self.governor.status())
        logger.info("[%s] %s admitted (confidence %.2f)", self.account, category.value, decision.confidence)
        try:
            yield decision
        finally:
            self.governor.record(category)

    def rate_limit_status(self) -> dict:
        status = self.governor.status()
        status["checks"] = {
            category.value: self.governor.can_perform(category).to_dict()
            for category in (Category.MESSAGE, Category.CONVERSATION_SCRAPE, Category.SYNC)
        }
        return status

    # ──────────────────────────────────────────
    # Authentication
    # ──────────────────────────────────────────
    def login(self, wait: bool = True, timeout: float = LOGIN_TIMEOUT, cancel=None, deadline=None) -> dict:
        """Open the login page and (optionally) wait for the manual login.

        On success the owner profile is detected so conversations can be
        attributed to this LinkedIn account.
        """
        with self.controller.lock:
            state = self.controller.open_login()
            if state is not SessionState.AUTHENTICATED and wait:
                self.controller.wait_for_login(timeout=timeout, cancel=cancel, deadline=deadline)
                state = self.controller.state
            profile = None
            if state is SessionState.AUTHENTICATED:
                self.governor.record(Category.LOGIN)
                profile = self.detect_profile()
            return {"state": state.value, "profile": profile}

    def detect_profile(self) -> dict | None:
        profile = self.controller.detect_profile()
        if profile:
            self.owner = profile.get("profile_url") or profile.get("name")
        return profile

    def logout(self) -> None:
        self.controller.close()
        self.owner = None

    def _require_owner(self) -> str:
        if not self.owner:
            self.detect_profile()
        if not self.owner:
            raise SessionNotAuthenticated("LinkedIn profile not detected. Please complete the login first.")
        return self.owner

    # ──────────────────────────────────────────
    # Send
    # ──────────────────────────────────────────
    def send_message(self, contact: str, text: str, conversation_id: int | None = None) -> dict:
        contact = (contact or "").strip()
        if not contact or not (text or "").strip():
            raise ValueError("Contact name and message are required")

        with self.controller.lock:
            session = self.controller.ensure_authenticated()
            with self.governed(Category.MESSAGE) as decision, self.controller.guard():
                page = session.page
                logger.info("[%s] Sending message to %s (confidence %.2f)", self.account, contact, decision.confidence)
                behavior.wander(page)
                extraction.open_messaging(page)
                behavior.read(page, random.uniform(1.5, 3.0))
                item = extraction.locate_conversation(page, contact)
                if item is None:
                    raise ConversationNotFound(f"Conversation with {contact} not found even after search")
                extraction.open_conversation(page, item)
                verified = self._compose_and_send(page, text)
            self.controller.touch()

        stored_id = None
        owner = self.owner
        if owner:
            stored_id = self._own_conversation_id(conversation_id, owner)
            if stored_id is None:
                stored_id = self.store.upsert_conversation(contact, owner, self.user_id)
            self.store.add_message(stored_id, SELF_LABEL, contact, text)
        else:
            logger.warning("[%s] Sent reply not stored: no LinkedIn profile detected", self.account)

        result = {"sent": True, "verified": verified, "conversationId": stored_id}
        if not verified:
            result["warning"] = "Could not definitively verify message delivery"
        return result

    def _own_conversation_id(self, conversation_id: int | None, owner: str) -> int | None:
        if conversation_id is None:
            return None
        conv = self.store.get_conversation(conversation_id)
        if conv is None or conv["linkedin_account_id"] != owner:
            logger.warning("[%s] Conversation %s is not ours, storing reply by contact name",
                           self.account, conversation_id)
            return None
        return conversation_id

    def _compose_and_send(self, page, text: str) -> bool:
        strategy = extraction.wait_for_field(page, "message_input")
        message_input = page.locator(strategy.selector).first
        behavior.type_text(page, message_input, text)
        behavior.action_pause(0.5)

        used_selector = None
        found = extraction.resolve(page, "send_button")
        if found is not None:
            behavior.click(page, found[0].first)
            used_selector = found[1].selector
        else:
            logger.info("No send button matched, pressing Enter")
            behavior.action_pause(0.3)
            page.keyboard.press("Enter")
        random_sleep(1.5, 3.0)
        return self._verify_sent(page, message_input, used_selector, text)

    def _verify_sent(self, page, message_input, used_selector: str | None, text: str) -> bool:
        remaining = safe_inner_text(message_input)
        if remaining == "" or len(remaining) < len(text) / 3:
            logger.info("Message verification: input field cleared")
            return True

        if used_selector:
            try:
                button = page.locator(used_selector)
                if button.count() == 0 or button.first.is_disabled(timeout=1000):
                    logger.info("Message verification: send button state changed")
                    return True
            except Exception as exc:
                if is_browser_fatal(exc):
                    raise
                logger.debug("Could not check button state: %s", exc)

        random_sleep(2.0, 3.0)
        snippet = text[:20]
        for node in extraction.collect_raw_nodes(page)[-3:]:
            if snippet in (node.get("body") or ""):
                logger.info("Message verification: found message in conversation")
                return True

        logger.warning("Could not verify message was sent")
        return False

    # ──────────────────────────────────────────
    # Scrape & Sync
    # ──────────────────────────────────────────
    def _record_failure(self, result: BatchResult, label: str, exc: Exception) -> None:
        if isinstance(exc, SelectorExhausted):
            reason = "selector_exhausted"
        elif isinstance(exc, NavigationTimeout):
            reason = "navigation_timeout"
        elif isinstance(exc, ConversationNotFound):
            reason = "not_found"
        else:
            reason = "extraction_failed"
        logger.warning("[%s] Conversation %s failed (%s): %s", self.account, label, reason, exc)
        result.errors.append(ConversationError(label, reason, str(exc)))

    def scrape_conversations(self, limit: int = DEFAULT_SCRAPE_LIMIT) -> BatchResult:
        """Full scrape of the first *limit* conversations in the list.

        Each conversation replaces its stored messages.  Per-conversation
        failures are collected; persistence and browser failures abort.
        """
        limit = _validate_limit(limit)
        result = BatchResult()
        with self.controller.lock:
            session = self.controller.ensure_authenticated()
            owner = self._require_owner()
            with self.governed(Category.CONVERSATION_SCRAPE), self.controller.guard():
                page = session.page
                extraction.open_messaging(page)
                items = extraction.list_items(page)
                count = items.count() if items is not None else 0
                if count == 0:
                    result.message = "No conversations found in the inbox"
                    return result
                result.total = min(limit, count)
                logger.info("[%s] Found %d conversations, scraping %d", self.account, count, result.total)

                for i in range(result.total):
                    item = items.nth(i)
                    name = extraction.list_item_name(item)
                    label = name or f"#{i + 1}"
                    try:
                        extraction.open_conversation(page, item)
                        conv = extraction.extract_messages(page, name)
                        if not conv.messages:
                            result.errors.append(ConversationError(label, "no_messages", "No messages found after retry"))
                        elif not conv.counterparty:
                            result.errors.append(
                                ConversationError(label, "extraction_failed", "Could not determine contact name")
                            )
                        else:
                            cid = self.store.upsert_conversation(conv.counterparty, owner, self.user_id)
                            stored = self.store.replace_messages(cid, [m.to_dict() for m in conv.messages])
                            result.conversations.append(
                                {"id": cid, "contactName": conv.counterparty, "messageCount": stored}
                            )
                            result.succeeded += 1
                    except (BrowserFatal, PersistenceError):
                        raise
                    except Exception as exc:
                        if is_browser_fatal(exc):
                            raise
                        self._record_failure(result, label, exc)
                    self.controller.touch()
                    if i < result.total - 1:
                        behavior.action_pause(1.5)
        logger.info("[%s] Scrape finished: %d/%d", self.account, result.succeeded, result.total)
        return result

    def sync_conversations(self, limit: int = DEFAULT_SYNC_LIMIT) -> BatchResult:
        """Incremental sync of stored conversations, most recent first.

        A *limit* of ``SYNC_ALL_THRESHOLD`` or more syncs every stored one.
        """
        limit = _validate_limit(limit)
        result = BatchResult()
        with self.controller.lock:
            session = self.controller.ensure_authenticated()
            owner = self._require_owner()
            stored = self.store.list_conversations(owner)
            if not stored:
                result.message = "No existing conversations found to sync"
                return result
            actual = len(stored) if limit >= SYNC_ALL_THRESHOLD else min(limit, len(stored))
            targets = stored[:actual]
            result.total = len(targets)
            logger.info("[%s] Found %d stored conversations, syncing %d", self.account, len(stored), result.total)

            with self.governed(Category.SYNC), self.controller.guard():
                page = session.page
                extraction.open_messaging(page)
                for i, conv in enumerate(targets):
                    name = conv["contactName"]
                    try:
                        behavior.wander(page)
                        behavior.action_pause()
                        item = extraction.locate_conversation(page, name)
                        if item is None:
                            raise ConversationNotFound("Not found in conversation list or search results")
                        extraction.open_conversation(page, item)
                        extracted = extraction.extract_messages(page, name)
                        if not extracted.messages:
                            result.errors.append(ConversationError(name, "no_messages", "No messages found after retry"))
                        else:
                            rows = []
                            for msg in extracted.messages:
                                row = msg.to_dict()
                                row["receiver"] = name if msg.sender == SELF_LABEL else SELF_LABEL
                                rows.append(row)
                            inserted = self.store.append_new_messages(conv["id"], rows)
                            latest = self.store.get_conversation(conv["id"]) or {}
                            result.conversations.append({
                                "id": conv["id"],
                                "contactName": name,
                                "newMessages": inserted,
                                "lastUpdated": latest.get("last_updated"),
                            })
                            result.succeeded += 1
                            result.new_messages += inserted
                    except (BrowserFatal, PersistenceError):
                        raise
                    except Exception as exc:
                        if is_browser_fatal(exc):
                            raise
                        self._record_failure(result, name, exc)
                    self.controller.touch()
                    if i < result.total - 1:
                        behavior.action_pause(1.5)
        logger.info(
            "[%s] Sync finished: %d/%d, %d new messages",
            self.account, result.succeeded, result.total, result.new_messages,
        )
        return result
