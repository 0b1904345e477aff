"""
errors.py – Failure taxonomy for the LinkedIn Inbox Bot.

Every error carries a machine-readable ``reason`` code and the HTTP
status the handler layer should answer with.
"""

from __future__ import annotations


class InboxBotError(Exception):
    """Base class for all automation failures."""

    reason = "internal_error"
    http_status = 500

    def __init__(self, message: str = "", *, reason: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if reason:
            self.reason = reason

    def to_dict(self) -> dict:
        return {"reason": self.reason, "error": str(self)}


class RateLimited(InboxBotError):
    """The governor refused the action. Recoverable: wait and retry."""

    reason = "rate_limited"
    http_status = 429

    def __init__(self, message: str, wait_time_ms: int = 0, status: dict | None = None) -> None:
        super().__init__(message)
        self.wait_time_ms = max(0, int(wait_time_ms))
        self.status = status or {}

    def to_dict(self) -> dict:
        return {
            "reason": str(self),
            "waitTime": self.wait_time_ms,
            "rateLimitStatus": self.status,
        }


class SessionNotAuthenticated(InboxBotError):
    """No live LinkedIn session; a manual login is required."""

    reason = "session_not_authenticated"
    http_status = 401


class SelectorExhausted(InboxBotError):
    """Every strategy in a selector cascade came up empty."""

    reason = "selector_exhausted"
    http_status = 502

    def __init__(self, field: str, tried: list[str] | None = None) -> None:
        self.field = field
        self.tried = list(tried or [])
        super().__init__(f"No selector matched for '{field}' (tried {len(self.tried)} strategies)")


class NavigationTimeout(InboxBotError):
    """A navigation or element wait expired."""

    reason = "navigation_timeout"
    http_status = 504


class LoginTimeout(InboxBotError):
    """The manual login was not completed in time (or was cancelled)."""

    reason = "login_timeout"
    http_status = 504


class BrowserFatal(InboxBotError):
    """The browser process or its connection died."""

    reason = "browser_fatal"
    http_status = 503


class PersistenceError(InboxBotError):
    """A storage transaction failed and was rolled back."""

    reason = "persistence_error"
    http_status = 500


class ConversationNotFound(InboxBotError):
    reason = "conversation_not_found"
    http_status = 404


class PermissionDenied(InboxBotError):
    reason = "permission_denied"
    http_status = 403
