"""
config.py – Central configuration for the LinkedIn Inbox Bot.
All tuneable constants, file paths, rate budgets, and UI selector
cascades live here.  Deployment-specific values can be overridden
through environment variables (or a local ``.env`` file).
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

# ──────────────────────────────────────────────
# Directories & Paths
# ──────────────────────────────────────────────
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
PROFILE_DIR = os.environ.get("PROFILE_DIR", os.path.join(BASE_DIR, "linkedin-session"))
DATABASE_PATH = os.environ.get("DATABASE_PATH", os.path.join(BASE_DIR, "linkedin_inbox.db"))
LOG_FILE = os.environ.get("LOG_FILE", os.path.join(BASE_DIR, "inbox_bot.log"))

# ──────────────────────────────────────────────
# Browser Launch
# ──────────────────────────────────────────────
BROWSER_EXECUTABLE_PATH = os.environ.get("BROWSER_EXECUTABLE_PATH") or None
HEADLESS = os.environ.get("HEADLESS", "false").lower() in ("1", "true", "yes")
LOCALE = os.environ.get("LOCALE", "en-US")
TIMEZONE_ID = os.environ.get("TIMEZONE_ID", "America/New_York")

# Patched Chromium may fail on first attempt when stale lock files exist.
LAUNCH_RETRIES = 3

# ──────────────────────────────────────────────
# Session Lifetime (seconds)
# ──────────────────────────────────────────────
SESSION_TIMEOUT = 30 * 60        # inactivity before a session is stale
LOGIN_TIMEOUT = 5 * 60           # manual login wait
LOGIN_POLL_INTERVAL = 2.0
NAVIGATION_TIMEOUT_MS = 60_000
SELECTOR_TIMEOUT_MS = 5_000

# ──────────────────────────────────────────────
# Rate Budgets
# Relative proportions matter more than absolute values:
# syncs are the most conservative, scrapes the most permissive.
# ──────────────────────────────────────────────
MAX_MESSAGES_PER_HOUR = 12
MAX_MESSAGES_PER_DAY = 40
MIN_MESSAGE_INTERVAL = 3 * 60

MAX_SCRAPES_PER_HOUR = 20
MAX_SCRAPES_PER_DAY = 100
MIN_SCRAPE_INTERVAL = 5 * 60

MAX_SYNCS_PER_HOUR = 8
MAX_SYNCS_PER_DAY = 30
MIN_SYNC_INTERVAL = 10 * 60

MAX_ACTIONS_PER_HOUR = 50
MAX_SESSION_DURATION = 4 * 60 * 60
MIN_SESSION_BREAK = 30 * 60

# Interval multipliers drawn per check (fixed intervals are a signal)
MESSAGE_INTERVAL_JITTER = (0.7, 1.5)
SCRAPE_INTERVAL_JITTER = (0.8, 1.3)

DEFAULT_SCRAPE_LIMIT = 5
DEFAULT_SYNC_LIMIT = 5
SYNC_ALL_THRESHOLD = 100

# ──────────────────────────────────────────────
# Random Delay Ranges (seconds)
# ──────────────────────────────────────────────
DELAY_SHORT = (1.0, 2.5)
DELAY_MEDIUM = (2.0, 4.5)

# Conversation list items scanned before falling back to search
LOCATE_SCAN_LIMIT = 3
# Names that are UI chrome, never a person
PLACEHOLDER_NAMES = ("messaging", "unknown", "linkedin", "")
SELF_LABEL = "You"

# Background sync loop cadence (minutes, drawn uniformly)
SYNC_LOOP_MINUTES = (50, 80)

# ──────────────────────────────────────────────
# LinkedIn URLs
# ──────────────────────────────────────────────
LINKEDIN_HOST = "linkedin.com"
LINKEDIN_BASE = "https://www.linkedin.com"
LINKEDIN_LOGIN = f"{LINKEDIN_BASE}/login"
LINKEDIN_FEED = f"{LINKEDIN_BASE}/feed/"
LINKEDIN_MESSAGING = f"{LINKEDIN_BASE}/messaging/"
CHECKPOINT_MARKERS = ("/checkpoint", "/authwall", "/uas/login")


# ──────────────────────────────────────────────
# Selector Strategies
# LinkedIn rewrites its messaging markup often.  Each logical
# field owns an ordered cascade; the first strategy that yields
# a non-empty result wins and its name is logged.  Add new
# fallbacks at the end and bump the version of changed ones.
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class SelectorStrategy:
    name: str
    selector: str
    version: int = 1
    attribute: str | None = None  # read this attribute instead of text

    @property
    def label(self) -> str:
        return f"{self.name}@v{self.version}"


S = SelectorStrategy

SELECTOR_CASCADES: dict[str, list[SelectorStrategy]] = {
    # ── Login / authenticated detection ──
    "authenticated_landmark": [
        S("nav-me", ".global-nav__me"),
        S("conversations-list", ".msg-conversations-container__conversations-list"),
        S("nav-me-photo", ".global-nav__me-photo"),
        S("feed-identity", ".feed-identity-module"),
    ],
    "login_form": [
        S("username-input", "input#username"),
        S("signin-button", 'button[type="submit"][aria-label*="Sign in"]'),
    ],
    "messaging_nav": [
        S("nav-messaging", 'a[href*="/messaging"]'),
    ],

    # ── Conversation list ──
    "conversation_list": [
        S("container-list", ".msg-conversations-container__conversations-list"),
        S("conversations-list", ".msg-conversations-list"),
        S("generic-list", ".conversations-list"),
        S("test-list", "[data-test-conversations-list]"),
        S("container-ul", ".msg-conversations-container ul"),
    ],
    "conversation_item": [
        S("listitem", ".msg-conversation-listitem"),
        S("list-li", ".msg-conversations-list li"),
        S("generic-item", ".conversation-list-item"),
        S("test-item", "[data-test-conversation-item]"),
        S("container-li", ".msg-conversations-container__conversations-list li"),
    ],
    "participant_name": [
        S("participant-names", ".msg-conversation-listitem__participant-names"),
        S("participant-name", ".msg-conversation-listitem__participant-name"),
        S("participant-name-text", ".msg-conversation-listitem__participant-name-text"),
        S("listitem-name", ".msg-conversation-listitem__name"),
        S("listitem-title", ".msg-conversation-listitem__title"),
        S("test-name", "[data-test-conversation-name]"),
        S("heading-3", "h3"),
        S("heading-4", "h4"),
    ],
    "search_input": [
        S("container-search", ".msg-conversations-container__search-input"),
        S("search-input", 'input[placeholder*="Search messages"]'),
        S("search-input-aria", 'input[aria-label*="Search messages"]'),
    ],

    # ── Open conversation ──
    "message_list": [
        S("s-message-list", ".msg-s-message-list"),
        S("conversation-messages", ".msg-conversation-messages"),
        S("s-message-list-container", ".msg-s-message-list__container"),
        S("test-message-list", "[data-test-message-list]"),
        S("messages-list", ".messages-list"),
    ],
    "message_node": [
        S("list-event", ".msg-s-message-list__event"),
        S("event-listitem", ".msg-s-event-listitem"),
        S("list-message", ".msg-s-message-list__message"),
        S("message-group", ".msg-s-message-group"),
        S("test-message", "[data-test-message]"),
    ],
    "sender": [
        S("group-name", ".msg-s-message-group__name"),
        S("message-sender", ".msg-s-message-list__message-sender"),
        S("message-sender-name", ".msg-s-message-list__message-sender-name"),
        S("event-sender", ".msg-s-event-listitem__sender"),
        S("test-sender", "[data-test-message-sender]"),
    ],
    "body": [
        S("event-body", ".msg-s-event-listitem__body"),
        S("message-content", ".msg-s-message-list__message-content"),
        S("group-message", ".msg-s-message-group__message"),
        S("event-content", ".msg-s-event-listitem__content"),
        S("test-content", "[data-test-message-content]"),
    ],
    "time": [
        S("time-datetime", "time", attribute="datetime"),
        S("group-timestamp-title", ".msg-s-message-group__timestamp", attribute="title"),
        S("group-timestamp", ".msg-s-message-group__timestamp"),
        S("message-time", ".msg-s-message-list__message-time"),
        S("event-time", ".msg-s-event-listitem__time"),
        S("time-tag", "time"),
    ],
    "header_name": [
        S("header-title", ".msg-conversation-header__title"),
        S("header-name", ".msg-conversation-header__name"),
        S("header-participant", ".msg-conversation-header__participant-name"),
        S("header-h1", ".msg-conversation-header h1"),
        S("entity-lockup-title", ".msg-entity-lockup__entity-title"),
    ],

    # ── Composer ──
    "message_input": [
        S("form-contenteditable", ".msg-form__contenteditable"),
        S("form-textarea", ".msg-form__textarea"),
        S("test-input", '[data-testid="message-input"]'),
        S("contenteditable", 'div[contenteditable="true"]'),
    ],
    "send_button": [
        S("aria-send", 'button[aria-label="Send"]'),
        S("send-button-class", ".msg-form__send-button:not([disabled])"),
        S("aria-send-message", 'button[aria-label="Send message"]'),
        S("send-btn-class", ".msg-form__send-btn:not([disabled])"),
        S("form-submit", '.msg-form button[type="submit"]'),
    ],

    # ── Owner profile detection (feed page) ──
    "profile_name": [
        S("identity-name", ".feed-identity-module__actor-meta h1"),
        S("identity-heading", ".feed-identity-module__actor-meta .text-heading-xlarge"),
        S("me-photo-alt", "img.global-nav__me-photo", attribute="alt"),
    ],
    "profile_link": [
        S("identity-link", ".feed-identity-module a[href*='/in/']", attribute="href"),
        S("any-profile-link", "a[href*='/in/']", attribute="href"),
    ],
}

del S
