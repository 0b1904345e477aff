"""
bot_utils.py – Shared helper utilities for the LinkedIn Inbox Bot.
Provides structured logging, random delays, cancellable waits,
element checks, and browser-failure classification.
"""

from __future__ import annotations

import logging
import random
import threading
import time

from config import DELAY_MEDIUM, LOG_FILE, NAVIGATION_TIMEOUT_MS
from errors import BrowserFatal, NavigationTimeout

# ──────────────────────────────────────────────
# Logger Setup
# ──────────────────────────────────────────────
_log_format = "%(asctime)s | %(levelname)-8s | %(message)s"
logging.basicConfig(
    level=logging.INFO,
    format=_log_format,
    handlers=[
        logging.FileHandler(LOG_FILE, encoding="utf-8"),
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("LinkedInInbox")


# ─────────────────────────────────────────────
# Random Delay Helpers
# ─────────────────────────────────────────────
def random_sleep(
    min_seconds: float | None = None,
    max_seconds: float | None = None,
) -> float:
    """Sleep for a random duration between *min_seconds* and *max_seconds*.

    Falls back to DELAY_MEDIUM from config when no range is supplied.
    Returns the duration slept.
    """
    if min_seconds is None or max_seconds is None:
        min_seconds, max_seconds = DELAY_MEDIUM
    delay = random.uniform(min_seconds, max_seconds)
    logger.debug("Sleeping %.2f s", delay)
    time.sleep(delay)
    return delay


def wait_until(
    predicate,
    timeout: float,
    poll_interval: float = 1.0,
    cancel: threading.Event | None = None,
    deadline: float | None = None,
) -> bool:
    """Poll *predicate* until it returns truthy, *timeout* expires, the
    optional *deadline* (monotonic seconds) passes, or *cancel* is set.

    Returns ``True`` only when the predicate succeeded.
    """
    end = time.monotonic() + timeout
    if deadline is not None:
        end = min(end, deadline)
    while True:
        if cancel is not None and cancel.is_set():
            return False
        if predicate():
            return True
        remaining = end - time.monotonic()
        if remaining <= 0:
            return False
        pause = min(poll_interval, remaining)
        if cancel is not None:
            if cancel.wait(pause):
                return False
        else:
            time.sleep(pause)


# ─────────────────────────────────────────────
# Browser Failure Classification
# ─────────────────────────────────────────────
_FATAL_MARKERS = (
    "target closed",
    "target page, context or browser has been closed",
    "browser has been closed",
    "browser has disconnected",
    "connection closed",
    "session closed",
    "has been closed",
)


def is_browser_fatal(exc: BaseException) -> bool:
    """Return ``True`` if *exc* means the browser process/connection died."""
    text = str(exc).lower()
    return any(marker in text for marker in _FATAL_MARKERS)


def is_timeout(exc: BaseException) -> bool:
    return type(exc).__name__ == "TimeoutError" or "timeout" in str(exc).lower()


# ─────────────────────────────────────────────
# Element Checks
# ─────────────────────────────────────────────
def element_exists(page, selector: str, timeout: int = 3000) -> bool:
    """Return ``True`` if *selector* is visible on the page."""
    try:
        page.locator(selector).first.wait_for(state="visible", timeout=timeout)
        return True
    except Exception as exc:
        if is_browser_fatal(exc):
            raise
        return False


def safe_inner_text(locator, timeout: int = 1500) -> str:
    """Return stripped inner text of *locator*, or ``""`` when unreadable."""
    try:
        return (locator.inner_text(timeout=timeout) or "").strip()
    except Exception as exc:
        if is_browser_fatal(exc):
            raise
        return ""


# ─────────────────────────────────────────────
# Navigation
# ─────────────────────────────────────────────
def navigate(page, url: str, timeout: int = NAVIGATION_TIMEOUT_MS) -> None:
    """``page.goto`` with failures mapped onto the error taxonomy."""
    try:
        page.goto(url, wait_until="domcontentloaded", timeout=timeout)
    except Exception as exc:
        if is_browser_fatal(exc):
            raise BrowserFatal(str(exc)) from exc
        if is_timeout(exc):
            raise NavigationTimeout(f"Timed out loading {url}") from exc
        raise
