"""
session.py – Browser session lifecycle for one LinkedIn account.

State machine::

    UNINITIALIZED → LAUNCHING → AWAITING_MANUAL_LOGIN → AUTHENTICATED
                                                     ↘ STALE | CLOSED

The controller exclusively owns the phantomwright context.  Callers hold
``controller.lock`` for the whole of an operation, so all automation for
an account runs strictly one step at a time.
"""

from __future__ import annotations

import os
import re
import threading
import time
import warnings
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urljoin, urlsplit, urlunsplit

# Silence phantomwright's UserWarning on add_init_script.
warnings.filterwarnings("ignore", message=".*add_init_script.*", category=UserWarning)

from phantomwright.sync_api import sync_playwright

from bot_utils import element_exists, is_browser_fatal, logger, navigate, random_sleep, wait_until
from config import (
    BROWSER_EXECUTABLE_PATH,
    DELAY_MEDIUM,
    HEADLESS,
    LAUNCH_RETRIES,
    LINKEDIN_BASE,
    LINKEDIN_FEED,
    LINKEDIN_LOGIN,
    LOCALE,
    LOGIN_POLL_INTERVAL,
    LOGIN_TIMEOUT,
    NAVIGATION_TIMEOUT_MS,
    PROFILE_DIR,
    SELECTOR_CASCADES,
    SESSION_TIMEOUT,
    TIMEZONE_ID,
)
from errors import (
    BrowserFatal,
    InboxBotError,
    LoginTimeout,
    NavigationTimeout,
    SessionNotAuthenticated,
)
from extraction import read_field
from stealth import FingerprintProfile, apply_stealth_layers, detect_checkpoint, random_viewport

CHROMIUM_ARGS = [
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-features=TranslateUI",
    "--disable-sync",
    "--hide-crash-restore-bubble",
    "--disable-session-crashed-bubble",
    "--disable-blink-features=AutomationControlled",
]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LAUNCHING = "launching"
    AWAITING_MANUAL_LOGIN = "awaiting_manual_login"
    AUTHENTICATED = "authenticated"
    STALE = "stale"
    CLOSED = "closed"


@dataclass
class AccountSession:
    """Opaque handle held by the controller."""
    account: str
    context: object
    page: object
    fingerprint: FingerprintProfile
    logged_in: bool = False
    last_activity: float = field(default_factory=time.monotonic)
    profile: dict | None = None          # {"name", "profile_url"}


def _safe_dirname(account: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", account).strip("._") or "default"


def _clean_profile_url(href: str | None) -> str | None:
    if not href:
        return None
    parts = urlsplit(urljoin(LINKEDIN_BASE, href))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


class SessionController:
    """Owns the browser context of one account."""

    def __init__(
        self,
        account: str = "default",
        profile_root: str = PROFILE_DIR,
        headless: bool = HEADLESS,
        executable_path: str | None = BROWSER_EXECUTABLE_PATH,
        session_timeout: float = SESSION_TIMEOUT,
        playwright_factory=sync_playwright,
        clock=time.monotonic,
    ) -> None:
        self.account = account
        self.profile_dir = os.path.join(profile_root, _safe_dirname(account))
        self.headless = headless
        self.executable_path = executable_path
        self.session_timeout = session_timeout
        self.lock = threading.RLock()
        self.session: AccountSession | None = None
        self._state = SessionState.UNINITIALIZED
        self._playwright_factory = playwright_factory
        self._playwright = None
        self._clock = clock

    # ──────────────────────────────────────────
    # State
    # ──────────────────────────────────────────
    @property
    def state(self) -> SessionState:
        if (
            self._state is SessionState.AUTHENTICATED
            and self.session is not None
            and self._clock() - self.session.last_activity > self.session_timeout
        ):
            return SessionState.STALE
        return self._state

    def touch(self) -> None:
        if self.session is not None:
            self.session.last_activity = self._clock()

    def _page_alive(self) -> bool:
        if self.session is None:
            return False
        try:
            return not self.session.page.is_closed()
        except Exception:
            return False

    @contextmanager
    def guard(self):
        """Convert dead-browser errors into ``BrowserFatal`` and close."""
        try:
            yield
        except BrowserFatal:
            self._teardown()
            raise
        except InboxBotError:
            raise
        except Exception as exc:
            if is_browser_fatal(exc):
                logger.error("[%s] Browser died: %s", self.account, exc)
                self._teardown()
                raise BrowserFatal(str(exc)) from exc
            raise

    # ──────────────────────────────────────────
    # Launch & Teardown
    # ──────────────────────────────────────────
    def _clear_profile_locks(self) -> None:
        """Remove stale Chrome profile lock files that can cause launch failures."""
        for lock_file in ("SingletonLock", "SingletonCookie", "SingletonSocket"):
            try:
                os.remove(os.path.join(self.profile_dir, lock_file))
            except FileNotFoundError:
                pass

    def _stop_playwright(self) -> None:
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception as exc:
                logger.debug("Playwright stop failed: %s", exc)
            self._playwright = None

    def _launch(self) -> AccountSession:
        self._state = SessionState.LAUNCHING
        os.makedirs(self.profile_dir, exist_ok=True)
        viewport = random_viewport()
        fingerprint = FingerprintProfile.generate(viewport)
        self._clear_profile_locks()

        launch_kwargs = dict(
            user_data_dir=os.path.abspath(self.profile_dir),
            headless=self.headless,
            viewport=viewport,
            locale=LOCALE,
            timezone_id=TIMEZONE_ID,
            args=CHROMIUM_ARGS,
            ignore_default_args=["--enable-automation"],
        )
        if self.executable_path:
            launch_kwargs["executable_path"] = self.executable_path

        last_err = None
        for attempt in range(1, LAUNCH_RETRIES + 1):
            context = None
            try:
                if attempt > 1:
                    self._clear_profile_locks()
                    time.sleep(2)
                logger.info(
                    "[%s] Launching phantomwright Chromium (attempt %d/%d) …",
                    self.account, attempt, LAUNCH_RETRIES,
                )
                self._playwright = self._playwright_factory().start()
                context = self._playwright.chromium.launch_persistent_context(**launch_kwargs)
                page = context.pages[0] if context.pages else context.new_page()
                page.set_default_navigation_timeout(NAVIGATION_TIMEOUT_MS)
                apply_stealth_layers(context, page, fingerprint)
                self.session = AccountSession(self.account, context, page, fingerprint, last_activity=self._clock())
                logger.info(
                    "[%s] Browser ready (viewport=%dx%d).", self.account, viewport["width"], viewport["height"]
                )
                break
            except Exception as exc:
                last_err = exc
                logger.warning("[%s] Launch attempt %d failed: %s", self.account, attempt, exc)
                if context is not None:
                    try:
                        context.close()
                    except Exception:
                        pass
                self._stop_playwright()
        else:
            self._state = SessionState.CLOSED
            raise BrowserFatal(f"Could not launch browser after {LAUNCH_RETRIES} attempts: {last_err}")

        self._state = SessionState.AWAITING_MANUAL_LOGIN
        try:
            navigate(self.session.page, LINKEDIN_FEED)
            random_sleep(*DELAY_MEDIUM)
            if self._check_logged_in():
                self._mark_authenticated()
                logger.info("[%s] Stored profile session is still valid.", self.account)
        except NavigationTimeout as exc:
            logger.warning("[%s] Initial page load slow: %s", self.account, exc)
        return self.session

    def _teardown(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            try:
                session.context.close()
            except Exception as exc:
                logger.debug("Context close failed: %s", exc)
        self._stop_playwright()
        self._state = SessionState.CLOSED

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────
    def get_or_create_session(self) -> AccountSession:
        """Reuse the live session, or launch a fresh one."""
        with self.lock:
            if self.session is not None and self._page_alive():
                return self.session
            if self.session is not None:
                logger.info("[%s] Previous browser is gone, relaunching.", self.account)
                self._teardown()
            with self.guard():
                return self._launch()

    def is_valid(self) -> bool:
        """Query only: live page, recently active, on LinkedIn, not at a
        checkpoint, and an authenticated landmark present.
        """
        with self.lock:
            if self.session is None or self.state is not SessionState.AUTHENTICATED:
                return False
            if not self._page_alive():
                return False
            try:
                if detect_checkpoint(self.session.page, check_dom=False):
                    return False
                return self._has_landmark(timeout=1500)
            except Exception as exc:
                logger.debug("[%s] Session validation error: %s", self.account, exc)
                return False

    def ensure_authenticated(self) -> AccountSession:
        """Return the authenticated session or raise ``SessionNotAuthenticated``.

        A session that only went stale through inactivity is re-checked in
        place before giving up.
        """
        with self.lock:
            if self.session is None:
                raise SessionNotAuthenticated("No active LinkedIn session. Please login first.")
            if self.is_valid():
                self.touch()
                return self.session
            if not self._page_alive():
                self._teardown()
                raise SessionNotAuthenticated("Browser session was closed. Please login again.")
            with self.guard():
                if self.state is SessionState.STALE:
                    logger.info("[%s] Session idle too long, re-checking login …", self.account)
                    navigate(self.session.page, LINKEDIN_FEED)
                    if self._check_logged_in():
                        self._mark_authenticated()
                        return self.session
                self._state = SessionState.AWAITING_MANUAL_LOGIN
                self.session.logged_in = False
            raise SessionNotAuthenticated("LinkedIn session is not logged in. Please login first.")

    def invalidate(self) -> None:
        """Forget the authenticated state; the browser stays open."""
        with self.lock:
            if self.session is not None:
                self.session.logged_in = False
                self._state = SessionState.STALE
                logger.info("[%s] Session invalidated.", self.account)

    def close(self) -> None:
        """Shut the browser down (idempotent)."""
        with self.lock:
            if self.session is None and self._state is SessionState.CLOSED:
                return
            self._teardown()
            logger.info("[%s] Browser closed.", self.account)

    def open_login(self) -> SessionState:
        """Launch if needed and show the LinkedIn login page.  Does not block."""
        with self.lock:
            self.get_or_create_session()
            if self._state is SessionState.AUTHENTICATED:
                return self._state
            with self.guard():
                navigate(self.session.page, LINKEDIN_LOGIN)
            self._state = SessionState.AWAITING_MANUAL_LOGIN
            logger.info("[%s] LinkedIn login page opened. Please log in in the browser window.", self.account)
            return self._state

    def wait_for_login(
        self,
        timeout: float = LOGIN_TIMEOUT,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> AccountSession:
        """Block until the user finishes logging in by hand.

        Stops early when *cancel* is set or the monotonic *deadline*
        passes.  Raises ``LoginTimeout`` if the login was not observed.
        """
        with self.lock:
            if self._state is SessionState.AUTHENTICATED and self.session is not None:
                return self.session
            if self.session is None:
                raise SessionNotAuthenticated("No browser session; call open_login() first.")

            started = time.monotonic()
            last_report = [started]

            def _logged_in() -> bool:
                now = time.monotonic()
                if now - last_report[0] >= 15:
                    logger.info("Still waiting for login … (%d s elapsed)", now - started)
                    last_report[0] = now
                return self._check_logged_in(quick=True)

            with self.guard():
                ok = wait_until(_logged_in, timeout, LOGIN_POLL_INTERVAL, cancel=cancel, deadline=deadline)
            if not ok:
                if cancel is not None and cancel.is_set():
                    raise LoginTimeout("Login wait cancelled")
                raise LoginTimeout(f"Login not completed within {int(timeout)} s")
            self._mark_authenticated()
            logger.info("[%s] Login detected.", self.account)
            return self.session

    def detect_profile(self) -> dict | None:
        """Read the owner's display name and profile URL from the feed."""
        with self.lock:
            session = self.ensure_authenticated()
            with self.guard():
                navigate(session.page, LINKEDIN_FEED)
                random_sleep(*DELAY_MEDIUM)
                name = read_field(session.page, "profile_name")
                url = _clean_profile_url(read_field(session.page, "profile_link"))
            if not name:
                logger.warning("[%s] Could not detect LinkedIn profile.", self.account)
                return None
            session.profile = {"name": name.strip(), "profile_url": url}
            logger.info("[%s] LinkedIn profile detected: %s (%s)", self.account, name, url or "no URL")
            return session.profile

    # ──────────────────────────────────────────
    # Login Detection
    # ──────────────────────────────────────────
    def _mark_authenticated(self) -> None:
        self._state = SessionState.AUTHENTICATED
        self.session.logged_in = True
        self.touch()

    def _has_landmark(self, timeout: int = 1500) -> bool:
        for strategy in SELECTOR_CASCADES["authenticated_landmark"]:
            if element_exists(self.session.page, strategy.selector, timeout=timeout):
                logger.debug("Logged-in indicator found: %s", strategy.label)
                return True
        return False

    def _check_logged_in(self, quick: bool = False) -> bool:
        """Negative indicators (login form, checkpoint) first, then positive landmarks."""
        page = self.session.page
        if detect_checkpoint(page, check_dom=False):
            return False
        for strategy in SELECTOR_CASCADES["login_form"]:
            if element_exists(page, strategy.selector, timeout=300 if quick else 800):
                logger.debug("Logged-out indicator found: %s", strategy.label)
                return False
        return self._has_landmark(timeout=500 if quick else 1500)


class SessionRegistry:
    """One ``SessionController`` per account identity."""

    def __init__(self, **controller_kwargs) -> None:
        self._controller_kwargs = controller_kwargs
        self._controllers: dict[str, SessionController] = {}
        self._lock = threading.Lock()

    def for_account(self, account: str) -> SessionController:
        with self._lock:
            ctl = self._controllers.get(account)
            if ctl is None:
                ctl = SessionController(account, **self._controller_kwargs)
                self._controllers[account] = ctl
            return ctl

    def close_all(self) -> None:
        with self._lock:
            controllers = list(self._controllers.values())
        for ctl in controllers:
            ctl.close()
