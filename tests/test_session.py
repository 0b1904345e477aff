"""
Tests for the browser session controller, driven by a mocked
phantomwright factory.
"""

import os
import threading
from unittest.mock import MagicMock

import pytest

import session as session_module
from config import SELECTOR_CASCADES
from errors import BrowserFatal, LoginTimeout, SessionNotAuthenticated
from session import SessionController, SessionRegistry, SessionState, _clean_profile_url, _safe_dirname

LOGIN_FORM = {s.selector for s in SELECTOR_CASCADES["login_form"]}


def _page(logged_in):
    page = MagicMock()
    page.url = "https://www.linkedin.com/feed/"
    page.is_closed.return_value = False

    def locator(selector):
        loc = MagicMock()
        hidden = selector in LOGIN_FORM if logged_in else selector not in LOGIN_FORM
        if hidden:
            loc.first.wait_for.side_effect = Exception("Timeout 800ms exceeded")
        return loc

    page.locator.side_effect = locator
    return page


def _factory(page):
    factory = MagicMock()
    playwright = factory.return_value.start.return_value
    context = playwright.chromium.launch_persistent_context.return_value
    context.pages = [page]
    return factory


@pytest.fixture(autouse=True)
def quiet_browser(monkeypatch, no_sleep):
    monkeypatch.setattr(session_module, "apply_stealth_layers", MagicMock())
    monkeypatch.setattr(session_module, "random_sleep", MagicMock())


def _controller(temp_dir, page, clock=None, **kwargs):
    kwargs.setdefault("session_timeout", 60)
    if clock is not None:
        kwargs["clock"] = clock
    return SessionController(
        "jane@example.com", profile_root=temp_dir, headless=True,
        executable_path=None, playwright_factory=_factory(page), **kwargs,
    )


class TestLaunch:
    def test_fresh_profile_awaits_manual_login(self, temp_dir):
        page = _page(logged_in=False)
        ctl = _controller(temp_dir, page)

        session = ctl.get_or_create_session()

        assert session.page is page
        assert ctl.state is SessionState.AWAITING_MANUAL_LOGIN
        launch = ctl._playwright.chromium.launch_persistent_context
        kwargs = launch.call_args.kwargs
        assert kwargs["headless"] is True
        assert kwargs["user_data_dir"] == os.path.abspath(os.path.join(temp_dir, "jane_example.com"))
        assert "--enable-automation" in kwargs["ignore_default_args"]
        session_module.apply_stealth_layers.assert_called_once()

    def test_stored_profile_is_already_authenticated(self, temp_dir):
        ctl = _controller(temp_dir, _page(logged_in=True))
        ctl.get_or_create_session()
        assert ctl.state is SessionState.AUTHENTICATED
        assert ctl.session.logged_in is True

    def test_session_is_reused(self, temp_dir):
        ctl = _controller(temp_dir, _page(logged_in=True))
        assert ctl.get_or_create_session() is ctl.get_or_create_session()

    def test_launch_failure_after_retries(self, temp_dir):
        ctl = _controller(temp_dir, _page(logged_in=False))
        ctl._playwright_factory.return_value.start.return_value.chromium.launch_persistent_context.side_effect = (
            Exception("profile in use")
        )

        with pytest.raises(BrowserFatal):
            ctl.get_or_create_session()
        assert ctl.state is SessionState.CLOSED
        assert ctl._playwright_factory.return_value.start.call_count == 3


class TestLogin:
    def test_wait_for_login_cancelled(self, temp_dir):
        ctl = _controller(temp_dir, _page(logged_in=False))
        ctl.open_login()
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(LoginTimeout, match="cancelled"):
            ctl.wait_for_login(timeout=30, cancel=cancel)

    def test_wait_for_login_times_out(self, temp_dir):
        ctl = _controller(temp_dir, _page(logged_in=False))
        ctl.open_login()
        with pytest.raises(LoginTimeout):
            ctl.wait_for_login(timeout=0)

    def test_wait_for_login_succeeds(self, temp_dir):
        page = _page(logged_in=False)
        ctl = _controller(temp_dir, page)
        ctl.open_login()
        # user finishes logging in
        logged_in = _page(logged_in=True)
        page.locator.side_effect = logged_in.locator.side_effect

        ctl.wait_for_login(timeout=5)
        assert ctl.state is SessionState.AUTHENTICATED

    def test_ensure_authenticated_without_session(self, temp_dir):
        ctl = _controller(temp_dir, _page(logged_in=True))
        with pytest.raises(SessionNotAuthenticated):
            ctl.ensure_authenticated()

    def test_checkpoint_is_not_logged_in(self, temp_dir):
        page = _page(logged_in=True)
        ctl = _controller(temp_dir, page)
        ctl.get_or_create_session()
        page.url = "https://www.linkedin.com/checkpoint/challenge/abc"

        assert ctl.is_valid() is False

    def test_detect_profile(self, temp_dir):
        page = _page(logged_in=True)
        ctl = _controller(temp_dir, page)
        ctl.get_or_create_session()
        name_sel = SELECTOR_CASCADES["profile_name"][0].selector
        link_sel = SELECTOR_CASCADES["profile_link"][0].selector
        inner = page.locator.side_effect

        def locator(selector):
            loc = inner(selector)
            if selector == name_sel:
                loc.first.count.return_value = 1
                loc.first.inner_text.return_value = "Jane Doe"
            elif selector == link_sel:
                loc.first.count.return_value = 1
                loc.first.get_attribute.return_value = "/in/jane-doe/?miniProfileUrn=123"
            else:
                loc.first.count.return_value = 0
            return loc

        page.locator.side_effect = locator

        assert ctl.detect_profile() == {"name": "Jane Doe", "profile_url": "https://www.linkedin.com/in/jane-doe/"}


class TestLifecycle:
    def test_inactivity_makes_session_stale(self, temp_dir, clock):
        ctl = _controller(temp_dir, _page(logged_in=True), clock=clock)
        ctl.get_or_create_session()
        assert ctl.state is SessionState.AUTHENTICATED

        clock.advance(61)
        assert ctl.state is SessionState.STALE
        assert ctl.is_valid() is False

    def test_stale_session_is_rechecked_in_place(self, temp_dir, clock):
        ctl = _controller(temp_dir, _page(logged_in=True), clock=clock)
        ctl.get_or_create_session()
        clock.advance(61)

        assert ctl.ensure_authenticated() is ctl.session
        assert ctl.state is SessionState.AUTHENTICATED

    def test_guard_converts_dead_browser(self, temp_dir):
        ctl = _controller(temp_dir, _page(logged_in=True))
        ctl.get_or_create_session()

        with pytest.raises(BrowserFatal):
            with ctl.guard():
                raise Exception("Target closed")
        assert ctl.session is None
        assert ctl.state is SessionState.CLOSED

    def test_guard_passes_other_errors(self, temp_dir):
        ctl = _controller(temp_dir, _page(logged_in=True))
        ctl.get_or_create_session()

        with pytest.raises(ValueError):
            with ctl.guard():
                raise ValueError("bad input")
        assert ctl.session is not None

    def test_invalidate_keeps_browser_open(self, temp_dir):
        ctl = _controller(temp_dir, _page(logged_in=True))
        ctl.get_or_create_session()

        ctl.invalidate()

        assert ctl.state is SessionState.STALE
        assert ctl.session is not None
        assert ctl.session.logged_in is False
        assert ctl.is_valid() is False

    def test_close_is_idempotent(self, temp_dir):
        ctl = _controller(temp_dir, _page(logged_in=True))
        ctl.get_or_create_session()
        ctl.close()
        ctl.close()
        assert ctl.state is SessionState.CLOSED

    def test_registry_gives_one_controller_per_account(self, temp_dir):
        registry = SessionRegistry(profile_root=temp_dir)
        assert registry.for_account("a") is registry.for_account("a")
        assert registry.for_account("a") is not registry.for_account("b")


class TestHelpers:
    def test_safe_dirname(self):
        assert _safe_dirname("jane doe/work") == "jane_doe_work"
        assert _safe_dirname("...") == "default"

    def test_clean_profile_url(self):
        assert _clean_profile_url("/in/jane-doe/?trk=nav") == "https://www.linkedin.com/in/jane-doe/"
        assert _clean_profile_url(None) is None
