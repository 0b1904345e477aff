"""
Pytest configuration and shared fixtures.
"""

import os
import shutil
import tempfile
import time
from unittest.mock import MagicMock

import pytest

from storage import InboxStore


class FakeClock:
    """Manually advanced replacement for ``time.time``/``time.monotonic``."""

    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = tempfile.mkdtemp()
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def store(temp_dir):
    """A fresh on-disk inbox store."""
    inbox = InboxStore(os.path.join(temp_dir, "inbox.db"))
    yield inbox
    inbox.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep(monkeypatch):
    """Make every ``time.sleep`` instant."""
    monkeypatch.setattr(time, "sleep", lambda seconds: None)


@pytest.fixture
def mock_page():
    """A phantomwright page stand-in sitting on the LinkedIn feed."""
    page = MagicMock()
    page.url = "https://www.linkedin.com/feed/"
    page.viewport_size = {"width": 1280, "height": 800}
    page.evaluate.return_value = {"x": 0, "y": 0}
    page.is_closed.return_value = False
    return page
