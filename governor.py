"""
governor.py – Rate/activity admission control for the LinkedIn Inbox Bot.

Every governed action (send, scrape, sync) must ask ``can_perform`` first
and call ``record`` after the attempt, whatever its outcome.  State lives
in an ``ActivityStore`` partitioned by account so several accounts never
share budgets.
"""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum

from behavior import behavior_profile
from config import (
    MAX_ACTIONS_PER_HOUR,
    MAX_MESSAGES_PER_DAY,
    MAX_MESSAGES_PER_HOUR,
    MAX_SCRAPES_PER_DAY,
    MAX_SCRAPES_PER_HOUR,
    MAX_SESSION_DURATION,
    MAX_SYNCS_PER_DAY,
    MAX_SYNCS_PER_HOUR,
    MESSAGE_INTERVAL_JITTER,
    MIN_MESSAGE_INTERVAL,
    MIN_SCRAPE_INTERVAL,
    MIN_SESSION_BREAK,
    MIN_SYNC_INTERVAL,
    SCRAPE_INTERVAL_JITTER,
)

logger = logging.getLogger("LinkedInInbox")

HOUR = 60 * 60
DAY = 24 * HOUR


class Category(str, Enum):
    MESSAGE = "message"
    CONVERSATION_SCRAPE = "conversation_scrape"
    SYNC = "sync"
    LOGIN = "login"


@dataclass(frozen=True)
class CategoryLimits:
    hourly: int
    daily: int
    min_interval: float                  # seconds
    jitter: tuple[float, float]


DEFAULT_LIMITS: dict[Category, CategoryLimits] = {
    Category.MESSAGE: CategoryLimits(
        MAX_MESSAGES_PER_HOUR, MAX_MESSAGES_PER_DAY, MIN_MESSAGE_INTERVAL, MESSAGE_INTERVAL_JITTER,
    ),
    Category.CONVERSATION_SCRAPE: CategoryLimits(
        MAX_SCRAPES_PER_HOUR, MAX_SCRAPES_PER_DAY, MIN_SCRAPE_INTERVAL, SCRAPE_INTERVAL_JITTER,
    ),
    Category.SYNC: CategoryLimits(
        MAX_SYNCS_PER_HOUR, MAX_SYNCS_PER_DAY, MIN_SYNC_INTERVAL, SCRAPE_INTERVAL_JITTER,
    ),
}


@dataclass
class Decision:
    allowed: bool
    reason: str | None = None
    wait_time_ms: int = 0
    confidence: float = 1.0

    def to_dict(self) -> dict:
        data = {"allowed": self.allowed, "confidence": round(self.confidence, 3)}
        if not self.allowed:
            data["reason"] = self.reason
            data["waitTime"] = self.wait_time_ms
        return data


def _ms(seconds: float) -> int:
    return max(0, math.ceil(seconds * 1000))


# ──────────────────────────────────────────────
# Activity Store
# ──────────────────────────────────────────────

class ActivityStore:
    """In-memory, account-partitioned timestamp lists.

    Each ``(account, category)`` pair owns an append-only ordered list.
    All mutations go through one lock.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, list[float]]] = defaultdict(lambda: defaultdict(list))
        self._lock = threading.Lock()

    def append(self, account: str, category: str, ts: float) -> None:
        with self._lock:
            self._data[account][category].append(ts)

    def entries(self, account: str, category: str) -> list[float]:
        with self._lock:
            return list(self._data[account][category])

    def categories(self, account: str) -> list[str]:
        with self._lock:
            return list(self._data[account].keys())

    def prune(self, account: str, cutoff: float) -> None:
        """Drop every entry at or before *cutoff* for *account*."""
        with self._lock:
            for category, stamps in self._data[account].items():
                self._data[account][category] = [t for t in stamps if t > cutoff]

    def clear(self, account: str) -> None:
        with self._lock:
            self._data.pop(account, None)


# ──────────────────────────────────────────────
# Governor
# ──────────────────────────────────────────────

class Governor:
    """Admission control for one account."""

    def __init__(
        self,
        account: str = "default",
        store: ActivityStore | None = None,
        limits: dict[Category, CategoryLimits] | None = None,
        max_actions_per_hour: int = MAX_ACTIONS_PER_HOUR,
        max_session_duration: float = MAX_SESSION_DURATION,
        min_session_break: float = MIN_SESSION_BREAK,
        clock=time.time,
        rng=random,
    ) -> None:
        self.account = account
        self.store = store if store is not None else ActivityStore()
        self.limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self.max_actions_per_hour = max_actions_per_hour
        self.max_session_duration = max_session_duration
        self.min_session_break = min_session_break
        self._clock = clock
        self._rng = rng
        self._lock = threading.RLock()

    # ── helpers ──
    def _entries(self, category: Category) -> list[float]:
        return self.store.entries(self.account, category.value)

    def _all_entries(self) -> list[float]:
        stamps: list[float] = []
        for name in self.store.categories(self.account):
            stamps.extend(self.store.entries(self.account, name))
        return sorted(stamps)

    def _session_start(self, now: float) -> float | None:
        """Start of the current session: the later of the last login and
        the first action after the last break of ``min_session_break``.
        ``None`` when there was no login or a break is in progress long
        enough to count.
        """
        logins = self._entries(Category.LOGIN)
        stamps = self._all_entries()
        if not logins or now - stamps[-1] >= self.min_session_break:
            return None
        start = stamps[0]
        for prev, cur in zip(stamps, stamps[1:]):
            if cur - prev >= self.min_session_break:
                start = cur
        return max(start, logins[-1])

    def _confidence(self, now: float) -> float:
        hour_ago = now - HOUR
        scores = []
        for category, lim in self.limits.items():
            if lim.hourly > 0:
                recent = sum(1 for t in self._entries(category) if t > hour_ago)
                scores.append(1 - recent / lim.hourly)
        if self.max_actions_per_hour > 0:
            recent_total = sum(1 for t in self._all_entries() if t > hour_ago)
            scores.append(1 - recent_total / self.max_actions_per_hour)
        if not scores:
            return 1.0
        return max(0.0, min(1.0, min(scores)))

    # ── public API ──
    def can_perform(self, category: Category | str) -> Decision:
        category = Category(category)
        with self._lock:
            now = self._clock()
            self.store.prune(self.account, now - DAY)
            hour_ago = now - HOUR
            lim = self.limits.get(category)

            if lim is not None:
                stamps = self._entries(category)
                in_hour = [t for t in stamps if t > hour_ago]
                if len(in_hour) >= lim.hourly:
                    return Decision(
                        False,
                        f"Hourly limit reached for {category.value} ({len(in_hour)}/{lim.hourly})",
                        _ms(in_hour[0] + HOUR - now) if in_hour else 0,
                        0.0,
                    )
                if len(stamps) >= lim.daily:
                    return Decision(
                        False,
                        f"Daily limit reached for {category.value} ({len(stamps)}/{lim.daily})",
                        _ms(stamps[0] + DAY - now),
                        0.0,
                    )

                if stamps:
                    interval = lim.min_interval * self._rng.uniform(*lim.jitter)
                    elapsed = now - stamps[-1]
                    if elapsed < interval:
                        return Decision(
                            False,
                            f"Too soon after last {category.value}",
                            _ms(interval - elapsed),
                            self._confidence(now),
                        )

            if category is not Category.LOGIN:
                recent = [t for t in self._all_entries() if t > hour_ago]
                if len(recent) >= self.max_actions_per_hour:
                    return Decision(
                        False,
                        f"Total activity limit reached ({len(recent)}/{self.max_actions_per_hour} per hour)",
                        _ms(recent[0] + HOUR - now),
                        0.0,
                    )
                start = self._session_start(now)
                if start is not None and now - start > self.max_session_duration:
                    last_activity = self._all_entries()[-1]
                    return Decision(
                        False,
                        "Session duration limit exceeded - take a break",
                        _ms(last_activity + self.min_session_break - now),
                        self._confidence(now),
                    )

            return Decision(True, confidence=self._confidence(now))

    def record(self, category: Category | str) -> None:
        category = Category(category)
        with self._lock:
            self.store.append(self.account, category.value, self._clock())
        logger.debug("[%s] recorded %s", self.account, category.value)

    def status(self) -> dict:
        with self._lock:
            now = self._clock()
            self.store.prune(self.account, now - DAY)
            hour_ago = now - HOUR
            snapshot: dict = {}
            for category, lim in self.limits.items():
                stamps = self._entries(category)
                in_hour = [t for t in stamps if t > hour_ago]
                waits = [0.0]
                if in_hour and len(in_hour) >= lim.hourly:
                    waits.append(in_hour[0] + HOUR - now)
                if stamps and len(stamps) >= lim.daily:
                    waits.append(stamps[0] + DAY - now)
                if stamps:
                    waits.append(stamps[-1] + lim.min_interval - now)
                snapshot[category.value] = {
                    "current": len(in_hour),
                    "limit": lim.hourly,
                    "remaining": max(0, lim.hourly - len(in_hour)),
                    "nextAllowedMs": _ms(max(waits)),
                    "daily": {
                        "current": len(stamps),
                        "limit": lim.daily,
                        "remaining": max(0, lim.daily - len(stamps)),
                    },
                }

            recent_total = sum(1 for t in self._all_entries() if t > hour_ago)
            start = self._session_start(now)
            snapshot["totalActivity"] = {
                "current": recent_total,
                "limit": self.max_actions_per_hour,
                "remaining": max(0, self.max_actions_per_hour - recent_total),
            }
            snapshot["confidence"] = round(self._confidence(now), 3)
            snapshot["behaviorPattern"] = behavior_profile().to_dict()
            snapshot["sessionDurationMs"] = _ms(now - start) if start is not None else 0
            snapshot["maxSessionDurationMs"] = _ms(self.max_session_duration)
            return snapshot


class GovernorRegistry:
    """Hands out one ``Governor`` per account, all backed by one store."""

    def __init__(self, store: ActivityStore | None = None, **governor_kwargs) -> None:
        self.store = store if store is not None else ActivityStore()
        self._governor_kwargs = governor_kwargs
        self._governors: dict[str, Governor] = {}
        self._lock = threading.Lock()

    def for_account(self, account: str) -> Governor:
        with self._lock:
            gov = self._governors.get(account)
            if gov is None:
                gov = Governor(account, store=self.store, **self._governor_kwargs)
                self._governors[account] = gov
            return gov
