"""
behavior.py – Human behavior synthesis for the LinkedIn Inbox Bot.

Two layers:

* Planners (pure): turn an intent such as "move to (x, y)" or "type this
  text" into a timed sequence of low-level steps.  They take an optional
  ``rng`` so tests can seed them.
* Performers: replay a plan against a page.  Every click, keystroke,
  scroll, and reading pause issued by the bot goes through a performer.
"""

from __future__ import annotations

import logging
import math
import random
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from bot_utils import is_browser_fatal

logger = logging.getLogger("LinkedInInbox")


class Speed(str, Enum):
    SLOW = "slow"
    NORMAL = "normal"
    FAST = "fast"


# ──────────────────────────────────────────────
# Time-of-Day Behavior Profiles
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class BehaviorProfile:
    """Ranges (seconds) that pace the synthesizer for the current hour."""
    name: str
    reading_time: tuple[float, float]
    typing_delay: tuple[float, float]       # per keystroke
    action_pause: tuple[float, float]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "readingTime": {"min": self.reading_time[0], "max": self.reading_time[1]},
            "typingSpeed": {"min": self.typing_delay[0], "max": self.typing_delay[1]},
            "pauseBetweenActions": {"min": self.action_pause[0], "max": self.action_pause[1]},
        }


BUSINESS_HOURS = BehaviorProfile("business", (3.0, 8.0), (0.08, 0.15), (1.5, 4.0))
EVENING = BehaviorProfile("evening", (4.0, 10.0), (0.10, 0.20), (2.0, 5.0))
NIGHT = BehaviorProfile("night", (5.0, 12.0), (0.12, 0.25), (3.0, 8.0))


def behavior_profile(hour: int | None = None) -> BehaviorProfile:
    """Pick the profile for *hour* (local time when omitted)."""
    if hour is None:
        hour = datetime.now().hour
    if 9 <= hour <= 17:
        return BUSINESS_HOURS
    if 18 <= hour <= 22:
        return EVENING
    return NIGHT


# ──────────────────────────────────────────────
# Pointer Paths
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class PathStep:
    x: float
    y: float
    delay: float


_STEP_RANGES = {
    Speed.SLOW: (18, 35),
    Speed.NORMAL: (12, 25),
    Speed.FAST: (10, 16),
}

_STEP_DELAYS = {
    Speed.SLOW: (0.030, 0.050),
    Speed.NORMAL: (0.020, 0.035),
    Speed.FAST: (0.010, 0.020),
}

HESITATION_CHANCE = 0.10


def _bezier_point(t: float, points: list[tuple[float, float]]) -> tuple[float, float]:
    """Evaluate a quadratic (3 points) or cubic (4 points) Bézier at *t*."""
    u = 1 - t
    if len(points) == 3:
        p0, p1, p2 = points
        x = u**2 * p0[0] + 2 * u * t * p1[0] + t**2 * p2[0]
        y = u**2 * p0[1] + 2 * u * t * p1[1] + t**2 * p2[1]
        return (x, y)
    p0, p1, p2, p3 = points
    x = u**3 * p0[0] + 3 * u**2 * t * p1[0] + 3 * u * t**2 * p2[0] + t**3 * p3[0]
    y = u**3 * p0[1] + 3 * u**2 * t * p1[1] + 3 * u * t**2 * p2[1] + t**3 * p3[1]
    return (x, y)


def pointer_path(
    start: tuple[float, float],
    target: tuple[float, float],
    speed: Speed = Speed.NORMAL,
    rng=random,
) -> list[PathStep]:
    """Plan a curved pointer trajectory from *start* to *target*.

    The curve is a quadratic or cubic Bézier with control points scattered
    around the straight line.  Per-step delays follow a sine envelope
    (slow-fast-slow) and a few steps carry an extra hesitation pause.
    The last step always lands exactly on *target*.
    """
    speed = Speed(speed)
    lo, hi = _STEP_RANGES[speed]
    steps = rng.randint(lo, hi)

    dx = target[0] - start[0]
    dy = target[1] - start[1]
    spread = max(30.0, math.hypot(dx, dy) * 0.3)

    controls = []
    for frac in sorted(rng.uniform(0.15, 0.85) for _ in range(rng.choice((1, 2)))):
        controls.append((
            start[0] + dx * frac + rng.uniform(-spread, spread) * 0.3,
            start[1] + dy * frac + rng.uniform(-spread, spread) * 0.3,
        ))
    points = [start, *controls, target]

    d_lo, d_hi = _STEP_DELAYS[speed]
    path: list[PathStep] = []
    for i in range(1, steps + 1):
        t = i / steps
        x, y = _bezier_point(t, points)
        if i < steps:
            x += rng.uniform(-1.5, 1.5)
            y += rng.uniform(-1.5, 1.5)
        # slow at both ends, fast in the middle
        envelope = 1.0 - 0.5 * math.sin(t * math.pi)
        delay = rng.uniform(d_lo, d_hi) * envelope
        if rng.random() < HESITATION_CHANCE:
            delay += rng.uniform(0.05, 0.20)
        path.append(PathStep(x, y, delay))

    path[-1] = PathStep(float(target[0]), float(target[1]), path[-1].delay)
    return path


# ──────────────────────────────────────────────
# Scrolling
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class ScrollStep:
    delta: float
    pause: float


_SCROLL_STEP_RANGES = {
    Speed.SLOW: (6, 14),
    Speed.NORMAL: (3, 9),
    Speed.FAST: (3, 6),
}

OVERSCROLL_CHANCE = 0.3


def scroll_plan(
    direction: str,
    distance: float,
    speed: Speed = Speed.NORMAL,
    rng=random,
) -> list[ScrollStep]:
    """Split a scroll of *distance* pixels into unequal wheel steps.

    Each step deviates ±20% from an even share, some overshoot by 10-30%,
    and the pauses between steps are randomized.  Negative deltas scroll up.
    """
    if direction not in ("up", "down"):
        raise ValueError(f"direction must be 'up' or 'down', got {direction!r}")
    speed = Speed(speed)
    lo, hi = _SCROLL_STEP_RANGES[speed]
    steps = rng.randint(lo, hi)
    sign = 1 if direction == "down" else -1
    share = distance / steps

    plan = []
    for _ in range(steps):
        amount = share * (1 + rng.uniform(-0.2, 0.2))
        if rng.random() < OVERSCROLL_CHANCE:
            amount *= 1.1 + rng.uniform(0.0, 0.2)
        pause = rng.uniform(0.10, 0.30)
        if rng.random() < 0.2:
            pause += rng.uniform(0.2, 0.7)
        plan.append(ScrollStep(sign * amount, pause))
    return plan


# ──────────────────────────────────────────────
# Typing
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class Keystroke:
    key: str            # a single character, or "Backspace"
    delay: float        # pause *after* the key


COMMON_LETTERS = set("etaoinshrdlu")
TYPO_CHANCE = 0.05

_KEYBOARD_ROWS = ("qwertyuiop", "asdfghjkl", "zxcvbnm")


def _neighbour_key(char: str, rng=random) -> str:
    """Return a key physically adjacent to *char* on a QWERTY row."""
    lower = char.lower()
    for row in _KEYBOARD_ROWS:
        idx = row.find(lower)
        if idx == -1:
            continue
        options = [row[j] for j in (idx - 1, idx + 1) if 0 <= j < len(row)]
        pick = rng.choice(options)
        return pick.upper() if char.isupper() else pick
    return chr(ord(char) + rng.choice((-1, 1)))


def typing_plan(
    text: str,
    profile: BehaviorProfile | None = None,
    rng=random,
) -> list[Keystroke]:
    """Plan keystrokes for *text*.

    Common letters are typed faster, word boundaries and punctuation get a
    longer pause, and roughly one character in twenty is preceded by a
    neighbouring wrong key that is immediately erased.
    """
    profile = profile or behavior_profile()
    lo, hi = profile.typing_delay
    plan: list[Keystroke] = []
    for char in text:
        if char.isalpha() and rng.random() < TYPO_CHANCE:
            plan.append(Keystroke(_neighbour_key(char, rng), rng.uniform(0.2, 0.5)))
            plan.append(Keystroke("Backspace", rng.uniform(0.1, 0.3)))

        delay = rng.uniform(lo, hi)
        if char.lower() in COMMON_LETTERS:
            delay *= 0.75
        if char in (" ", "\n", "\t"):
            delay += rng.uniform(0.15, 0.40)
        elif char in ".,!?;:":
            delay += rng.uniform(0.12, 0.35)
        plan.append(Keystroke(char, delay))
    return plan


# ──────────────────────────────────────────────
# Reading
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class ReadingStep:
    x: float
    y: float
    pause: float


LINE_HEIGHT = 25
SACCADES_PER_LINE = 5
BACKTRACK_CHANCE = 0.15
THINKING_CHANCE = 0.10
_MAX_READING_STEPS = 2000


def reading_plan(
    region: dict,
    duration: float,
    profile: BehaviorProfile | None = None,
    rng=random,
) -> list[ReadingStep]:
    """Plan saccadic line-by-line scanning of *region* for *duration* seconds.

    *region* is a bounding box ``{"x", "y", "width", "height"}``.  The plan
    wraps to the top when it runs out of lines, occasionally jumps back a
    line or two, and now and then inserts a long "thinking" pause.
    """
    profile = profile or behavior_profile()
    left = region["x"]
    top = region["y"]
    width = max(region["width"], 50)
    total_lines = max(1, int(region["height"] // LINE_HEIGHT))

    plan: list[ReadingStep] = []
    elapsed = 0.0
    line = 0
    while elapsed < duration and len(plan) < _MAX_READING_STEPS:
        y = top + line * LINE_HEIGHT + rng.uniform(0, 10)
        start_x = left + rng.uniform(0, 20)
        end_x = left + width * rng.uniform(0.7, 0.9)
        for i in range(SACCADES_PER_LINE):
            x = start_x + (end_x - start_x) * (i / (SACCADES_PER_LINE - 1))
            pause = rng.uniform(0.15, 0.35)
            plan.append(ReadingStep(x, y + rng.uniform(-1.5, 1.5), pause))
            elapsed += pause

        line = (line + 1) % total_lines
        if rng.random() < BACKTRACK_CHANCE:
            line = max(0, line - 1 - rng.randint(0, 1))
        if rng.random() < THINKING_CHANCE:
            think = rng.uniform(*profile.action_pause) * 0.5
            last = plan[-1]
            plan[-1] = ReadingStep(last.x, last.y, last.pause + think)
            elapsed += think
    return plan


# ──────────────────────────────────────────────
# Performers
# ──────────────────────────────────────────────

def _current_pointer(page) -> tuple[float, float]:
    """Pointer position as tracked by the fingerprint init script."""
    try:
        pos = page.evaluate(
            "() => ({ x: (window.__mPos && window.__mPos.x) || 0, y: (window.__mPos && window.__mPos.y) || 0 })"
        )
        return (float(pos.get("x", 0)), float(pos.get("y", 0)))
    except Exception as exc:
        if is_browser_fatal(exc):
            raise
        vp = page.viewport_size or {"width": 1280, "height": 800}
        return (random.uniform(100, vp["width"] - 100), random.uniform(100, vp["height"] - 100))


def move_to(page, x: float, y: float, speed: Speed = Speed.NORMAL) -> None:
    """Move the pointer to (*x*, *y*) along a planned curve."""
    for step in pointer_path(_current_pointer(page), (x, y), speed):
        page.mouse.move(step.x, step.y)
        time.sleep(step.delay)


def click(page, locator, speed: Speed = Speed.NORMAL, timeout: int = 5000) -> None:
    """Curve the pointer onto a random point inside *locator* and click it."""
    locator.wait_for(state="visible", timeout=timeout)
    box = locator.bounding_box(timeout=timeout)
    if not box:
        logger.debug("click: no bounding box, scrolling element into view")
        locator.scroll_into_view_if_needed(timeout=timeout)
        box = locator.bounding_box(timeout=timeout)
    if not box:
        locator.click(timeout=timeout)
        return

    target_x = box["x"] + random.uniform(box["width"] * 0.2, box["width"] * 0.8)
    target_y = box["y"] + random.uniform(box["height"] * 0.25, box["height"] * 0.75)
    move_to(page, target_x, target_y, speed)
    time.sleep(random.uniform(0.05, 0.2))
    page.mouse.click(target_x, target_y)


def scroll(page, direction: str, distance: float, speed: Speed = Speed.NORMAL, anchor=None) -> None:
    """Scroll with the mouse wheel, hovering *anchor* first when given
    (wheel events go to the element under the pointer).
    """
    if anchor is not None:
        try:
            box = anchor.bounding_box(timeout=2000)
            if box:
                move_to(
                    page,
                    box["x"] + box["width"] * random.uniform(0.3, 0.7),
                    box["y"] + box["height"] * random.uniform(0.3, 0.7),
                    Speed.FAST,
                )
        except Exception as exc:
            if is_browser_fatal(exc):
                raise
            logger.debug("scroll: could not hover anchor: %s", exc)
    for step in scroll_plan(direction, distance, speed):
        page.mouse.wheel(0, step.delta)
        time.sleep(step.pause)


def type_text(
    page,
    locator,
    text: str,
    profile: BehaviorProfile | None = None,
    clear: bool = False,
) -> None:
    """Focus *locator* with a human click, then replay a typing plan.
    With *clear*, existing content is selected and erased first.
    """
    click(page, locator)
    time.sleep(random.uniform(0.3, 0.7))
    if clear:
        page.keyboard.press("Control+A")
        time.sleep(random.uniform(0.1, 0.3))
        page.keyboard.press("Backspace")
        time.sleep(random.uniform(0.2, 0.5))
    for stroke in typing_plan(text, profile):
        if stroke.key == "Backspace":
            page.keyboard.press("Backspace")
        else:
            page.keyboard.type(stroke.key)
        time.sleep(stroke.delay)
    time.sleep(random.uniform(0.3, 0.8))


def read(page, duration: float | None = None, region_selector: str = "main") -> None:
    """Simulate reading the content area for *duration* seconds
    (drawn from the current profile when omitted).
    """
    profile = behavior_profile()
    if duration is None:
        duration = random.uniform(*profile.reading_time)

    region = None
    try:
        region = page.locator(region_selector).first.bounding_box(timeout=1500)
    except Exception as exc:
        if is_browser_fatal(exc):
            raise
    if not region:
        vp = page.viewport_size or {"width": 1280, "height": 800}
        region = {"x": 50, "y": 100, "width": vp["width"] - 100, "height": vp["height"] - 200}
    else:
        region = {
            "x": region["x"] + 50,
            "y": region["y"] + 100,
            "width": min(region["width"] - 100, 800),
            "height": min(region["height"] - 200, 600),
        }

    for step in reading_plan(region, duration, profile):
        page.mouse.move(step.x, step.y, steps=3)
        time.sleep(step.pause)


def action_pause(multiplier: float = 1.0) -> float:
    """Sleep for an inter-action pause from the current profile."""
    lo, hi = behavior_profile().action_pause
    delay = random.uniform(lo, hi) * multiplier
    time.sleep(delay)
    return delay


def wander(page) -> None:
    """Drift the pointer to a random spot in the central viewport."""
    vp = page.viewport_size or {"width": 1280, "height": 800}
    move_to(
        page,
        vp["width"] * random.uniform(0.2, 0.8),
        vp["height"] * random.uniform(0.2, 0.8),
        Speed.SLOW,
    )
