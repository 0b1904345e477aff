"""
extraction.py – Reads conversations out of the LinkedIn messaging UI.

Every logical field is resolved through the ordered selector cascades in
``config.SELECTOR_CASCADES``.  A cascade that matches nothing is logged and
treated as "field absent"; only unreachable containers (the conversation
list, the message list) are fatal, and only after one retry.

``build_conversation`` holds the pure part (sender normalisation,
counterparty inference, receiver back-fill) so it can be tested without
a browser.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import asdict, dataclass, field

import behavior
from behavior import Speed
from bot_utils import is_browser_fatal, navigate, random_sleep
from config import (
    DELAY_SHORT,
    LINKEDIN_MESSAGING,
    LOCATE_SCAN_LIMIT,
    PLACEHOLDER_NAMES,
    SELECTOR_CASCADES,
    SELECTOR_TIMEOUT_MS,
    SELF_LABEL,
    SelectorStrategy,
)
from errors import SelectorExhausted

logger = logging.getLogger("LinkedInInbox")

UNKNOWN_SENDER = "Unknown"
_SELF_PREFIX = re.compile(r"^" + re.escape(SELF_LABEL) + r"\b\s*")


# ──────────────────────────────────────────────
# Data Types
# ──────────────────────────────────────────────

@dataclass
class ExtractedMessage:
    sender: str
    receiver: str
    message: str
    time: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ExtractedConversation:
    counterparty: str | None
    messages: list[ExtractedMessage] = field(default_factory=list)
    senders: list[str] = field(default_factory=list)


# ──────────────────────────────────────────────
# Pure Normalisation
# ──────────────────────────────────────────────

def _squash(text: str | None) -> str:
    return " ".join((text or "").split())


def is_placeholder(name: str | None) -> bool:
    return _squash(name).lower() in PLACEHOLDER_NAMES


def normalize_sender(raw: str | None) -> str | None:
    """Strip a leading "You" token.  Returns ``None`` when no sender text
    was present and ``SELF_LABEL`` when only the token remains.
    """
    text = _squash(raw)
    if not text:
        return None
    stripped = _SELF_PREFIX.sub("", text).strip()
    return stripped or SELF_LABEL


def title_name(page_title: str | None) -> str | None:
    """Name part of a ``"<name> | LinkedIn"`` style page title."""
    if not page_title or "|" not in page_title:
        return None
    return _squash(page_title.split("|", 1)[0]) or None


def infer_counterparty(
    senders: list[str],
    list_item_name: str | None = None,
    page_title: str | None = None,
    header_name: str | None = None,
) -> str | None:
    """Decide who the conversation is with.

    One distinct non-self sender is the counterparty.  Several are joined
    with ", " in order of first appearance.  With none, fall back to the
    list-item name, then the page title, then the conversation header.
    Placeholder names never count.
    """
    distinct: list[str] = []
    for name in senders:
        if not name or name == SELF_LABEL or is_placeholder(name) or len(name) < 2:
            continue
        if name not in distinct:
            distinct.append(name)
    if distinct:
        return ", ".join(distinct)

    for candidate in (list_item_name, title_name(page_title), header_name):
        candidate = _squash(candidate)
        if candidate and len(candidate) > 1 and not is_placeholder(candidate):
            return candidate
    return None


def build_conversation(
    raw_nodes: list[dict],
    list_item_name: str | None = None,
    page_title: str | None = None,
    header_name: str | None = None,
) -> ExtractedConversation:
    """Turn raw ``{sender, body, time}`` nodes into a conversation.

    Nodes without a body are skipped.  A node without sender text belongs
    to the previous node's message group and takes its sender, and a node
    without a time takes the time of the group it follows.
    """
    messages: list[ExtractedMessage] = []
    previous: str | None = None
    previous_time = ""
    for node in raw_nodes:
        sender = normalize_sender(node.get("sender"))
        if sender is None:
            sender = previous or UNKNOWN_SENDER
        else:
            previous = sender
        time = _squash(node.get("time"))
        if time:
            previous_time = time
        else:
            time = previous_time
        body = (node.get("body") or "").strip()
        if not body:
            continue
        messages.append(ExtractedMessage(sender, "", body, time))

    senders = [m.sender for m in messages]
    counterparty = infer_counterparty(senders, list_item_name, page_title, header_name)
    for msg in messages:
        msg.receiver = (counterparty or UNKNOWN_SENDER) if msg.sender == SELF_LABEL else SELF_LABEL
    return ExtractedConversation(counterparty, messages, senders)


def names_match(candidate: str | None, hint: str | None) -> bool:
    """Case-insensitive containment in either direction."""
    a = _squash(candidate).lower()
    b = _squash(hint).lower()
    return bool(a and b) and (a in b or b in a)


# ──────────────────────────────────────────────
# Selector Cascades
# ──────────────────────────────────────────────

def cascade(field_name: str) -> list[SelectorStrategy]:
    return SELECTOR_CASCADES[field_name]


def resolve(root, field_name: str):
    """Return ``(locator, strategy)`` for the first strategy with a match
    under *root*, or ``None`` when the cascade is exhausted.
    """
    for strategy in cascade(field_name):
        try:
            loc = root.locator(strategy.selector)
            if loc.count() > 0:
                logger.debug("%s resolved by %s", field_name, strategy.label)
                return loc, strategy
        except Exception as exc:
            if is_browser_fatal(exc):
                raise
    logger.info("Selector cascade exhausted for %s", field_name)
    return None


def read_field(root, field_name: str, timeout: int = 1500) -> str | None:
    """First non-empty text (or attribute) value for *field_name*."""
    for strategy in cascade(field_name):
        try:
            loc = root.locator(strategy.selector).first
            if loc.count() == 0:
                continue
            if strategy.attribute:
                value = loc.get_attribute(strategy.attribute, timeout=timeout)
            else:
                value = loc.inner_text(timeout=timeout)
        except Exception as exc:
            if is_browser_fatal(exc):
                raise
            continue
        value = (value or "").strip()
        if value:
            logger.debug("%s read via %s", field_name, strategy.label)
            return value
    logger.debug("No value for %s", field_name)
    return None


def wait_for_field(page, field_name: str, timeout: int = SELECTOR_TIMEOUT_MS) -> SelectorStrategy:
    """Wait until some strategy of *field_name* is visible.

    Raises ``SelectorExhausted`` when every strategy timed out.
    """
    tried = []
    for strategy in cascade(field_name):
        tried.append(strategy.label)
        try:
            page.locator(strategy.selector).first.wait_for(state="visible", timeout=timeout)
            logger.info("Found %s using %s", field_name, strategy.label)
            return strategy
        except Exception as exc:
            if is_browser_fatal(exc):
                raise
            logger.debug("%s: %s not visible (%s)", field_name, strategy.label, exc)
    raise SelectorExhausted(field_name, tried)


def list_items(page):
    """Locator over the rendered conversation-list items (may be empty)."""
    found = resolve(page, "conversation_item")
    if found is None:
        return None
    return found[0]


def list_item_name(item) -> str | None:
    name = read_field(item, "participant_name")
    if name and not is_placeholder(name) and len(name) > 1:
        return _squash(name)
    return None


# ──────────────────────────────────────────────
# Navigation
# ──────────────────────────────────────────────

def open_messaging(page) -> None:
    """Make sure the messaging view with its conversation list is shown."""
    if "/messaging" not in (page.url or ""):
        nav = resolve(page, "messaging_nav")
        clicked = False
        if nav is not None:
            try:
                behavior.click(page, nav[0].first)
                clicked = True
            except Exception as exc:
                if is_browser_fatal(exc):
                    raise
                logger.debug("Messaging icon click failed: %s", exc)
        if not clicked or "/messaging" not in (page.url or ""):
            navigate(page, LINKEDIN_MESSAGING)
        behavior.action_pause()
    wait_for_field(page, "conversation_list")


def locate_conversation(page, hint: str):
    """Find the list item for *hint*.

    Scans only the first ``LOCATE_SCAN_LIMIT`` rendered items, then falls
    back to typing *hint* into the messaging search and taking the first
    result.  Returns ``None`` when nothing matches.
    """
    items = list_items(page)
    count = items.count() if items is not None else 0
    scan = min(LOCATE_SCAN_LIMIT, count)
    logger.info("Checking first %d of %d conversations for '%s'", scan, count, hint)

    for i in range(scan):
        item = items.nth(i)
        if i < 2:
            try:
                box = item.bounding_box(timeout=1500)
                if box:
                    behavior.move_to(
                        page,
                        box["x"] + box["width"] * random.uniform(0.3, 0.7),
                        box["y"] + box["height"] * random.uniform(0.3, 0.7),
                        Speed.SLOW,
                    )
            except Exception as exc:
                if is_browser_fatal(exc):
                    raise
        name = list_item_name(item)
        logger.debug("Checking conversation: %s", name)
        if names_match(name, hint):
            logger.info("Found target conversation: %s", name)
            return item
        if i < 2:
            random_sleep(0.5, 1.0)

    logger.info("'%s' not among recent conversations, trying search …", hint)
    found = resolve(page, "search_input")
    if found is None:
        return None
    behavior.type_text(page, found[0].first, hint, clear=True)
    random_sleep(2.0, 3.0)
    results = list_items(page)
    if results is None or results.count() == 0:
        return None
    return results.first


def open_conversation(page, item) -> SelectorStrategy:
    """Click *item* and wait for its message list (one retry)."""
    for attempt in range(2):
        behavior.click(page, item)
        behavior.action_pause()
        try:
            return wait_for_field(page, "message_list")
        except SelectorExhausted:
            if attempt:
                raise
            logger.warning("Message list not visible, retrying once …")
            random_sleep(*DELAY_SHORT)


# ──────────────────────────────────────────────
# Message Extraction
# ──────────────────────────────────────────────

_COLLECT_JS = """
(c) => {
    let nodes = [];
    let nodeStrategy = null;
    for (const s of c.node) {
        const found = document.querySelectorAll(s.selector);
        if (found.length) { nodes = Array.from(found); nodeStrategy = s.label; break; }
    }
    const pick = (el, list) => {
        for (const s of list) {
            const hit = el.querySelector(s.selector);
            if (!hit) continue;
            const v = s.attribute ? hit.getAttribute(s.attribute) : hit.textContent;
            if (v && v.trim()) return { value: v.trim(), strategy: s.label };
        }
        return null;
    };
    return {
        nodeStrategy,
        nodes: nodes.map(el => ({
            sender: pick(el, c.sender),
            body: pick(el, c.body),
            time: pick(el, c.time),
        })),
    };
}
"""


def _cascade_payload() -> dict:
    def dump(name):
        return [{"selector": s.selector, "attribute": s.attribute, "label": s.label} for s in cascade(name)]

    return {
        "node": dump("message_node"),
        "sender": dump("sender"),
        "body": dump("body"),
        "time": dump("time"),
    }


def collect_raw_nodes(page) -> list[dict]:
    """Read every message node in a single ``evaluate`` round trip."""
    result = page.evaluate(_COLLECT_JS, _cascade_payload()) or {}
    nodes = result.get("nodes") or []
    if not nodes:
        logger.info("Message node cascade exhausted")
        return []

    winners: dict[str, dict[str, int]] = {"sender": {}, "body": {}, "time": {}}
    flat = []
    for node in nodes:
        row = {}
        for key in ("sender", "body", "time"):
            hit = node.get(key)
            row[key] = hit["value"] if hit else None
            if hit:
                winners[key][hit["strategy"]] = winners[key].get(hit["strategy"], 0) + 1
        flat.append(row)
    logger.info("Found %d message nodes using %s", len(flat), result.get("nodeStrategy"))
    for key, counts in winners.items():
        if counts:
            logger.debug("%s strategies: %s", key, counts)
        else:
            logger.info("Selector cascade exhausted for %s", key)
    return flat


def extract_messages(page, list_item_name: str | None = None) -> ExtractedConversation:
    """Scroll for history, read the open conversation and build it.

    When no message nodes are found, scrolls further and retries once.
    """
    found = resolve(page, "message_list")
    anchor = found[0].first if found else None
    behavior.scroll(page, "up", random.uniform(200, 500), Speed.SLOW, anchor=anchor)
    if found:
        behavior.read(page, random.uniform(1.5, 3.5), region_selector=found[1].selector)

    raw = collect_raw_nodes(page)
    if not any((n.get("body") or "").strip() for n in raw):
        logger.info("No messages found, scrolling for more content and retrying …")
        behavior.scroll(page, "up", random.uniform(500, 800), Speed.SLOW, anchor=anchor)
        random_sleep(3.0, 5.0)
        raw = collect_raw_nodes(page)

    title = page.title()
    header = read_field(page, "header_name")
    conversation = build_conversation(raw, list_item_name, title, header)
    logger.info(
        "Contact: %s (%d messages)", conversation.counterparty or UNKNOWN_SENDER, len(conversation.messages)
    )
    return conversation
