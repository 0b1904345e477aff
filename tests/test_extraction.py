"""
Tests for conversation extraction: sender normalisation, counterparty
inference, the selector cascades and the locate/open/read steps.
"""

from unittest.mock import MagicMock

import pytest

import extraction as extraction_module
from config import LOCATE_SCAN_LIMIT, SELECTOR_CASCADES
from errors import SelectorExhausted
from extraction import (
    build_conversation,
    collect_raw_nodes,
    extract_messages,
    infer_counterparty,
    locate_conversation,
    names_match,
    normalize_sender,
    open_conversation,
    read_field,
    resolve,
    title_name,
    wait_for_field,
)


def _root_matching(selector_counts):
    """Mock page/element whose ``locator(sel).count()`` comes from a dict."""
    root = MagicMock()

    def locator(selector):
        loc = MagicMock()
        loc.count.return_value = selector_counts.get(selector, 0)
        loc.first.count.return_value = selector_counts.get(selector, 0)
        return loc

    root.locator.side_effect = locator
    return root


class TestNormalizeSender:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("You", "You"),
            ("  Jane   Doe ", "Jane Doe"),
            ("You Jane Doe", "Jane Doe"),
            ("Youssef Amrani", "Youssef Amrani"),
            ("", None),
            (None, None),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_sender(raw) == expected


class TestInferCounterparty:
    def test_single_other_sender(self):
        assert infer_counterparty(["You", "Jane Doe", "You", "Jane Doe"]) == "Jane Doe"

    def test_group_conversation_joins_names_in_order(self):
        assert infer_counterparty(["Jane Doe", "You", "Bob Ray", "Jane Doe"]) == "Jane Doe, Bob Ray"

    def test_falls_back_to_list_item_name(self):
        assert infer_counterparty(["You"], list_item_name="Alice Smith") == "Alice Smith"

    def test_placeholder_list_name_falls_through_to_title(self):
        assert infer_counterparty(
            ["You"], list_item_name="Messaging", page_title="Carol King | LinkedIn"
        ) == "Carol King"

    def test_falls_back_to_header(self):
        assert infer_counterparty([], "LinkedIn", "(3) Messaging", header_name="Dan Brown") == "Dan Brown"

    def test_nothing_usable(self):
        assert infer_counterparty(["You", "Unknown"], "Unknown", "LinkedIn", "") is None


class TestBuildConversation:
    def test_sender_inheritance_and_receivers(self):
        nodes = [
            {"sender": "Jane Doe", "body": "Hi there", "time": "10:00 AM"},
            {"sender": None, "body": "Are you around?", "time": None},
            {"sender": "You", "body": "Yes!", "time": "10:05 AM"},
            {"sender": "You", "body": "   ", "time": None},
        ]
        conv = build_conversation(nodes)

        assert conv.counterparty == "Jane Doe"
        assert [(m.sender, m.receiver, m.message) for m in conv.messages] == [
            ("Jane Doe", "You", "Hi there"),
            ("Jane Doe", "You", "Are you around?"),
            ("You", "Jane Doe", "Yes!"),
        ]
        assert conv.messages[0].time == "10:00 AM"
        assert conv.messages[1].time == "10:00 AM"

    def test_follow_ups_take_group_time(self):
        nodes = [
            {"sender": "Jane Doe", "body": "first", "time": "2026-03-01T12:05:00Z"},
            {"sender": None, "body": "second", "time": ""},
            {"sender": None, "body": "third"},
            {"sender": "You", "body": "reply", "time": "2026-03-01T12:09:00Z"},
            {"sender": None, "body": "and more"},
        ]
        conv = build_conversation(nodes)

        assert [m.time for m in conv.messages] == [
            "2026-03-01T12:05:00Z", "2026-03-01T12:05:00Z", "2026-03-01T12:05:00Z",
            "2026-03-01T12:09:00Z", "2026-03-01T12:09:00Z",
        ]

    def test_leading_node_without_sender_is_unknown(self):
        conv = build_conversation(
            [{"sender": None, "body": "orphan line"}, {"sender": "You", "body": "reply"}],
            list_item_name="Alice Smith",
        )
        assert conv.messages[0].sender == "Unknown"
        assert conv.counterparty == "Alice Smith"
        assert conv.messages[1].receiver == "Alice Smith"

    def test_only_self_messages_without_hints(self):
        conv = build_conversation([{"sender": "You", "body": "ping"}])
        assert conv.counterparty is None
        assert conv.messages[0].receiver == "Unknown"

    def test_to_dict(self):
        conv = build_conversation([{"sender": "Jane Doe", "body": "Hi", "time": "t"}])
        assert conv.messages[0].to_dict() == {"sender": "Jane Doe", "receiver": "You", "message": "Hi", "time": "t"}


class TestHelpers:
    def test_title_name(self):
        assert title_name("Jane Doe | LinkedIn") == "Jane Doe"
        assert title_name("Messaging") is None
        assert title_name(None) is None

    @pytest.mark.parametrize(
        "candidate, hint, expected",
        [
            ("Jane Doe", "jane", True),
            ("Jane", "Jane Doe", True),
            ("Jane Doe", "Bob", False),
            (None, "Jane", False),
            ("Jane", "", False),
        ],
    )
    def test_names_match(self, candidate, hint, expected):
        assert names_match(candidate, hint) is expected


class TestSelectorCascades:
    def test_resolve_returns_first_matching_strategy(self):
        cascade = SELECTOR_CASCADES["message_input"]
        root = _root_matching({cascade[1].selector: 1, cascade[2].selector: 1})

        locator, strategy = resolve(root, "message_input")
        assert strategy == cascade[1]
        assert locator.count() == 1

    def test_resolve_exhausted(self):
        assert resolve(_root_matching({}), "send_button") is None

    def test_resolve_propagates_dead_browser(self):
        root = MagicMock()
        root.locator.side_effect = Exception("Target page, context or browser has been closed")
        with pytest.raises(Exception, match="has been closed"):
            resolve(root, "send_button")

    def test_read_field_skips_empty_values(self):
        cascade = SELECTOR_CASCADES["participant_name"]
        root = _root_matching({cascade[0].selector: 1, cascade[1].selector: 1})
        texts = {cascade[0].selector: "   ", cascade[1].selector: "Jane Doe"}

        original = root.locator.side_effect

        def locator(selector):
            loc = original(selector)
            loc.first.inner_text.return_value = texts.get(selector, "")
            return loc

        root.locator.side_effect = locator
        assert read_field(root, "participant_name") == "Jane Doe"

    def test_read_field_uses_attribute(self):
        cascade = SELECTOR_CASCADES["profile_link"]
        root = _root_matching({cascade[0].selector: 1})

        original = root.locator.side_effect

        def locator(selector):
            loc = original(selector)
            loc.first.get_attribute.return_value = "/in/jane-doe/"
            return loc

        root.locator.side_effect = locator
        assert read_field(root, "profile_link") == "/in/jane-doe/"

    def test_wait_for_field_exhausted(self, mock_page):
        mock_page.locator.return_value.first.wait_for.side_effect = Exception("Timeout 5000ms exceeded")

        with pytest.raises(SelectorExhausted) as exc_info:
            wait_for_field(mock_page, "message_list", timeout=10)

        assert exc_info.value.field == "message_list"
        assert len(exc_info.value.tried) == len(SELECTOR_CASCADES["message_list"])
        assert exc_info.value.http_status == 502

    def test_wait_for_field_found(self, mock_page):
        strategy = wait_for_field(mock_page, "message_list", timeout=10)
        assert strategy == SELECTOR_CASCADES["message_list"][0]


class TestCollectRawNodes:
    def test_flattens_evaluate_payload(self, mock_page):
        mock_page.evaluate.return_value = {
            "nodeStrategy": "list-event@v1",
            "nodes": [
                {
                    "sender": {"value": "Jane Doe", "strategy": "group-name@v1"},
                    "body": {"value": "Hello", "strategy": "event-body@v1"},
                    "time": {"value": "2026-03-01T12:00:00Z", "strategy": "time-datetime@v1"},
                },
                {"sender": None, "body": {"value": "Second", "strategy": "event-body@v1"}, "time": None},
            ],
        }

        nodes = collect_raw_nodes(mock_page)

        assert nodes == [
            {"sender": "Jane Doe", "body": "Hello", "time": "2026-03-01T12:00:00Z"},
            {"sender": None, "body": "Second", "time": None},
        ]
        mock_page.evaluate.assert_called_once()
        payload = mock_page.evaluate.call_args[0][1]
        assert [s["selector"] for s in payload["node"]] == [s.selector for s in SELECTOR_CASCADES["message_node"]]

    def test_no_nodes(self, mock_page):
        mock_page.evaluate.return_value = {"nodeStrategy": None, "nodes": []}
        assert collect_raw_nodes(mock_page) == []


@pytest.fixture
def quiet_behavior(monkeypatch):
    """Replace the behavior layer and sleeps inside ``extraction``."""
    fake = MagicMock()
    monkeypatch.setattr(extraction_module, "behavior", fake)
    monkeypatch.setattr(extraction_module, "random_sleep", MagicMock())
    return fake


def _items(*names):
    """Conversation-list locator whose ``nth(i)`` items carry *names*."""
    rows = []
    for name in names:
        row = MagicMock(name=f"item:{name}")
        row.bounding_box.return_value = {"x": 10, "y": 100, "width": 300, "height": 60}
        row.display_name = name
        rows.append(row)
    items = MagicMock()
    items.count.return_value = len(rows)
    items.nth.side_effect = lambda i: rows[i]
    items.first = rows[0] if rows else None
    return items, rows


class TestLocateConversation:
    @pytest.fixture(autouse=True)
    def names(self, monkeypatch):
        reader = MagicMock(side_effect=lambda item: item.display_name)
        monkeypatch.setattr(extraction_module, "list_item_name", reader)
        return reader

    def test_match_is_case_insensitive_containment(self, monkeypatch, quiet_behavior):
        items, rows = _items("Alice Smith", "Jane Doe (Acme Corp)", "Bob Ray")
        monkeypatch.setattr(extraction_module, "list_items", MagicMock(return_value=items))

        assert locate_conversation(_root_matching({}), "jane doe") is rows[1]
        assert locate_conversation(_root_matching({}), "Bob Ray, Recruiter") is rows[2]

    def test_only_first_items_are_scanned(self, monkeypatch, quiet_behavior, names):
        items, _ = _items("Alice Smith", "Bob Ray", "Carol King", "Jane Doe", "Zed")
        monkeypatch.setattr(extraction_module, "list_items", MagicMock(return_value=items))

        assert locate_conversation(_root_matching({}), "Jane Doe") is None

        assert names.call_count == LOCATE_SCAN_LIMIT
        assert [c.args[0] for c in items.nth.call_args_list] == list(range(LOCATE_SCAN_LIMIT))
        # hover over the first two items only
        assert quiet_behavior.move_to.call_count == 2

    def test_falls_back_to_search(self, monkeypatch, quiet_behavior):
        recent, _ = _items("Alice Smith")
        results, found = _items("Jane Doe", "Jane Doering")
        monkeypatch.setattr(extraction_module, "list_items", MagicMock(side_effect=[recent, results]))
        search = SELECTOR_CASCADES["search_input"][0].selector
        page = _root_matching({search: 1})

        assert locate_conversation(page, "Jane Doe") is found[0]

        page_arg, _, text = quiet_behavior.type_text.call_args.args
        assert page_arg is page
        assert text == "Jane Doe"
        assert quiet_behavior.type_text.call_args.kwargs == {"clear": True}

    def test_search_without_results(self, monkeypatch, quiet_behavior):
        recent, _ = _items("Alice Smith")
        empty, _ = _items()
        monkeypatch.setattr(extraction_module, "list_items", MagicMock(side_effect=[recent, empty]))
        search = SELECTOR_CASCADES["search_input"][0].selector

        assert locate_conversation(_root_matching({search: 1}), "Jane Doe") is None


class TestOpenConversation:
    def test_retries_once(self, monkeypatch, quiet_behavior):
        strategy = SELECTOR_CASCADES["message_list"][0]
        waiter = MagicMock(side_effect=[SelectorExhausted("message_list", ["a"]), strategy])
        monkeypatch.setattr(extraction_module, "wait_for_field", waiter)
        item = MagicMock()

        assert open_conversation(MagicMock(), item) == strategy
        assert quiet_behavior.click.call_count == 2
        assert waiter.call_count == 2

    def test_second_failure_raises(self, monkeypatch, quiet_behavior):
        waiter = MagicMock(side_effect=SelectorExhausted("message_list", ["a", "b"]))
        monkeypatch.setattr(extraction_module, "wait_for_field", waiter)

        with pytest.raises(SelectorExhausted):
            open_conversation(MagicMock(), MagicMock())
        assert quiet_behavior.click.call_count == 2
        assert waiter.call_count == 2


class TestExtractMessages:
    def test_scrolls_and_retries_when_empty(self, monkeypatch, quiet_behavior):
        collect = MagicMock(side_effect=[
            [],
            [{"sender": "Jane Doe", "body": "Hi there", "time": "2026-03-01T12:00:00Z"}],
        ])
        monkeypatch.setattr(extraction_module, "collect_raw_nodes", collect)
        page = _root_matching({})
        page.title.return_value = "Messaging | LinkedIn"

        conv = extract_messages(page, "Jane Doe")

        assert collect.call_count == 2
        assert quiet_behavior.scroll.call_count == 2
        assert conv.counterparty == "Jane Doe"
        assert [m.message for m in conv.messages] == ["Hi there"]

    def test_no_retry_when_messages_found(self, monkeypatch, quiet_behavior):
        collect = MagicMock(return_value=[{"sender": "You", "body": "ping", "time": ""}])
        monkeypatch.setattr(extraction_module, "collect_raw_nodes", collect)
        message_list = SELECTOR_CASCADES["message_list"][0].selector
        page = _root_matching({message_list: 1})
        page.title.return_value = "Jane Doe | LinkedIn"

        conv = extract_messages(page)

        assert collect.call_count == 1
        assert quiet_behavior.scroll.call_count == 1
        quiet_behavior.read.assert_called_once()
        assert conv.counterparty == "Jane Doe"
