# ==============================
# Tests: Paths + Tree Merger
# ==============================
from __future__ import annotations

import copy
import json
from datetime import datetime, timedelta, timezone

import pytest

from knowledge_core.contracts.errors import MalformedPathError
from knowledge_core.contracts.knowledge_schema import OverlayFragment, SourceKind
from knowledge_core.knowledge.merger import DELETE, merge_at, replay, type_conflicts
from knowledge_core.knowledge.paths import MISSING, get_at, invalid_keys, is_valid, parse, parse_target, render, walk


@pytest.mark.parametrize("text", ["", "event..date", ".event", "event.", "event.date time", "événement"])
def test_parse_rejects_malformed_paths(text: str) -> None:
    with pytest.raises(MalformedPathError):
        parse(text)


def test_parse_and_render_roundtrip() -> None:
    path = parse("tickets.early-bird.price_idr")
    assert path.segments == ("tickets", "early-bird", "price_idr")
    assert render(path) == "tickets.early-bird.price_idr"
    assert parse_target("").is_root
    assert is_valid("event.location")
    assert not is_valid("event/location")


def test_get_at_returns_missing_sentinel() -> None:
    tree = {"event": {"location": "JCC"}}
    assert get_at(tree, parse("event.location")) == "JCC"
    assert get_at(tree, parse("event.date")) is MISSING
    assert get_at(tree, parse("event.location.city")) is MISSING


def test_merge_at_creates_intermediate_maps_without_mutating_input() -> None:
    tree = {"event": {"name": "Messe"}}
    out = merge_at(tree, "event.venue.city", "Jakarta")
    assert out == {"event": {"name": "Messe", "venue": {"city": "Jakarta"}}}
    assert tree == {"event": {"name": "Messe"}}


def test_merge_at_deep_merges_maps_and_replaces_lists() -> None:
    tree = {"event": {"name": "Messe", "tags": ["a", "b"]}}
    out = merge_at(tree, "event", {"tags": ["c"], "year": 2026})
    assert out == {"event": {"name": "Messe", "tags": ["c"], "year": 2026}}


def test_merge_at_delete_removes_subtree_and_ignores_missing() -> None:
    tree = {"event": {"name": "Messe", "venue": {"city": "Jakarta"}}}
    assert merge_at(tree, "event.venue", DELETE) == {"event": {"name": "Messe"}}
    assert merge_at(tree, "event.name.first", DELETE) == tree
    assert merge_at(tree, "", DELETE) == {}


def test_merge_at_root_requires_object() -> None:
    with pytest.raises(MalformedPathError):
        merge_at({}, "", "scalar")


def test_type_conflicts_reports_kind_changes() -> None:
    tree = {"event": {"date": "2026-05-01"}}
    found = type_conflicts(tree, "event.date", {"start": "2026-05-01"})
    assert [(c.path, c.existing_kind, c.new_kind) for c in found] == [("event.date", "scalar", "map")]

    coerced = type_conflicts(tree, "event.date.start", "2026-05-01")
    assert coerced[0].coerced is True
    assert coerced[0].path == "event.date"


def test_replay_orders_by_timestamp_then_source_precedence() -> None:
    base = OverlayFragment(path="event.location", value="Hall A", source=SourceKind.AI)
    same_time = base.timestamp
    manual = OverlayFragment(path="event.location", value="Hall B", source=SourceKind.MANUAL, timestamp=same_time)
    csv = OverlayFragment(path="event.location", value="Hall C", source=SourceKind.CSV, timestamp=same_time)

    # ai outranks manual outranks csv when timestamps tie
    assert replay([base, manual, csv]) == {"event": {"location": "Hall A"}}
    assert replay([csv, manual]) == {"event": {"location": "Hall B"}}


def test_replay_is_deterministic_for_any_input_order() -> None:
    t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
    a = OverlayFragment(path="event.name", value="Messe", source=SourceKind.MANUAL, timestamp=t0)
    b = OverlayFragment(path="event", value={"year": 2026}, source=SourceKind.CSV, timestamp=t0 + timedelta(seconds=1))
    c = OverlayFragment(path="event.name", source=SourceKind.MANUAL, delete=True, timestamp=t0 + timedelta(seconds=2))
    assert replay([a, b, c]) == replay([c, b, a]) == {"event": {"year": 2026}}


def test_invalid_keys_lists_unaddressable_locations() -> None:
    tree = {"event": {"bad key": 1, "ok": {"also.bad": 2}}}
    assert sorted(invalid_keys(tree)) == ["event.bad key", "event.ok.also.bad"]


# ------------------------------
# Merge laws
# ------------------------------

LAW_TREES = [
    {"event": {"location": "JCC", "date": "2026-05-01"}, "tickets": {"regular": 150000}},
    {"tickets": {"vip": [1, 2], "early": {"price": 90000, "until": "2026-03-01"}}},
    {"contact": {"email": "ops@messe.example"}, "flags": {"sold_out": False}},
]


@pytest.mark.parametrize(
    "tree,path,value",
    [
        (LAW_TREES[0], "event.location", "ICE BSD"),
        (LAW_TREES[0], "event.theme", {"title": "Trade"}),
        (LAW_TREES[0], "notes", "fresh section"),
        (LAW_TREES[1], "tickets.vip", {"seats": 40}),
        (LAW_TREES[1], "tickets.early.price", [1, 2, 3]),
        (LAW_TREES[1], "tickets.early.until", "2026-04-01"),
        (LAW_TREES[2], "contact.phone", "+62 21 000"),
        (LAW_TREES[2], "flags", {"sold_out": True}),
    ],
)
def test_merge_then_delete_restores_parent(tree, path: str, value) -> None:
    kp = parse(path)
    parent = kp.parent()
    expected = copy.deepcopy(tree)
    holder = expected if parent.is_root else get_at(expected, parent)
    holder.pop(kp.segments[-1], None)

    out = merge_at(merge_at(tree, path, value), path, DELETE)
    assert out == expected


@pytest.mark.parametrize("tree", LAW_TREES)
def test_identical_merge_leaves_tree_unchanged(tree) -> None:
    before = copy.deepcopy(tree)
    targets = [""] + [render(p) for p, _ in walk(tree)]
    for target in targets:
        current = get_at(tree, parse_target(target)) if target else tree
        out = merge_at(tree, target, copy.deepcopy(current))
        assert json.dumps(out) == json.dumps(before), target
    assert tree == before
