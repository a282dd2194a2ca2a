# ==============================
# Tests: Conflict Detection + Source Aggregation
# ==============================
from __future__ import annotations

from typing import Any, Dict, List

import pytest

from knowledge_core.contracts.errors import SourceUnavailableError
from knowledge_core.contracts.knowledge_schema import (
    Classification,
    EnhancementKind,
    OverlayFragment,
    SourceKind,
)
from knowledge_core.knowledge.conflicts import ConflictDetector, deep_equal
from knowledge_core.knowledge.sources import DYNAMIC_EPOCH, SourceAggregator, StaticEntitySource, YamlEntitySource
from knowledge_core.logging.metrics import Metrics

TREE = {"event": {"location": "Jakarta Convention Center", "date": "2026-05-01", "capacity": 5000}}


def _frag(path: str, value: Any = None, *, delete: bool = False) -> OverlayFragment:
    return OverlayFragment(path=path, value=value, source=SourceKind.MANUAL, delete=delete)


def test_deep_equal_keeps_bools_distinct_from_numbers() -> None:
    assert deep_equal({"a": [1, 2]}, {"a": [1, 2]})
    assert not deep_equal(True, 1)
    assert not deep_equal({"a": 1}, {"a": 1, "b": 2})


@pytest.mark.parametrize(
    "fragment,expected",
    [
        (_frag("event.theme", "Future of trade"), Classification.NEW),
        (_frag("event.location", "Jakarta Convention Center"), Classification.IDENTICAL),
        (_frag("event.location", "ICE BSD"), Classification.CONFLICTING),
        (_frag("event.date", {"start": "2026-05-01"}), Classification.TYPE_MISMATCH),
        (_frag("event.date.start", "2026-05-01"), Classification.TYPE_MISMATCH),
        (_frag("event.location", delete=True), Classification.CONFLICTING),
        (_frag("event.sponsor", delete=True), Classification.NEW),
    ],
)
def test_diff_classifies_fragments(fragment: OverlayFragment, expected: Classification) -> None:
    assert ConflictDetector().diff(TREE, fragment) == expected


def test_detect_reports_leaf_conflicts_and_enrichments_for_map_writes() -> None:
    report = ConflictDetector().detect(
        TREE, [_frag("event", {"location": "ICE BSD", "date": "2026-05-01", "theme": "Trade"})]
    )
    assert [c.path for c in report.conflicts] == ["event.location"]
    assert report.conflicts[0].existing_value == "Jakarta Convention Center"
    assert report.conflicts[0].new_value == "ICE BSD"
    assert [(e.path, e.kind) for e in report.enhancements] == [("event.theme", EnhancementKind.ENRICHED)]


def test_detect_adds_enhancement_for_substantive_new_values_only() -> None:
    report = ConflictDetector().detect(TREE, [_frag("tickets", {"vip": 100}), _frag("notes", "  ")])
    assert [e.path for e in report.enhancements] == ["tickets"]
    assert report.conflicts == []
    assert report.count(Classification.NEW) == 2


def test_detect_type_mismatch_needs_manual_review() -> None:
    report = ConflictDetector().detect(TREE, [_frag("event.capacity", ["hall a", "hall b"])])
    assert len(report.conflicts) == 1
    conflict = report.conflicts[0]
    assert conflict.classification == Classification.TYPE_MISMATCH
    assert conflict.resolution.value == "manual_review"


def test_root_replace_reports_dropped_sections() -> None:
    tree = {"event": {"location": "Jakarta Convention Center"}, "tickets": {"regular": 150000}}
    root = OverlayFragment(path="", value={"event": {"location": "ICE BSD"}}, source=SourceKind.AI)
    report = ConflictDetector().detect(tree, [root])
    assert [(c.path, c.existing_value, c.new_value) for c in report.conflicts] == [
        ("event.location", "Jakarta Convention Center", "ICE BSD"),
        ("tickets", {"regular": 150000}, None),
    ]

    cleared = ConflictDetector().detect(tree, [_frag("", {})])
    assert sorted(c.path for c in cleared.conflicts) == ["event", "tickets"]


# ------------------------------
# Aggregation
# ------------------------------


class _BrokenSource:
    def fetch(self) -> Dict[str, List[Dict[str, Any]]]:
        raise SourceUnavailableError("entity service down")


def test_aggregator_emits_one_dynamic_fragment_per_collection() -> None:
    source = StaticEntitySource({"speakers": [{"name": "Ada"}], "bad name": [{"x": 1}]})
    report = SourceAggregator(entities=source).collect_report(persisted=[])
    assert [f.path for f in report.fragments] == ["entities.speakers"]
    assert report.fragments[0].source == SourceKind.DYNAMIC
    assert report.fragments[0].timestamp == DYNAMIC_EPOCH
    assert report.degraded is False


def test_aggregator_orders_overlay_after_dynamic_data() -> None:
    overlay = [_frag("entities.speakers", [{"name": "Override"}])]
    fragments = SourceAggregator(entities=StaticEntitySource({"speakers": []})).collect(persisted=overlay)
    assert [f.source for f in fragments] == [SourceKind.DYNAMIC, SourceKind.MANUAL]


def test_aggregator_degrades_to_overlay_when_entities_unavailable() -> None:
    metrics = Metrics()
    overlay = [_frag("event.location", "JCC")]
    report = SourceAggregator(entities=_BrokenSource(), metrics=metrics).collect_report(persisted=overlay)
    assert report.degraded is True
    assert report.error == "entity service down"
    assert [f.path for f in report.fragments] == ["event.location"]
    assert metrics.count("sources.degraded") == 1


def test_yaml_entity_source_reads_collections(tmp_path) -> None:
    path = tmp_path / "entities.yaml"
    path.write_text("speakers:\n  - name: Ada\nsponsors: []\n", encoding="utf-8")
    assert YamlEntitySource(str(path)).fetch() == {"speakers": [{"name": "Ada"}], "sponsors": []}


def test_yaml_entity_source_missing_file_is_unavailable(tmp_path) -> None:
    with pytest.raises(SourceUnavailableError):
        YamlEntitySource(str(tmp_path / "missing.yaml")).fetch()
