# ==============================
# Tests: Knowledge Versioning
# ==============================
from __future__ import annotations

import pytest

from knowledge_core.contracts.errors import VersionNotFoundError
from knowledge_core.knowledge.versioning import compare_versions, diff_versions, restore_version
from knowledge_core.orchestrator.knowledge_base import KnowledgeBase


def test_compare_versions_reports_leaf_changes() -> None:
    old = {"event": {"location": "JCC", "date": "2026-05-01"}, "tickets": {"regular": 1}}
    new = {"event": {"location": "ICE", "date": "2026-05-01", "theme": "Trade"}}
    diff = compare_versions(old, new)
    assert diff.added == ["event.theme"]
    assert diff.removed == ["tickets"]
    assert [(m.path, m.old_value, m.new_value) for m in diff.modified] == [("event.location", "JCC", "ICE")]
    assert diff.to_dict()["modified"][0] == {"path": "event.location", "oldValue": "JCC", "newValue": "ICE"}
    assert compare_versions(new, new).is_empty


def test_diff_versions_against_current(kb: KnowledgeBase) -> None:
    kb.put("event.location", "JCC")
    kb.put("event.location", "ICE")
    kb.put("event.date", "2026-05-01")

    diff = diff_versions(kb, 1)
    assert diff.added == ["event.date"]
    assert diff.modified[0].path == "event.location"

    assert diff_versions(kb, 0, 1).added == ["event"]
    assert diff_versions(kb, 2, 2).is_empty


def test_unknown_version_is_not_found(kb: KnowledgeBase) -> None:
    kb.put("event.location", "JCC")
    with pytest.raises(VersionNotFoundError):
        diff_versions(kb, 7)


def test_restore_is_a_new_version(kb: KnowledgeBase) -> None:
    kb.put("event.location", "JCC")
    kb.put("event.location", "ICE")
    kb.put("tickets.regular", 150000)

    restored = restore_version(kb, 1)
    assert restored.version == 4
    assert kb.snapshot().tree == {"event": {"location": "JCC"}}
    assert diff_versions(kb, 1).is_empty
    assert len(kb.history(limit=100)) == 4
