# ==============================
# Conflict Detection
# ==============================
"""
Classify incoming fragments against the current compiled tree.

    diff(tree, fragment) -> new | identical | conflicting | type_mismatch

detect() turns classifications into the report a compilation pass starts from:
- ConflictRecord for each conflicting / type-mismatched path. For map-into-map
  writes the record points at the precise leaves that differ; purely additive
  map writes produce enhancements instead.
- EnhancementRecord for each new path that adds non-trivial detail
  (non-empty string, object or array where nothing existed).

Pure module: no model calls, no persistence.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

from knowledge_core.contracts.knowledge_schema import (
    Classification,
    ConflictRecord,
    ConflictResolution,
    EnhancementKind,
    EnhancementRecord,
    OverlayFragment,
)
from knowledge_core.knowledge.merger import TypeConflict, node_kind, type_conflicts
from knowledge_core.knowledge.paths import MISSING, get_at, parse_target


def deep_equal(a: Any, b: Any) -> bool:
    """Structural equality that keeps bools distinct from numbers."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(deep_equal(x, y) for x, y in zip(a, b))
    if node_kind(a) != node_kind(b):
        return False
    return a == b


def is_substantive(value: Any) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (dict, list)):
        return len(value) > 0
    return False


def _short(value: Any, limit: int = 120) -> str:
    raw = json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
    return raw if len(raw) <= limit else raw[:limit] + "..."


def _join(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


@dataclass
class DetectionReport:
    classifications: Dict[str, Classification] = field(default_factory=dict)
    conflicts: List[ConflictRecord] = field(default_factory=list)
    enhancements: List[EnhancementRecord] = field(default_factory=list)
    type_conflicts: List[TypeConflict] = field(default_factory=list)

    def count(self, classification: Classification) -> int:
        return sum(1 for c in self.classifications.values() if c == classification)


class ConflictDetector:
    def diff(self, existing_tree: Dict[str, Any], fragment: OverlayFragment) -> Classification:
        path = fragment.knowledge_path
        existing = existing_tree if path.is_root else get_at(existing_tree, path)

        if fragment.delete:
            return Classification.NEW if existing is MISSING else Classification.CONFLICTING

        if existing is MISSING:
            if type_conflicts(existing_tree, path, fragment.value):
                return Classification.TYPE_MISMATCH
            return Classification.NEW
        if deep_equal(existing, fragment.value):
            return Classification.IDENTICAL
        if node_kind(existing) != node_kind(fragment.value):
            return Classification.TYPE_MISMATCH
        return Classification.CONFLICTING

    def detect(self, existing_tree: Dict[str, Any], fragments: Iterable[OverlayFragment]) -> DetectionReport:
        report = DetectionReport()
        for fragment in fragments:
            classification = self.diff(existing_tree, fragment)
            report.classifications[fragment.fragment_id] = classification
            path = fragment.knowledge_path
            existing = existing_tree if path.is_root else get_at(existing_tree, path)

            if classification == Classification.NEW:
                if not fragment.delete and is_substantive(fragment.value):
                    report.enhancements.append(
                        EnhancementRecord(
                            path=fragment.path,
                            kind=EnhancementKind.ADDED,
                            description=f"Adds {node_kind(fragment.value)} from {fragment.source.value} source.",
                        )
                    )
            elif classification == Classification.TYPE_MISMATCH:
                found = type_conflicts(existing_tree, path, fragment.value)
                report.type_conflicts.extend(found)
                for tc in found:
                    where = get_at(existing_tree, parse_target(tc.path))
                    report.conflicts.append(
                        ConflictRecord(
                            path=tc.path,
                            existing_value=None if where is MISSING else where,
                            new_value=fragment.value,
                            classification=Classification.TYPE_MISMATCH,
                            resolution=ConflictResolution.MANUAL_REVIEW,
                            reasoning=(
                                f"Existing {tc.existing_kind} would be replaced by a {tc.new_kind}"
                                + (" to make room for nested keys." if tc.coerced else ".")
                            ),
                        )
                    )
            elif classification == Classification.CONFLICTING:
                if fragment.delete:
                    report.conflicts.append(
                        ConflictRecord(
                            path=fragment.path,
                            existing_value=existing,
                            new_value=None,
                            classification=Classification.CONFLICTING,
                            reasoning=f"Fragment from {fragment.source.value} source removes existing {node_kind(existing)}.",
                        )
                    )
                elif isinstance(existing, dict) and isinstance(fragment.value, dict):
                    leaf_conflicts, added = _compare_maps(existing, fragment.value, fragment.path)
                    report.conflicts.extend(leaf_conflicts)
                    if path.is_root:
                        # a root write replaces the tree; sections it omits are dropped
                        report.conflicts.extend(_dropped_sections(existing, fragment))
                    for added_path, added_value in added:
                        if is_substantive(added_value) or not isinstance(added_value, (dict, list, str)):
                            report.enhancements.append(
                                EnhancementRecord(
                                    path=added_path,
                                    kind=EnhancementKind.ENRICHED,
                                    description=f"Adds {node_kind(added_value)} under existing section.",
                                )
                            )
                else:
                    report.conflicts.append(
                        ConflictRecord(
                            path=fragment.path,
                            existing_value=existing,
                            new_value=fragment.value,
                            classification=Classification.CONFLICTING,
                            reasoning=(
                                f"Existing value {_short(existing)} differs from "
                                f"{fragment.source.value} value {_short(fragment.value)}."
                            ),
                        )
                    )
        return report


def _dropped_sections(existing: Dict[str, Any], fragment: OverlayFragment) -> List[ConflictRecord]:
    return [
        ConflictRecord(
            path=str(key),
            existing_value=value,
            new_value=None,
            classification=Classification.CONFLICTING,
            reasoning=f"Root write from {fragment.source.value} source drops existing {node_kind(value)}.",
        )
        for key, value in existing.items()
        if key not in fragment.value
    ]


def _compare_maps(
    existing: Dict[str, Any], incoming: Dict[str, Any], prefix: str
) -> Tuple[List[ConflictRecord], List[Tuple[str, Any]]]:
    conflicts: List[ConflictRecord] = []
    added: List[Tuple[str, Any]] = []
    for key, new_value in incoming.items():
        path = _join(prefix, str(key))
        if key not in existing:
            added.append((path, new_value))
            continue
        old_value = existing[key]
        if deep_equal(old_value, new_value):
            continue
        if isinstance(old_value, dict) and isinstance(new_value, dict):
            sub_conflicts, sub_added = _compare_maps(old_value, new_value, path)
            conflicts.extend(sub_conflicts)
            added.extend(sub_added)
            continue
        kind_changed = node_kind(old_value) != node_kind(new_value)
        conflicts.append(
            ConflictRecord(
                path=path,
                existing_value=old_value,
                new_value=new_value,
                classification=Classification.TYPE_MISMATCH if kind_changed else Classification.CONFLICTING,
                reasoning=(
                    f"Existing {node_kind(old_value)} would be replaced by a {node_kind(new_value)}."
                    if kind_changed
                    else f"Existing value {_short(old_value)} differs from incoming value {_short(new_value)}."
                ),
            )
        )
    return conflicts, added
