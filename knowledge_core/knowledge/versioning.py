# ==============================
# Knowledge Versioning
# ==============================
"""
Version history helpers over the applied-fragment log.

- compare_versions(old, new): leaf-level diff with dotted paths.
- tree_at_version(entries, version): overlay tree as it was after `version`
  (replay of every fragment applied at or before it).
- restore_version(kb, version): new apply that puts an old overlay back
  (history is never rewritten; the restore is itself a version).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from knowledge_core.contracts.errors import VersionNotFoundError
from knowledge_core.contracts.knowledge_schema import CompiledKnowledge, SourceKind
from knowledge_core.knowledge.conflicts import deep_equal
from knowledge_core.knowledge.merger import replay
from knowledge_core.memory.base import HistoryEntry
from knowledge_core.orchestrator.knowledge_base import KnowledgeBase


@dataclass
class Modification:
    path: str
    old_value: Any
    new_value: Any


@dataclass
class VersionDiff:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    modified: List[Modification] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": list(self.added),
            "removed": list(self.removed),
            "modified": [{"path": m.path, "oldValue": m.old_value, "newValue": m.new_value} for m in self.modified],
        }


def _join(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


def _compare(old: Dict[str, Any], new: Dict[str, Any], prefix: str, diff: VersionDiff) -> None:
    for key, new_value in new.items():
        path = _join(prefix, str(key))
        if key not in old:
            diff.added.append(path)
            continue
        old_value = old[key]
        if deep_equal(old_value, new_value):
            continue
        if isinstance(old_value, dict) and isinstance(new_value, dict):
            _compare(old_value, new_value, path, diff)
        else:
            diff.modified.append(Modification(path=path, old_value=old_value, new_value=new_value))
    for key in old:
        if key not in new:
            diff.removed.append(_join(prefix, str(key)))


def compare_versions(old: Dict[str, Any], new: Dict[str, Any]) -> VersionDiff:
    diff = VersionDiff()
    _compare(old or {}, new or {}, "", diff)
    return diff


def tree_at_version(entries: Sequence[HistoryEntry], version: int) -> Dict[str, Any]:
    if version == 0:
        return {}
    known = {e.version for e in entries}
    if version not in known:
        raise VersionNotFoundError(f"Version {version} not found.", details={"version": version})
    return replay([e.fragment for e in entries if e.version <= version])


def _all_history(kb: KnowledgeBase) -> List[HistoryEntry]:
    snapshot = kb.snapshot()
    # one page is enough: history holds one entry per applied fragment
    return kb.history(limit=max(1, len(snapshot.applied_fragments)), offset=0)


def diff_versions(kb: KnowledgeBase, old_version: int, new_version: Optional[int] = None) -> VersionDiff:
    entries = _all_history(kb)
    new_tree = kb.snapshot().tree if new_version is None else tree_at_version(entries, new_version)
    return compare_versions(tree_at_version(entries, old_version), new_tree)


def restore_version(kb: KnowledgeBase, version: int, *, source: SourceKind = SourceKind.MANUAL) -> CompiledKnowledge:
    tree = tree_at_version(_all_history(kb), version)
    return kb.replace_overlay(tree, source=source)
