# ==============================
# Tree Merger
# ==============================
"""
Deep-merge values into the nested knowledge tree at a dot path.

Policy (deterministic):
- DELETE at the terminal segment removes that key (subtree removal).
- dict into dict: recursive merge, incoming keys win per key.
- lists and scalars are replaced, never concatenated.
- dict vs non-dict at the terminal segment: replaced entirely (last write wins).
- intermediate non-dict nodes are coerced into dicts, dropping the old value.

Kind mismatches are not errors here. Callers that need to block or confirm
them run type_conflicts() first (ConflictDetector does this).

All functions are pure: the input tree is never mutated.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Union

from knowledge_core.contracts.errors import MalformedPathError
from knowledge_core.contracts.knowledge_schema import OverlayFragment
from knowledge_core.knowledge.paths import MISSING, KnowledgePath, parse_target, render


class _Delete:
    def __repr__(self) -> str:
        return "DELETE"


DELETE: Any = _Delete()

PathLike = Union[KnowledgePath, str]


@dataclass(frozen=True)
class TypeConflict:
    path: str
    existing_kind: str
    new_kind: str
    coerced: bool = False  # True when an intermediate scalar/list becomes a map


def node_kind(value: Any) -> str:
    if isinstance(value, dict):
        return "map"
    if isinstance(value, list):
        return "list"
    return "scalar"


def _as_path(path: PathLike) -> KnowledgePath:
    if isinstance(path, KnowledgePath):
        return path
    return parse_target(path)


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep-merge dictionaries: overlay wins.
    """
    out: Dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def merge_at(tree: Dict[str, Any], path: PathLike, value: Any) -> Dict[str, Any]:
    target = _as_path(path)
    out: Dict[str, Any] = copy.deepcopy(tree) if isinstance(tree, dict) else {}

    if target.is_root:
        if value is DELETE:
            return {}
        if not isinstance(value, dict):
            raise MalformedPathError("The root target only accepts an object value.", details={"path": ""})
        return copy.deepcopy(value)

    cur = out
    for seg in target.segments[:-1]:
        nxt = cur.get(seg)
        if not isinstance(nxt, dict):
            if value is DELETE:
                # nothing below a non-map node to delete
                return out
            nxt = {}
            cur[seg] = nxt
        cur = nxt

    key = target.key
    if value is DELETE:
        cur.pop(key, None)
        return out

    existing = cur.get(key, MISSING)
    if isinstance(existing, dict) and isinstance(value, dict):
        cur[key] = deep_merge(existing, value)
    else:
        cur[key] = copy.deepcopy(value)
    return out


def type_conflicts(tree: Dict[str, Any], path: PathLike, value: Any) -> List[TypeConflict]:
    """
    Report kind changes merge_at(tree, path, value) would perform.
    """
    target = _as_path(path)
    if value is DELETE or target.is_root:
        return []

    found: List[TypeConflict] = []
    cur: Any = tree
    walked: List[str] = []
    for seg in target.segments[:-1]:
        walked.append(seg)
        if not isinstance(cur, dict):
            return found
        nxt = cur.get(seg, MISSING)
        if nxt is MISSING:
            return found
        if not isinstance(nxt, dict):
            found.append(
                TypeConflict(path=".".join(walked), existing_kind=node_kind(nxt), new_kind="map", coerced=True)
            )
            return found
        cur = nxt

    existing = cur.get(target.key, MISSING) if isinstance(cur, dict) else MISSING
    if existing is not MISSING and node_kind(existing) != node_kind(value):
        found.append(TypeConflict(path=render(target), existing_kind=node_kind(existing), new_kind=node_kind(value)))
    return found


def fragment_value(fragment: OverlayFragment) -> Any:
    return DELETE if fragment.delete else fragment.value


def apply_fragment(tree: Dict[str, Any], fragment: OverlayFragment) -> Dict[str, Any]:
    return merge_at(tree, fragment.knowledge_path, fragment_value(fragment))


def ordered(fragments: Iterable[OverlayFragment]) -> List[OverlayFragment]:
    """Total order: timestamp, then source precedence, then insertion sequence."""
    indexed = list(enumerate(fragments))
    indexed.sort(key=lambda pair: (pair[1].sort_key(), pair[0]))
    return [f for _, f in indexed]


def replay(fragments: Iterable[OverlayFragment], *, base: Dict[str, Any] | None = None) -> Dict[str, Any]:
    tree: Dict[str, Any] = copy.deepcopy(base) if base else {}
    for fragment in ordered(fragments):
        tree = apply_fragment(tree, fragment)
    return tree
