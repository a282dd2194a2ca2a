# ==============================
# Knowledge Paths
# ==============================
"""
Dot-notation addressing for nodes in the knowledge tree.

    financials.revenue.total  ->  KnowledgePath(("financials", "revenue", "total"))

Rules:
- A path has at least one segment; segments match [A-Za-z0-9_-]+.
- The empty string is only meaningful as the ROOT target (whole-tree replace)
  and is accepted by parse_target(), never by parse().
- Pure helpers: no persistence, no logging.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterator, Tuple

from knowledge_core.contracts.errors import MalformedPathError

SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]+$")
SEPARATOR = "."


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


@dataclass(frozen=True)
class KnowledgePath:
    segments: Tuple[str, ...] = ()

    @property
    def is_root(self) -> bool:
        return len(self.segments) == 0

    @property
    def key(self) -> str:
        if self.is_root:
            raise MalformedPathError("Root path has no terminal key.")
        return self.segments[-1]

    def parent(self) -> "KnowledgePath":
        if self.is_root:
            return self
        return KnowledgePath(self.segments[:-1])

    def child(self, key: str) -> "KnowledgePath":
        _check_segment(key, text=render(self) + SEPARATOR + key)
        return KnowledgePath(self.segments + (key,))

    def startswith(self, other: "KnowledgePath") -> bool:
        return self.segments[: len(other.segments)] == other.segments

    def __str__(self) -> str:
        return render(self)


ROOT = KnowledgePath(())


def _check_segment(segment: str, *, text: str) -> None:
    if not segment:
        raise MalformedPathError(f"Empty segment in path '{text}'.", details={"path": text})
    if not SEGMENT_RE.match(segment):
        raise MalformedPathError(
            f"Invalid segment '{segment}' in path '{text}'.",
            details={"path": text, "segment": segment},
        )


def parse(text: str) -> KnowledgePath:
    if not isinstance(text, str):
        raise MalformedPathError("Path must be a string.", details={"path": repr(text)})
    if text == "":
        raise MalformedPathError("Path must have at least one segment.", details={"path": text})
    segments = text.split(SEPARATOR)
    for seg in segments:
        _check_segment(seg, text=text)
    return KnowledgePath(tuple(segments))


def parse_target(text: str) -> KnowledgePath:
    """Like parse(), but "" addresses the whole tree."""
    if text == "":
        return ROOT
    return parse(text)


def render(path: KnowledgePath) -> str:
    return SEPARATOR.join(path.segments)


def is_valid(text: str) -> bool:
    try:
        parse(text)
    except MalformedPathError:
        return False
    return True


def get_at(tree: Any, path: KnowledgePath) -> Any:
    """Return the node at path, or MISSING."""
    cur = tree
    for seg in path.segments:
        if not isinstance(cur, dict) or seg not in cur:
            return MISSING
        cur = cur[seg]
    return cur


def walk(tree: Any, prefix: KnowledgePath = ROOT) -> Iterator[Tuple[KnowledgePath, Any]]:
    """
    Depth-first (path, node) pairs in document insertion order.
    Keys that are not valid segments are skipped.
    """
    if not isinstance(tree, dict):
        return
    for key, value in tree.items():
        if not isinstance(key, str) or not SEGMENT_RE.match(key):
            continue
        path = KnowledgePath(prefix.segments + (key,))
        yield path, value
        if isinstance(value, dict):
            yield from walk(value, path)


def invalid_keys(tree: Any, prefix: KnowledgePath = ROOT) -> Iterator[str]:
    """
    Yield dotted locations of dict keys that cannot be addressed by a path.
    List items are opaque records and are not inspected.
    """
    if not isinstance(tree, dict):
        return
    for key, value in tree.items():
        if not isinstance(key, str) or not SEGMENT_RE.match(key):
            yield SEPARATOR.join(prefix.segments + (str(key),))
            continue
        yield from invalid_keys(value, KnowledgePath(prefix.segments + (key,)))
