# ==============================
# Knowledge Retriever
# ==============================
"""
Lexical retrieval over the compiled knowledge tree.

v1 choices:
- Candidates: one per top-level section and one per leaf (scalar or list).
- Score: mean of Jaccard overlap and coverage of the question tokens, over the
  candidate's path tokens plus content tokens.
- Question words that ask for a kind of fact (where/when/how much/who) add
  the field names that usually hold it.
- Provenance: every candidate carries the source kind of the latest fragment
  that touched its path, used by the query engine as source authority. Paths
  the overlay does not hold stay with the dynamic layer.

No model calls here. Pure functions over one snapshot.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set

from knowledge_core.contracts.knowledge_schema import OverlayFragment, SourceKind
from knowledge_core.knowledge.merger import ordered
from knowledge_core.knowledge.paths import MISSING, ROOT, KnowledgePath, get_at, render, walk
from knowledge_core.utils.payloads import coerce_str, shorten

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "at", "be", "can", "do", "does", "for", "i", "in", "is", "it",
        "me", "of", "on", "or", "please", "tell", "the", "there", "this", "to", "was", "what",
        "which", "will", "with", "you", "about",
    }
)

QUESTION_HINTS: Dict[str, Sequence[str]] = {
    "where": ("location", "venue", "address", "city"),
    "when": ("date", "dates", "time", "schedule", "start", "end"),
    "who": ("name", "speakers", "artists", "contact"),
    "price": ("price", "cost", "pricing", "tickets"),
    "much": ("price", "cost", "pricing"),
    "cost": ("price", "cost", "pricing"),
    "contact": ("email", "phone", "contact"),
}

MAX_CONTENT_CHARS = 500


def tokenize(text: str) -> List[str]:
    text = _CAMEL_RE.sub(" ", text)
    return [t for t in _TOKEN_RE.findall(text.lower()) if t not in STOPWORDS]


def question_tokens(question: str) -> Set[str]:
    tokens = set(tokenize(question))
    for word in list(tokens):
        tokens.update(QUESTION_HINTS.get(word, ()))
    return tokens


def _jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    union = len(a | b)
    return float(len(a & b)) / float(union) if union else 0.0


def score_tokens(query: Set[str], candidate: Set[str]) -> float:
    if not query or not candidate:
        return 0.0
    coverage = len(query & candidate) / len(query)
    return 0.5 * _jaccard(query, candidate) + 0.5 * coverage


@dataclass(frozen=True)
class Candidate:
    path: str
    section: str
    content: str
    tokens: frozenset
    source: SourceKind
    score: float = 0.0
    is_section: bool = False


class Provenance:
    """
    Latest writer per path, following the aggregator's total order.

    When the overlay tree is given, overlay fragments only answer for paths the
    overlay actually holds; anything else (entity records joined live) belongs
    to the dynamic layer even after a root clear or replace.
    """

    def __init__(self, fragments: Sequence[OverlayFragment], overlay: Optional[Dict[str, Any]] = None) -> None:
        writes = [f for f in ordered(fragments) if not f.delete]
        self._dynamic = [f for f in writes if f.source == SourceKind.DYNAMIC]
        self._overlay = [f for f in writes if f.source != SourceKind.DYNAMIC]
        self._tree = overlay

    @staticmethod
    def _latest(fragments: Sequence[OverlayFragment], path: KnowledgePath) -> Optional[SourceKind]:
        found: Optional[SourceKind] = None
        for f in fragments:
            fpath = f.knowledge_path
            if path.startswith(fpath) or fpath.startswith(path):
                found = f.source
        return found

    def source_for(self, path: KnowledgePath) -> SourceKind:
        if self._tree is None or get_at(self._tree, path) is not MISSING:
            found = self._latest(self._overlay, path)
            if found is not None:
                return found
        return self._latest(self._dynamic, path) or SourceKind.MANUAL


class KnowledgeRetriever:
    def __init__(self, *, max_content_chars: int = MAX_CONTENT_CHARS) -> None:
        self.max_content_chars = max_content_chars

    def candidates(self, tree: Dict[str, Any], provenance: Provenance) -> List[Candidate]:
        out: List[Candidate] = []
        for path, value in walk(tree, ROOT):
            is_section = len(path.segments) == 1
            is_leaf = not isinstance(value, dict)
            if not (is_section or is_leaf):
                continue
            content = shorten(coerce_str(value), max_len=self.max_content_chars)
            tokens = frozenset(tokenize(" ".join(path.segments)) + tokenize(coerce_str(value)))
            out.append(
                Candidate(
                    path=render(path),
                    section=path.segments[0],
                    content=content,
                    tokens=tokens,
                    source=provenance.source_for(path),
                    is_section=is_section,
                )
            )
        return out

    def retrieve(
        self,
        question: str,
        tree: Dict[str, Any],
        *,
        provenance: Provenance,
        max_sources: int = 5,
    ) -> List[Candidate]:
        q_tokens = question_tokens(question)
        scored: List[Candidate] = []
        for c in self.candidates(tree, provenance):
            score = score_tokens(q_tokens, set(c.tokens))
            if score <= 0.0:
                continue
            scored.append(
                Candidate(
                    path=c.path,
                    section=c.section,
                    content=c.content,
                    tokens=c.tokens,
                    source=c.source,
                    score=score,
                    is_section=c.is_section,
                )
            )
        # ties: leaves before sections, then path order
        scored.sort(key=lambda c: (-c.score, c.is_section, c.path))
        return scored[: max(1, int(max_sources))]
