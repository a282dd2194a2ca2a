# ==============================
# Knowledge Query Engine
# ==============================
"""
Answer natural-language questions against one snapshot of the live tree.

Flow:
1) KnowledgeRetriever picks at most max_sources candidates (score > 0).
2) The collaborator answers from that subset only, as JSON
   {answer, claims:[{text, sources:[path]}], reasoning, followUp}.
   Plain text replies are used as the answer with zero claims.
3) Confidence = 0.2 + 0.6 * backed_fraction + 0.2 * authority.

Rules:
- Only paths in the selected subset are ever cited, and only when a claim or
  the answer text backs them. An unbacked answer cites nothing and takes the
  subset's mean authority.
- Reply fields of the wrong shape are ignored.
- Nothing selected: no collaborator call, confidence 0.1.
- Collaborator failure: apology answer, no sources, confidence 0.0.
- ask() never raises for "nothing found".
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from knowledge_core.config.schema import Settings
from knowledge_core.contracts.errors import CollaboratorError, CollaboratorTimeoutError
from knowledge_core.contracts.knowledge_schema import QueryResult, SourceCitation, SourceKind
from knowledge_core.knowledge.paths import MISSING, get_at, is_valid, parse
from knowledge_core.logging.metrics import Metrics
from knowledge_core.models.router import ModelRouter
from knowledge_core.orchestrator.knowledge_base import KnowledgeBase
from knowledge_core.query.retriever import Candidate, KnowledgeRetriever, Provenance, tokenize
from knowledge_core.utils.payloads import coerce_str, extract_json_object, stable_json

logger = logging.getLogger("knowledge.query")

MAX_SOURCES_LIMIT = 20
MAX_FOLLOW_UPS = 3

EMPTY_ANSWER = (
    "I'm sorry, I couldn't find information about that in the event knowledge base. "
    "Please try rephrasing your question or ask about the event, tickets, speakers or sponsors."
)
FAILURE_ANSWER = "I'm sorry, I can't answer right now. Please try again in a moment."

AUTHORITY: Dict[SourceKind, float] = {
    SourceKind.DYNAMIC: 1.0,
    SourceKind.AI: 0.7,
    SourceKind.MANUAL: 0.6,
    SourceKind.CSV: 0.5,
}

# Citation labels for well-known top-level sections: (document, section)
SECTION_DOCUMENTS: Dict[str, Tuple[str, str]] = {
    "event": ("Paguyuban Messe 2026 Brochure", "Event Overview"),
    "financials": ("Financial Report 2026", "Financial Analysis"),
    "sponsorship": ("Sponsorship Kit 2026", "Sponsorship Opportunities"),
    "speakers": ("Speaker Profiles", "Keynote Speakers"),
    "artists": ("Artist Lineup", "Entertainment"),
    "documents": ("Document Library", "Technical Documentation"),
    "entities": ("Live Records", "Speakers, Artists & Sponsors"),
}

QUERY_SYSTEM = (
    "You answer questions about the event using ONLY the provided knowledge entries. "
    "Cite entry paths for every claim. Reply with JSON."
)


def confidence_score(backed_fraction: float, authority: float) -> float:
    value = 0.2 + 0.6 * max(0.0, min(1.0, backed_fraction)) + 0.2 * max(0.0, min(1.0, authority))
    return round(min(1.0, value), 4)


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _humanize(path: str) -> str:
    return " ".join(" ".join(tokenize(seg)) or seg for seg in path.split("."))


class KnowledgeQueryEngine:
    def __init__(
        self,
        *,
        kb: KnowledgeBase,
        model: ModelRouter,
        retriever: Optional[KnowledgeRetriever] = None,
        metrics: Optional[Metrics] = None,
        default_max_sources: int = 5,
        prompt_max_chars: int = 60000,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.kb = kb
        self.model = model
        self.retriever = retriever or KnowledgeRetriever()
        self.metrics = metrics or kb.metrics
        self.default_max_sources = default_max_sources
        self.prompt_max_chars = prompt_max_chars
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings, *, kb: KnowledgeBase, model: ModelRouter) -> "KnowledgeQueryEngine":
        return cls(
            kb=kb,
            model=model,
            default_max_sources=settings.knowledge.max_sources,
            prompt_max_chars=settings.knowledge.prompt_max_chars,
            timeout_seconds=settings.models.openai.timeout_seconds,
        )

    def capabilities(self) -> Dict[str, Any]:
        return {
            "queryTypes": ["event_details", "financial", "sponsorship", "speakers", "artists", "documents", "general"],
            "maxSources": MAX_SOURCES_LIMIT,
            "maxQueryLength": 1000,
            "features": [
                "source_citations",
                "confidence_scoring",
                "follow_up_suggestions",
                "live_entity_data",
            ],
            "confidence": {"base": 0.2, "backed_weight": 0.6, "authority_weight": 0.2},
            "authority": {k.value: v for k, v in AUTHORITY.items()},
        }

    # ------------------------------
    # Prompt
    # ------------------------------

    def build_prompt(self, question: str, subset: Sequence[Candidate], *, context: Optional[str] = None) -> str:
        entries: List[Dict[str, str]] = []
        used = 0
        for c in subset:
            entry = {"path": c.path, "content": c.content}
            size = len(stable_json(entry))
            if entries and used + size > self.prompt_max_chars:
                break
            entries.append(entry)
            used += size
        lines = [
            f'QUESTION: "{question}"',
        ]
        if context:
            lines.append(f"CONTEXT: {context}")
        lines += [
            "",
            "KNOWLEDGE ENTRIES:",
            stable_json(entries),
            "",
            "RESPONSE FORMAT (JSON):",
            stable_json(
                {
                    "answer": "direct answer",
                    "claims": [{"text": "one factual statement", "sources": ["entry.path"]}],
                    "reasoning": "how the entries support the answer",
                    "followUp": ["related question"],
                }
            ),
        ]
        return "\n".join(lines)

    # ------------------------------
    # Ask
    # ------------------------------

    def ask(
        self,
        question: str,
        *,
        max_sources: Optional[int] = None,
        include_sources: bool = True,
        context: Optional[str] = None,
    ) -> QueryResult:
        self.metrics.inc("queries.total")
        limit = max(1, min(MAX_SOURCES_LIMIT, int(max_sources or self.default_max_sources)))

        snapshot = self.kb.snapshot()
        tree, report = self.kb.live_report(snapshot)
        provenance = Provenance(report.fragments, overlay=snapshot.tree)
        subset = self.retriever.retrieve(question, tree, provenance=provenance, max_sources=limit)

        if not subset:
            self.metrics.inc("queries.empty")
            logger.info("query matched no knowledge", extra={"version": snapshot.version})
            return QueryResult(
                answer=EMPTY_ANSWER,
                confidence=0.1,
                reasoning="No knowledge entry matched the question.",
            )

        prompt = self.build_prompt(question, subset, context=context)
        try:
            text = self.model.complete_text(
                prompt, purpose="query", system=QUERY_SYSTEM, timeout_seconds=self.timeout_seconds
            )
        except (CollaboratorTimeoutError, CollaboratorError) as exc:
            self.metrics.inc("queries.failed")
            logger.warning("query collaborator failed: %s", exc.message, extra={"version": snapshot.version})
            return QueryResult(answer=FAILURE_ANSWER, confidence=0.0, reasoning=f"Answer unavailable ({exc.code}).")

        return self._assemble(text, subset, tree, include_sources=include_sources)

    def _assemble(
        self, text: str, subset: Sequence[Candidate], tree: Dict[str, Any], *, include_sources: bool
    ) -> QueryResult:
        by_path = {c.path: c for c in subset}
        payload = extract_json_object(text)

        if payload is not None and isinstance(payload.get("answer"), str):
            answer = payload["answer"].strip() or text.strip()
            reasoning = coerce_str(payload.get("reasoning"))
            claims = _as_list(payload.get("claims"))
            model_follow_ups = [coerce_str(q) for q in _as_list(payload.get("followUp")) if coerce_str(q)]
        else:
            answer, reasoning, claims, model_follow_ups = text.strip(), "", [], []

        cited: List[str] = []
        backed = 0
        valid_claims = 0
        for claim in claims:
            if not isinstance(claim, dict):
                continue
            valid_claims += 1
            paths = [p for p in _as_list(claim.get("sources")) if isinstance(p, str) and p in by_path]
            if paths:
                backed += 1
            for p in paths:
                if p not in cited:
                    cited.append(p)

        if valid_claims:
            backed_fraction = backed / valid_claims
        else:
            answer_tokens = set(tokenize(answer))
            supported = [c.path for c in subset if self._supports(c, answer_tokens)]
            backed_fraction = len(supported) / len(subset)
            cited = supported

        # nothing backs the answer: no citations, authority of what was offered
        weighed = cited or [c.path for c in subset]
        authority = sum(AUTHORITY[by_path[p].source] for p in weighed) / len(weighed)
        confidence = confidence_score(backed_fraction, authority)

        top_score = subset[0].score or 1.0
        citations = [self._citation(by_path[p], top_score) for p in cited]

        follow_ups = self._follow_ups(cited, tree)
        for q in model_follow_ups:
            if len(follow_ups) >= MAX_FOLLOW_UPS:
                break
            if q not in follow_ups:
                follow_ups.append(q)

        return QueryResult(
            answer=answer,
            sources=citations if include_sources else [],
            confidence=confidence,
            reasoning=reasoning or f"Answered from {len(subset)} knowledge entr{'y' if len(subset) == 1 else 'ies'}.",
            suggested_follow_up=follow_ups,
        )

    @staticmethod
    def _supports(candidate: Candidate, answer_tokens: Set[str]) -> bool:
        content_tokens = set(tokenize(candidate.content))
        if not content_tokens:
            return False
        need = max(1, (len(content_tokens) + 1) // 2)
        return len(content_tokens & answer_tokens) >= need

    @staticmethod
    def _citation(candidate: Candidate, top_score: float) -> SourceCitation:
        document, section = SECTION_DOCUMENTS.get(
            candidate.section, ("Event Knowledge Base", _humanize(candidate.section).title())
        )
        relevance = 0.5 + 0.5 * min(1.0, candidate.score / top_score)
        return SourceCitation(
            document=document,
            section=section,
            content=candidate.content,
            relevance=round(relevance, 4),
            path=candidate.path,
        )

    @staticmethod
    def _follow_ups(cited: Sequence[str], tree: Dict[str, Any]) -> List[str]:
        questions: List[str] = []
        used = set(cited)
        for path in cited:
            kp = parse(path)
            parent = kp.parent()
            siblings = tree if parent.is_root else get_at(tree, parent)
            if siblings is MISSING or not isinstance(siblings, dict):
                continue
            for key in siblings:
                sibling = ".".join(parent.segments + (key,)) if not parent.is_root else key
                if sibling in used or not is_valid(sibling):
                    continue
                used.add(sibling)
                questions.append(f"What is the {_humanize(sibling)}?")
                if len(questions) >= MAX_FOLLOW_UPS:
                    return questions
        return questions
