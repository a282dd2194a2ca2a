# ==============================
# Compilation Orchestrator
# ==============================
"""
Reconcile proposed fragments with the current overlay tree.

Pass (compile):
    received -> drafted -> {auto_applied | pending_review}
    any failure before drafted -> discarded (nothing is mutated)

Steps:
1) ConflictDetector classifies every fragment against the snapshot tree.
2) A deterministic prompt (sorted-key JSON) goes to the collaborator through
   ModelRouter with an explicit deadline. No writer lock is held here.
3) The reply is parsed and validated (object extraction, compiledKnowledge
   present, every written path present, every deleted path absent, every
   key addressable).
4) auto_apply is honoured only for configured modes and only when no conflict
   still needs manual review. The apply re-checks the base version under the
   writer lock.

Applied results land as one ai-source fragment at the root target carrying
the validated tree, so the overlay tree stays equal to the replay of its
fragments.
"""

# ==============================
# Imports
# ==============================
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from knowledge_core.config.schema import Settings
from knowledge_core.contracts.errors import (
    CollaboratorError,
    CollaboratorTimeoutError,
    ConcurrentModificationError,
    InvalidCompilationOutputError,
    KnowledgeError,
)
from knowledge_core.contracts.knowledge_schema import (
    CompilationMode,
    CompilationResult,
    CompilationStatus,
    CompiledKnowledge,
    ConflictRecord,
    ConflictResolution,
    EnhancementKind,
    EnhancementRecord,
    OverlayFragment,
    SourceKind,
    utcnow,
)
from knowledge_core.knowledge.conflicts import ConflictDetector, DetectionReport
from knowledge_core.knowledge.merger import replay
from knowledge_core.knowledge.paths import MISSING, get_at, invalid_keys, parse, render
from knowledge_core.logging.logger import LogContext, with_context
from knowledge_core.logging.metrics import Metrics
from knowledge_core.memory.base import KnowledgeBackend
from knowledge_core.models.router import ModelRouter
from knowledge_core.orchestrator.knowledge_base import KnowledgeBase
from knowledge_core.orchestrator.state import ensure_transition
from knowledge_core.utils.payloads import coerce_str, extract_json_object, stable_json

logger = logging.getLogger("knowledge.compiler")

DEFAULT_EVENT_NAME = "Paguyuban Messe 2026"

MODE_GUIDANCE: Dict[CompilationMode, str] = {
    CompilationMode.ENHANCE: (
        "Keep every existing fact. Add the new knowledge and enrich or normalize "
        "existing entries where the new knowledge adds detail."
    ),
    CompilationMode.REPLACE: "New knowledge replaces existing values at the same paths.",
    CompilationMode.MERGE: (
        "Merge complementary information. Resolve conflicts per path; prefer newer, "
        "more complete and more official values."
    ),
}

COMPILE_SYSTEM = "You are a knowledge compiler. Reply with a single JSON object and nothing else."

SMART_ENTRY_SYSTEM = "You turn administrator notes into structured knowledge edits. Reply with JSON only."


def fragments_from_knowledge(
    new_knowledge: Dict[str, Any],
    *,
    source: SourceKind = SourceKind.MANUAL,
    null_deletes: bool = True,
) -> List[OverlayFragment]:
    """One fragment per top-level key. Dotted keys address nested paths."""
    fragments: List[OverlayFragment] = []
    for key, value in new_knowledge.items():
        path = render(parse(str(key)))
        delete = value is None and null_deletes
        fragments.append(OverlayFragment(path=path, value=None if delete else value, source=source, delete=delete))
    return fragments


def root_fragment(tree: Dict[str, Any], *, source: SourceKind = SourceKind.AI) -> OverlayFragment:
    return OverlayFragment(path="", value=tree, source=source)


class CompilationOrchestrator:
    def __init__(
        self,
        *,
        kb: KnowledgeBase,
        model: ModelRouter,
        store: Optional[KnowledgeBackend] = None,
        detector: Optional[ConflictDetector] = None,
        metrics: Optional[Metrics] = None,
        auto_apply_modes: Iterable[str] = ("replace", "merge"),
        timeout_seconds: Optional[float] = None,
        event_name: str = DEFAULT_EVENT_NAME,
    ) -> None:
        self.kb = kb
        self.model = model
        self.store = store or kb.store
        self.detector = detector or ConflictDetector()
        self.metrics = metrics or kb.metrics
        self.auto_apply_modes = frozenset(CompilationMode(m) for m in auto_apply_modes)
        self.timeout_seconds = timeout_seconds
        self.event_name = event_name

    @classmethod
    def from_settings(cls, settings: Settings, *, kb: KnowledgeBase, model: ModelRouter) -> "CompilationOrchestrator":
        return cls(
            kb=kb,
            model=model,
            auto_apply_modes=settings.knowledge.auto_apply_modes,
            timeout_seconds=settings.models.openai.timeout_seconds,
            event_name=settings.app.event_name,
        )

    # ------------------------------
    # Prompt
    # ------------------------------

    def build_prompt(
        self,
        tree: Dict[str, Any],
        fragments: Sequence[OverlayFragment],
        report: DetectionReport,
        *,
        mode: CompilationMode,
        context: Optional[str],
    ) -> str:
        proposed = [
            {"path": f.path, "value": None if f.delete else f.value, "delete": f.delete, "source": f.source.value}
            for f in fragments
        ]
        conflicts = [
            {"path": c.path, "existing": c.existing_value, "new": c.new_value, "classification": c.classification.value}
            for c in report.conflicts
        ]
        enhancements = [
            {"path": e.path, "kind": e.kind.value, "description": e.description} for e in report.enhancements
        ]
        return "\n".join(
            [
                f"You compile the knowledge base of the {self.event_name} event system.",
                f"TASK: {mode.value.upper()}. {MODE_GUIDANCE[mode]}",
                f"CONTEXT: {context or 'General knowledge update'}",
                "",
                "EXISTING KNOWLEDGE:",
                stable_json(tree),
                "",
                "PROPOSED FRAGMENTS:",
                stable_json(proposed),
                "",
                f"DETECTED CONFLICTS ({len(conflicts)}):",
                stable_json(conflicts),
                "",
                f"DETECTED ENHANCEMENTS ({len(enhancements)}):",
                stable_json(enhancements),
                "",
                "RULES:",
                "- Every non-deleted fragment path must exist in compiledKnowledge.",
                "- Every deleted fragment path must be absent from compiledKnowledge.",
                "- Keys may only use letters, digits, '_' and '-'.",
                "- Lists are replaced, never concatenated.",
                "",
                "RESPONSE FORMAT (JSON):",
                stable_json(
                    {
                        "summary": "short summary of the changes",
                        "conflicts": [{"path": "a.b", "resolution": "keep_existing|use_new|merge|manual_review", "reasoning": "why"}],
                        "enhancements": [{"path": "a.c", "kind": "added|enriched|normalized|validated", "description": "what"}],
                        "compiledKnowledge": {"...": "complete resulting knowledge tree"},
                    }
                ),
            ]
        )

    # ------------------------------
    # Output validation
    # ------------------------------

    def parse_output(self, text: str, fragments: Sequence[OverlayFragment]) -> Dict[str, Any]:
        payload = extract_json_object(text)
        if payload is None:
            raise InvalidCompilationOutputError("Collaborator reply contains no JSON object.")
        compiled = payload.get("compiledKnowledge")
        if not isinstance(compiled, dict):
            raise InvalidCompilationOutputError("Collaborator reply has no compiledKnowledge object.")

        bad_keys = list(invalid_keys(compiled))
        if bad_keys:
            raise InvalidCompilationOutputError(
                "compiledKnowledge contains keys that are not addressable.", details={"keys": bad_keys[:20]}
            )
        missing: List[str] = []
        lingering: List[str] = []
        for f in fragments:
            path = f.knowledge_path
            if path.is_root:
                continue
            present = get_at(compiled, path) is not MISSING
            if f.delete and present:
                lingering.append(f.path)
            elif not f.delete and not present:
                missing.append(f.path)
        if missing or lingering:
            raise InvalidCompilationOutputError(
                "compiledKnowledge does not reflect the proposed fragments.",
                details={"missing": missing, "not_deleted": lingering},
            )
        return payload

    @staticmethod
    def _resolve_conflicts(conflicts: List[ConflictRecord], decisions: Any) -> List[ConflictRecord]:
        by_path: Dict[str, Dict[str, Any]] = {}
        if isinstance(decisions, list):
            for d in decisions:
                if isinstance(d, dict) and isinstance(d.get("path"), str):
                    by_path[d["path"]] = d
        out: List[ConflictRecord] = []
        for c in conflicts:
            d = by_path.get(c.path)
            if d is None:
                out.append(c)
                continue
            try:
                resolution = ConflictResolution(str(d.get("resolution")))
            except ValueError:
                out.append(c)
                continue
            reasoning = coerce_str(d.get("reasoning")) or c.reasoning
            out.append(c.model_copy(update={"resolution": resolution, "reasoning": reasoning}))
        return out

    @staticmethod
    def _merge_enhancements(found: List[EnhancementRecord], proposed: Any) -> List[EnhancementRecord]:
        out = list(found)
        seen = {(e.path, e.kind) for e in out}
        if not isinstance(proposed, list):
            return out
        for item in proposed:
            if not isinstance(item, dict) or not isinstance(item.get("path"), str):
                continue
            try:
                kind = EnhancementKind(str(item.get("kind") or item.get("type") or "added"))
            except ValueError:
                continue
            if (item["path"], kind) in seen:
                continue
            seen.add((item["path"], kind))
            out.append(EnhancementRecord(path=item["path"], kind=kind, description=coerce_str(item.get("description"))))
        return out

    # ------------------------------
    # Passes
    # ------------------------------

    def compile(
        self,
        fragments: Sequence[OverlayFragment],
        *,
        knowledge: Optional[CompiledKnowledge] = None,
        context: Optional[str] = None,
        mode: CompilationMode = CompilationMode.MERGE,
        auto_apply: bool = False,
    ) -> CompilationResult:
        mode = CompilationMode(mode)
        snapshot = knowledge or self.kb.snapshot()
        result = CompilationResult(
            mode=mode,
            context=context,
            fragments=list(fragments),
            base_version=snapshot.version,
        )
        log = with_context(logger, LogContext(compilation_id=result.compilation_id, version=snapshot.version, mode=mode.value))
        log.info("compilation received")

        report = self.detector.detect(snapshot.tree, fragments)
        prompt = self.build_prompt(snapshot.tree, fragments, report, mode=mode, context=context)

        try:
            text = self.model.complete_text(
                prompt, purpose="compile", system=COMPILE_SYSTEM, timeout_seconds=self.timeout_seconds
            )
            payload = self.parse_output(text, fragments)
        except (CollaboratorTimeoutError, CollaboratorError, InvalidCompilationOutputError) as exc:
            self._discard(result, exc, conflicts=report.conflicts, enhancements=report.enhancements)
            log.warning("compilation discarded: %s", exc.message)
            raise

        ensure_transition(result.status, CompilationStatus.DRAFTED)
        result = result.model_copy(
            update={
                "status": CompilationStatus.DRAFTED,
                "compiled_knowledge": payload["compiledKnowledge"],
                "conflicts": self._resolve_conflicts(report.conflicts, payload.get("conflicts")),
                "enhancements": self._merge_enhancements(report.enhancements, payload.get("enhancements")),
                "summary": coerce_str(payload.get("summary")) or "Knowledge compilation completed.",
            }
        )
        return self._finish(result, auto_apply=auto_apply)

    def compile_without_model(
        self,
        fragments: Sequence[OverlayFragment],
        *,
        knowledge: Optional[CompiledKnowledge] = None,
        context: Optional[str] = None,
        mode: CompilationMode = CompilationMode.MERGE,
        auto_apply: bool = False,
        summary: Optional[str] = None,
    ) -> CompilationResult:
        """Fallback pass: TreeMerger decides, every conflict resolves to use_new."""
        mode = CompilationMode(mode)
        snapshot = knowledge or self.kb.snapshot()
        report = self.detector.detect(snapshot.tree, fragments)
        conflicts = [
            c.model_copy(update={"resolution": ConflictResolution.USE_NEW, "reasoning": c.reasoning + " Newer value kept."})
            for c in report.conflicts
        ]
        result = CompilationResult(
            status=CompilationStatus.DRAFTED,
            mode=mode,
            context=context,
            fragments=list(fragments),
            base_version=snapshot.version,
            compiled_knowledge=replay(fragments, base=snapshot.tree),
            conflicts=conflicts,
            enhancements=report.enhancements,
            summary=summary or f"Merged {len(fragments)} fragment(s) without model assistance.",
        )
        return self._finish(result, auto_apply=auto_apply)

    def smart_entry(self, description: str, *, knowledge: Optional[CompiledKnowledge] = None) -> CompilationResult:
        """
        Turn a free-text note into ai fragments and draft them for review.
        When the collaborator is unavailable the note is kept verbatim under
        userEntries.<timestamp>.
        """
        snapshot = knowledge or self.kb.snapshot()
        prompt = "\n".join(
            [
                f"You manage knowledge for the {self.event_name} event system.",
                f'USER REQUEST: "{description}"',
                "",
                "CURRENT KNOWLEDGE:",
                stable_json(snapshot.tree),
                "",
                "Choose dot paths that fit the existing organization (event, tickets, contact, program, ...).",
                "RESPONSE FORMAT (JSON):",
                stable_json(
                    {
                        "changes": [{"action": "added|updated|deleted", "path": "the.path", "value": "new value or null"}],
                        "summary": "what was changed",
                    }
                ),
            ]
        )
        try:
            text = self.model.complete_text(
                prompt, purpose="smart_entry", system=SMART_ENTRY_SYSTEM, timeout_seconds=self.timeout_seconds
            )
            payload = extract_json_object(text)
            fragments = self._changes_to_fragments(payload)
            summary = coerce_str(payload.get("summary")) or "Smart entry drafted."
        except (CollaboratorTimeoutError, CollaboratorError, InvalidCompilationOutputError) as exc:
            logger.warning("smart entry fell back to a user entry: %s", exc.message)
            key = utcnow().strftime("%Y%m%dT%H%M%S%fZ")
            fragments = [OverlayFragment(path=f"userEntries.{key}", value=description, source=SourceKind.MANUAL)]
            summary = "Entry added as a user note (model unavailable)."
        return self.compile_without_model(fragments, knowledge=snapshot, context=description, summary=summary)

    @staticmethod
    def _changes_to_fragments(payload: Optional[Dict[str, Any]]) -> List[OverlayFragment]:
        if payload is None or not isinstance(payload.get("changes"), list):
            raise InvalidCompilationOutputError("Smart entry reply has no changes list.")
        fragments: List[OverlayFragment] = []
        for change in payload["changes"]:
            if not isinstance(change, dict):
                continue
            try:
                path = render(parse(str(change.get("path", ""))))
            except KnowledgeError:
                logger.info("smart entry change skipped: unaddressable path", extra={"path": str(change.get("path"))})
                continue
            delete = str(change.get("action", "")).lower() == "deleted"
            fragments.append(
                OverlayFragment(
                    path=path,
                    value=None if delete else change.get("value"),
                    source=SourceKind.AI,
                    delete=delete,
                )
            )
        if not fragments:
            raise InvalidCompilationOutputError("Smart entry reply proposed no usable changes.")
        return fragments

    # ------------------------------
    # Outcome
    # ------------------------------

    def _finish(self, result: CompilationResult, *, auto_apply: bool) -> CompilationResult:
        log = with_context(
            logger, LogContext(compilation_id=result.compilation_id, version=result.base_version, mode=result.mode.value)
        )
        if auto_apply and result.mode in self.auto_apply_modes and not result.unresolved_conflicts:
            ensure_transition(result.status, CompilationStatus.AUTO_APPLIED)
            try:
                applied = self.kb.apply_fragments(
                    [root_fragment(result.compiled_knowledge)], expected_version=result.base_version
                )
            except ConcurrentModificationError as exc:
                self._discard(result, exc)
                log.warning("auto apply refused: %s", exc.message)
                raise
            result = result.model_copy(
                update={"status": CompilationStatus.AUTO_APPLIED, "applied_version": applied.version, "decided_by": "auto"}
            )
        else:
            ensure_transition(result.status, CompilationStatus.PENDING_REVIEW)
            result = result.model_copy(update={"status": CompilationStatus.PENDING_REVIEW})

        self.store.save_draft(result)
        self.metrics.inc(f"compilations.{result.status.value}")
        log.info(
            "compilation %s (%d conflicts, %d unresolved)",
            result.status.value,
            len(result.conflicts),
            len(result.unresolved_conflicts),
        )
        return result

    def _discard(
        self,
        result: CompilationResult,
        exc: KnowledgeError,
        *,
        conflicts: Optional[List[ConflictRecord]] = None,
        enhancements: Optional[List[EnhancementRecord]] = None,
    ) -> CompilationResult:
        update: Dict[str, Any] = {"status": CompilationStatus.DISCARDED, "error": exc.to_dict()}
        if conflicts is not None:
            update["conflicts"] = conflicts
        if enhancements is not None:
            update["enhancements"] = enhancements
        discarded = result.model_copy(update=update)
        self.store.save_draft(discarded)
        self.metrics.inc(f"compilations.{CompilationStatus.DISCARDED.value}")
        exc.details.setdefault("compilation_id", result.compilation_id)
        return discarded
