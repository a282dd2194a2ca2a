# ==============================
# Draft Review (HITL)
# ==============================
"""
Human review of pending compilation drafts.

Design:
- Drafts are CompilationResult records with status pending_review, stored
  ONLY through the injected store.
- approve() applies the draft's validated tree as one ai-source root fragment
  under the writer lock, and only if the knowledge has not moved since the
  draft was built (ConcurrentModificationError otherwise; the draft stays
  pending so it can be recompiled or rejected).
- reject() discards. Decisions are final.

This module does NOT know about HTTP or the CLI.
"""

# ==============================
# Imports
# ==============================
from __future__ import annotations

import logging
from typing import List, Optional

from knowledge_core.contracts.errors import DraftNotFoundError
from knowledge_core.contracts.knowledge_schema import CompilationResult, CompilationStatus
from knowledge_core.logging.logger import LogContext, with_context
from knowledge_core.memory.base import KnowledgeBackend
from knowledge_core.orchestrator.compiler import root_fragment
from knowledge_core.orchestrator.knowledge_base import KnowledgeBase
from knowledge_core.orchestrator.state import ensure_transition

logger = logging.getLogger("knowledge.review")


class DraftReview:
    def __init__(self, *, kb: KnowledgeBase, store: Optional[KnowledgeBackend] = None) -> None:
        self.kb = kb
        self.store = store or kb.store

    def list_pending(self, *, limit: int = 50, offset: int = 0) -> List[CompilationResult]:
        return self.store.list_drafts(status=CompilationStatus.PENDING_REVIEW, limit=limit, offset=offset)

    def list_drafts(
        self, *, status: Optional[CompilationStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[CompilationResult]:
        return self.store.list_drafts(status=status, limit=limit, offset=offset)

    def get(self, compilation_id: str) -> CompilationResult:
        draft = self.store.get_draft(compilation_id)
        if draft is None:
            raise DraftNotFoundError(f"Compilation not found: {compilation_id}", details={"compilation_id": compilation_id})
        return draft

    def approve(
        self, compilation_id: str, *, reviewer: Optional[str] = None, comment: Optional[str] = None
    ) -> CompilationResult:
        draft = self.get(compilation_id)
        ensure_transition(draft.status, CompilationStatus.APPLIED)
        log = with_context(logger, LogContext(compilation_id=draft.compilation_id, version=draft.base_version))

        applied = self.kb.apply_fragments(
            [root_fragment(draft.compiled_knowledge)], expected_version=draft.base_version
        )
        decided = draft.model_copy(
            update={
                "status": CompilationStatus.APPLIED,
                "applied_version": applied.version,
                "decided_by": reviewer,
                "comment": comment,
            }
        )
        self.store.save_draft(decided)
        self.kb.metrics.inc(f"compilations.{CompilationStatus.APPLIED.value}")
        log.info("draft approved by %s -> version %d", reviewer or "unknown", applied.version)
        return decided

    def reject(
        self, compilation_id: str, *, reviewer: Optional[str] = None, comment: Optional[str] = None
    ) -> CompilationResult:
        draft = self.get(compilation_id)
        ensure_transition(draft.status, CompilationStatus.DISCARDED)
        decided = draft.model_copy(
            update={"status": CompilationStatus.DISCARDED, "decided_by": reviewer, "comment": comment}
        )
        self.store.save_draft(decided)
        self.kb.metrics.inc(f"compilations.{CompilationStatus.DISCARDED.value}")
        with_context(logger, LogContext(compilation_id=draft.compilation_id)).info(
            "draft rejected by %s", reviewer or "unknown"
        )
        return decided
