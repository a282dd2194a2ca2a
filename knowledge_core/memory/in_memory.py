# ==============================
# In-Memory Backend (Dev)
# ==============================
"""
In-memory knowledge backend for local dev/testing.

Not durable. Deterministic. No file I/O.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional

from knowledge_core.contracts.knowledge_schema import (
    CompilationResult,
    CompilationStatus,
    CompiledKnowledge,
    OverlayFragment,
)
from knowledge_core.memory.base import HistoryEntry, KnowledgeBackend


class InMemoryBackend(KnowledgeBackend):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._compiled: Optional[CompiledKnowledge] = None
        self._history: List[HistoryEntry] = []
        self._drafts: Dict[str, CompilationResult] = {}

    def load_latest_compiled_knowledge(self) -> Optional[CompiledKnowledge]:
        with self._lock:
            if self._compiled is None:
                return None
            fragments = [h.fragment for h in self._history]
            return self._compiled.model_copy(update={"applied_fragments": fragments})

    def save_applied_fragment(self, fragment: OverlayFragment, *, version: int) -> None:
        with self._lock:
            self._history.append(HistoryEntry(version=version, fragment=fragment))

    def save_compiled_knowledge(self, knowledge: CompiledKnowledge) -> None:
        with self._lock:
            # fragments live in _history; keep the stored snapshot light
            self._compiled = knowledge.model_copy(update={"applied_fragments": []})

    def list_history(self, *, limit: int = 50, offset: int = 0) -> List[HistoryEntry]:
        with self._lock:
            entries = list(reversed(self._history))
        return entries[offset : offset + limit]

    def save_draft(self, draft: CompilationResult) -> None:
        with self._lock:
            self._drafts[draft.compilation_id] = draft

    def get_draft(self, compilation_id: str) -> Optional[CompilationResult]:
        with self._lock:
            return self._drafts.get(compilation_id)

    def list_drafts(
        self, *, status: Optional[CompilationStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[CompilationResult]:
        with self._lock:
            drafts = list(self._drafts.values())
        if status is not None:
            drafts = [d for d in drafts if d.status == status]
        drafts.sort(key=lambda d: d.created_at, reverse=True)
        return drafts[offset : offset + limit]
