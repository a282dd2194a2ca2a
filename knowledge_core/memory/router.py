# ==============================
# Knowledge Store Router
# ==============================
"""
Single persistence interface used by KnowledgeBase, the compiler and review.

v1:
- Delegates all operations to a chosen backend (sqlite or in-memory).
- Keeps room for future split stores (history vs drafts) without changing callers.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from knowledge_core.config.schema import Settings
from knowledge_core.contracts.knowledge_schema import (
    CompilationResult,
    CompilationStatus,
    CompiledKnowledge,
    OverlayFragment,
)
from knowledge_core.memory.base import HistoryEntry, KnowledgeBackend
from knowledge_core.memory.sqlite_backend import SQLiteBackend


class KnowledgeStore(KnowledgeBackend):
    def __init__(self, backend: KnowledgeBackend) -> None:
        self.backend = backend

    def load_latest_compiled_knowledge(self) -> Optional[CompiledKnowledge]:
        return self.backend.load_latest_compiled_knowledge()

    def save_applied_fragment(self, fragment: OverlayFragment, *, version: int) -> None:
        self.backend.save_applied_fragment(fragment, version=version)

    def save_compiled_knowledge(self, knowledge: CompiledKnowledge) -> None:
        self.backend.save_compiled_knowledge(knowledge)

    def commit(self, knowledge: CompiledKnowledge, fragments: Sequence[OverlayFragment]) -> None:
        self.backend.commit(knowledge, fragments)

    def list_history(self, *, limit: int = 50, offset: int = 0) -> List[HistoryEntry]:
        return self.backend.list_history(limit=limit, offset=offset)

    def save_draft(self, draft: CompilationResult) -> None:
        self.backend.save_draft(draft)

    def get_draft(self, compilation_id: str) -> Optional[CompilationResult]:
        return self.backend.get_draft(compilation_id)

    def list_drafts(
        self, *, status: Optional[CompilationStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[CompilationResult]:
        return self.backend.list_drafts(status=status, limit=limit, offset=offset)

    def ensure_schema(self) -> None:
        self.backend.ensure_schema()

    def get_schema_version(self) -> int:
        return self.backend.get_schema_version()

    @classmethod
    def from_settings(cls, settings: Settings) -> "KnowledgeStore":
        """
        Instantiate the store using repo settings.
        """
        storage_dir = settings.resolve_path(settings.app.paths.storage_dir)
        knowledge_dir = storage_dir / "knowledge"
        knowledge_dir.mkdir(parents=True, exist_ok=True)

        db_path = settings.secrets.knowledge_db_path
        db_file = settings.resolve_path(db_path) if db_path else (knowledge_dir / "knowledge.sqlite")
        db_file.parent.mkdir(parents=True, exist_ok=True)

        backend = SQLiteBackend(db_path=str(db_file))
        backend.ensure_schema()
        return cls(backend)
