# ==============================
# Knowledge Backend Contracts
# ==============================
"""
Persistence boundary for the knowledge engine. The memory layer is the ONLY
place where persistence is allowed.

What must be durable:
- append-only history of applied overlay fragments (provenance)
- the latest materialized CompiledKnowledge (tree + version)
- compilation drafts awaiting review

Rules:
- No model calls.
- No merge logic: callers hand over already-validated values.
- Concrete persistence lives in sqlite_backend.py (or other backends).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from knowledge_core.contracts.knowledge_schema import (
    CompilationResult,
    CompilationStatus,
    CompiledKnowledge,
    OverlayFragment,
)


class HistoryEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = Field(..., ge=1)
    fragment: OverlayFragment = Field(...)


class KnowledgeBackend(ABC):
    """
    Interface used by KnowledgeBase (single writer) and Review.
    """

    @abstractmethod
    def load_latest_compiled_knowledge(self) -> Optional[CompiledKnowledge]:
        raise NotImplementedError

    @abstractmethod
    def save_applied_fragment(self, fragment: OverlayFragment, *, version: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def save_compiled_knowledge(self, knowledge: CompiledKnowledge) -> None:
        raise NotImplementedError

    def commit(self, knowledge: CompiledKnowledge, fragments: Sequence[OverlayFragment]) -> None:
        """
        Persist one apply: its fragments plus the new materialized tree.
        Durable backends override this to use a single transaction.
        """
        for fragment in fragments:
            self.save_applied_fragment(fragment, version=knowledge.version)
        self.save_compiled_knowledge(knowledge)

    @abstractmethod
    def list_history(self, *, limit: int = 50, offset: int = 0) -> List[HistoryEntry]:
        raise NotImplementedError

    # ------------------------------
    # Drafts
    # ------------------------------

    @abstractmethod
    def save_draft(self, draft: CompilationResult) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_draft(self, compilation_id: str) -> Optional[CompilationResult]:
        raise NotImplementedError

    @abstractmethod
    def list_drafts(
        self, *, status: Optional[CompilationStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[CompilationResult]:
        raise NotImplementedError

    # Optional hooks for durable backends so tooling/migrations can introspect.
    def ensure_schema(self) -> None:
        """
        Ensure backing schema exists. In-memory backends can no-op.
        """
        return None

    def get_schema_version(self) -> int:
        """
        Return integer schema version if supported. Defaults to 0.
        """
        return 0
