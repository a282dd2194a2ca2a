# ==============================
# Knowledge Contracts
# ==============================
"""
Stable data contracts for the knowledge engine.

These models are shared by:
- knowledge/ (paths, merger, aggregator, conflict detection)
- orchestrator/ (compilation passes, review, single-writer knowledge base)
- query/ (retrieval + answers)
- memory/ (persistence boundary)
- gateway/ (API + CLI payloads)

Wire names follow the admin/chat UI contract (camelCase aliases); Python code
uses snake_case attribute names.
"""

# ==============================
# Imports
# ==============================
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from knowledge_core.contracts.errors import MalformedPathError
from knowledge_core.knowledge.paths import KnowledgePath, parse_target


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ==============================
# Enums
# ==============================
class SourceKind(str, Enum):
    """Where a fragment came from. Closed set; see SOURCE_PRECEDENCE."""
    DYNAMIC = "dynamic"
    CSV = "csv"
    MANUAL = "manual"
    AI = "ai"


# Tie-break order for fragments with equal timestamps: later in this list wins.
SOURCE_PRECEDENCE: Dict[SourceKind, int] = {
    SourceKind.DYNAMIC: 0,
    SourceKind.CSV: 1,
    SourceKind.MANUAL: 2,
    SourceKind.AI: 3,
}


def source_rank(kind: SourceKind) -> int:
    return SOURCE_PRECEDENCE[SourceKind(kind)]


class Classification(str, Enum):
    NEW = "new"
    IDENTICAL = "identical"
    CONFLICTING = "conflicting"
    TYPE_MISMATCH = "type_mismatch"


class ConflictResolution(str, Enum):
    KEEP_EXISTING = "keep_existing"
    USE_NEW = "use_new"
    MERGE = "merge"
    MANUAL_REVIEW = "manual_review"


class EnhancementKind(str, Enum):
    ADDED = "added"
    ENRICHED = "enriched"
    NORMALIZED = "normalized"
    VALIDATED = "validated"


class CompilationMode(str, Enum):
    ENHANCE = "enhance"
    REPLACE = "replace"
    MERGE = "merge"


class CompilationStatus(str, Enum):
    """Lifecycle of one compilation request."""
    RECEIVED = "received"
    DRAFTED = "drafted"
    AUTO_APPLIED = "auto_applied"
    PENDING_REVIEW = "pending_review"
    APPLIED = "applied"
    DISCARDED = "discarded"


# ==============================
# Fragments
# ==============================
class OverlayFragment(BaseModel):
    """One provenance-tagged write intent against a single path. Immutable."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    fragment_id: str = Field(default_factory=lambda: f"frg_{uuid4().hex}")
    path: str = Field(..., description="Dot path. Empty string targets the whole tree.")
    value: Any = Field(default=None, description="JSON value merged at path (ignored for deletes).")
    source: SourceKind = Field(...)
    timestamp: datetime = Field(default_factory=utcnow)
    delete: bool = Field(default=False, description="Remove the subtree at path.")
    sequence: int = Field(default=0, ge=0, description="Insertion order tie-breaker, assigned on apply.")

    @field_validator("path")
    @classmethod
    def _check_path(cls, v: str) -> str:
        parse_target(v)
        return v

    @field_validator("timestamp")
    @classmethod
    def _check_timestamp(cls, v: datetime) -> datetime:
        return _aware(v)

    @model_validator(mode="after")
    def _check_root_value(self) -> "OverlayFragment":
        if self.path == "" and not self.delete and not isinstance(self.value, dict):
            raise MalformedPathError(
                "The root target only accepts an object value.",
                details={"path": self.path},
            )
        return self

    @property
    def knowledge_path(self) -> KnowledgePath:
        return parse_target(self.path)

    def sort_key(self) -> Tuple[datetime, int, int]:
        return (self.timestamp, source_rank(self.source), self.sequence)


# ==============================
# Compiled Knowledge
# ==============================
class CompiledKnowledge(BaseModel):
    """
    Materialized overlay tree.

    Invariants:
    - version increments by exactly 1 per successful apply
    - tree == replay(applied_fragments) from {}
    - dynamic entity data is never stored here; it is joined at read time
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    tree: Dict[str, Any] = Field(default_factory=dict)
    applied_fragments: List[OverlayFragment] = Field(default_factory=list)
    version: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)


# ==============================
# Compilation Reports
# ==============================
class ConflictRecord(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    path: str = Field(...)
    existing_value: Any = Field(default=None, alias="existingValue")
    new_value: Any = Field(default=None, alias="newValue")
    classification: Classification = Field(default=Classification.CONFLICTING)
    resolution: ConflictResolution = Field(default=ConflictResolution.MANUAL_REVIEW)
    reasoning: str = Field(default="")


class EnhancementRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(...)
    kind: EnhancementKind = Field(default=EnhancementKind.ADDED)
    description: str = Field(default="")


class CompilationResult(BaseModel):
    """Outcome of one compilation pass. Pending results double as review drafts."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    compilation_id: str = Field(default_factory=lambda: f"cmp_{uuid4().hex}", alias="compilationId")
    status: CompilationStatus = Field(default=CompilationStatus.RECEIVED)
    mode: CompilationMode = Field(default=CompilationMode.MERGE)
    context: Optional[str] = Field(default=None)
    conflicts: List[ConflictRecord] = Field(default_factory=list)
    enhancements: List[EnhancementRecord] = Field(default_factory=list)
    summary: str = Field(default="")
    compiled_knowledge: Dict[str, Any] = Field(default_factory=dict, alias="compiledKnowledge")
    fragments: List[OverlayFragment] = Field(default_factory=list)
    base_version: int = Field(default=0, ge=0, alias="baseVersion")
    applied_version: Optional[int] = Field(default=None, alias="appliedVersion")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    decided_by: Optional[str] = Field(default=None, alias="decidedBy")
    comment: Optional[str] = Field(default=None)
    error: Optional[Dict[str, Any]] = Field(default=None)

    @property
    def unresolved_conflicts(self) -> List[ConflictRecord]:
        return [c for c in self.conflicts if c.resolution == ConflictResolution.MANUAL_REVIEW]


# ==============================
# Query
# ==============================
class SourceCitation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document: str = Field(...)
    section: str = Field(...)
    content: str = Field(default="")
    relevance: float = Field(default=0.0, ge=0.0, le=1.0)
    path: Optional[str] = Field(default=None)


class QueryResult(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    answer: str = Field(...)
    sources: List[SourceCitation] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = Field(default="")
    suggested_follow_up: List[str] = Field(default_factory=list, alias="suggestedFollowUp")
    timestamp: datetime = Field(default_factory=utcnow)


# ==============================
# Request Contracts
# ==============================
class QueryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    query: str = Field(..., min_length=1, max_length=1000)
    context: Optional[str] = Field(default=None)
    max_sources: int = Field(default=5, ge=1, le=20, alias="maxSources")
    include_sources: bool = Field(default=True, alias="includeSources")


class CompilationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    new_knowledge: Dict[str, Any] = Field(..., alias="newKnowledge")
    context: Optional[str] = Field(default=None)
    compilation_type: CompilationMode = Field(default=CompilationMode.MERGE, alias="compilationType")
    auto_apply: bool = Field(default=False, alias="autoApply")
