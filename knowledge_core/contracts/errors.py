# ==============================
# Knowledge Errors
# ==============================
"""
Error taxonomy for the knowledge engine.

Every error carries a stable machine-readable `code` so the gateway can map it
to the standard `{ok, data, error, meta}` envelope without string matching.

Retry semantics (the engine itself never retries):
- Structural errors (invalid_path, invalid_output) are contract violations.
- Transient errors (source_unavailable, collaborator_timeout) may be retried
  by the caller with backoff.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class KnowledgeError(Exception):
    code: str = "knowledge_error"
    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class MalformedPathError(KnowledgeError):
    """Bad path syntax. Always the caller's fault; rejected before any merge."""

    code = "invalid_path"


class SourceUnavailableError(KnowledgeError):
    code = "source_unavailable"
    retryable = True


class InvalidCompilationOutputError(KnowledgeError):
    """The text-generation collaborator returned output that cannot be applied."""

    code = "invalid_output"


class ConcurrentModificationError(KnowledgeError):
    code = "concurrent_modification"
    retryable = True


class CollaboratorTimeoutError(KnowledgeError):
    code = "collaborator_timeout"
    retryable = True


class CollaboratorError(KnowledgeError):
    code = "collaborator_error"
    retryable = True


class DraftNotFoundError(KnowledgeError):
    code = "not_found"


class InvalidDraftStateError(KnowledgeError):
    code = "invalid_state"


class InvalidCsvError(KnowledgeError):
    """Upload could not be read as path,value rows."""

    code = "invalid_csv"


class VersionNotFoundError(KnowledgeError):
    code = "not_found"
