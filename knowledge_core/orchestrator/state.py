# ==============================
# Compilation State
# ==============================
"""
Compilation status groups and the allowed transitions between them.

Lifecycle:
    received -> drafted -> {auto_applied | pending_review} -> {applied | discarded}

A pass may also jump straight to discarded from received/drafted when the
collaborator fails or returns unusable output.
"""

# ==============================
# Imports
# ==============================
from __future__ import annotations

from typing import Dict, FrozenSet

from knowledge_core.contracts.errors import InvalidDraftStateError
from knowledge_core.contracts.knowledge_schema import CompilationStatus as CompilationStatus  # re-export

# ==============================
# Status Groups
# ==============================
TERMINAL: FrozenSet[CompilationStatus] = frozenset(
    {
        CompilationStatus.AUTO_APPLIED,
        CompilationStatus.APPLIED,
        CompilationStatus.DISCARDED,
    }
)

AWAITING_DECISION: FrozenSet[CompilationStatus] = frozenset({CompilationStatus.PENDING_REVIEW})

TRANSITIONS: Dict[CompilationStatus, FrozenSet[CompilationStatus]] = {
    CompilationStatus.RECEIVED: frozenset({CompilationStatus.DRAFTED, CompilationStatus.DISCARDED}),
    CompilationStatus.DRAFTED: frozenset(
        {
            CompilationStatus.AUTO_APPLIED,
            CompilationStatus.PENDING_REVIEW,
            CompilationStatus.DISCARDED,
        }
    ),
    CompilationStatus.PENDING_REVIEW: frozenset({CompilationStatus.APPLIED, CompilationStatus.DISCARDED}),
    CompilationStatus.AUTO_APPLIED: frozenset(),
    CompilationStatus.APPLIED: frozenset(),
    CompilationStatus.DISCARDED: frozenset(),
}


def can_transition(current: CompilationStatus, target: CompilationStatus) -> bool:
    return CompilationStatus(target) in TRANSITIONS[CompilationStatus(current)]


def ensure_transition(current: CompilationStatus, target: CompilationStatus) -> None:
    if not can_transition(current, target):
        raise InvalidDraftStateError(
            f"Cannot move compilation from {CompilationStatus(current).value} to {CompilationStatus(target).value}.",
            details={"current": CompilationStatus(current).value, "target": CompilationStatus(target).value},
        )
