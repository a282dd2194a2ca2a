# ==============================
# Knowledge Base (Single Writer)
# ==============================
"""
Owner of the current CompiledKnowledge.

Rules:
- Exactly one writer at a time. writer() refuses (ConcurrentModificationError)
  instead of queueing when another apply is in progress, after an optional
  short wait (knowledge.writer_wait_seconds).
- Readers call snapshot() and get an immutable CompiledKnowledge. Applies
  build a new tree and swap the reference, so a published snapshot never
  changes underneath a reader.
- Every apply bumps the version by exactly 1 and persists fragments + tree
  through the store in one commit.
- The overlay tree is always replay(applied_fragments). Live entity data is
  never persisted; live_tree() joins it at read time.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from knowledge_core.config.schema import Settings
from knowledge_core.contracts.errors import ConcurrentModificationError
from knowledge_core.contracts.knowledge_schema import (
    CompiledKnowledge,
    OverlayFragment,
    SourceKind,
    utcnow,
)
from knowledge_core.knowledge.merger import deep_merge, replay
from knowledge_core.knowledge.paths import MISSING, get_at, parse, parse_target, render
from knowledge_core.knowledge.sources import AggregationReport, SourceAggregator, YamlEntitySource
from knowledge_core.logging.metrics import Metrics
from knowledge_core.memory.base import HistoryEntry, KnowledgeBackend

logger = logging.getLogger("knowledge.base")


class KnowledgeWriter:
    """Handle given to the holder of the writer lock."""

    def __init__(self, kb: "KnowledgeBase") -> None:
        self._kb = kb

    @property
    def version(self) -> int:
        return self._kb.snapshot().version

    def apply(
        self, fragments: Sequence[OverlayFragment], *, expected_version: Optional[int] = None
    ) -> CompiledKnowledge:
        return self._kb._apply_locked(fragments, expected_version=expected_version)


class KnowledgeBase:
    def __init__(
        self,
        *,
        store: KnowledgeBackend,
        aggregator: Optional[SourceAggregator] = None,
        metrics: Optional[Metrics] = None,
        writer_wait_seconds: float = 0.0,
        null_deletes: bool = True,
    ) -> None:
        self.store = store
        self.metrics = metrics or Metrics()
        self.aggregator = aggregator or SourceAggregator(metrics=self.metrics)
        self.writer_wait_seconds = float(writer_wait_seconds)
        self.null_deletes = null_deletes
        self._lock = threading.Lock()
        self._current: CompiledKnowledge = store.load_latest_compiled_knowledge() or CompiledKnowledge()

    @classmethod
    def from_settings(
        cls, settings: Settings, *, store: KnowledgeBackend, metrics: Optional[Metrics] = None
    ) -> "KnowledgeBase":
        metrics = metrics or Metrics()
        entities = None
        if settings.knowledge.entities_file:
            entities = YamlEntitySource(str(settings.resolve_path(settings.knowledge.entities_file)))
        return cls(
            store=store,
            aggregator=SourceAggregator(entities=entities, metrics=metrics),
            metrics=metrics,
            writer_wait_seconds=settings.knowledge.writer_wait_seconds,
            null_deletes=settings.knowledge.null_deletes,
        )

    # ------------------------------
    # Reads
    # ------------------------------

    def snapshot(self) -> CompiledKnowledge:
        return self._current

    @property
    def version(self) -> int:
        return self._current.version

    def live_report(self, snapshot: Optional[CompiledKnowledge] = None) -> Tuple[Dict[str, Any], AggregationReport]:
        """
        Overlay joined onto live entity data. Root-target fragments address the
        overlay layer only, so clearing the overlay keeps entity records visible.
        """
        snap = snapshot or self.snapshot()
        report = self.aggregator.collect_report(persisted=snap.applied_fragments)
        dynamic = [f for f in report.fragments if f.source == SourceKind.DYNAMIC]
        return deep_merge(replay(dynamic), snap.tree), report

    def live_tree(self, snapshot: Optional[CompiledKnowledge] = None) -> Dict[str, Any]:
        tree, _ = self.live_report(snapshot)
        return tree

    def get(self, path: str, *, live: bool = True) -> Any:
        tree = self.live_tree() if live else self.snapshot().tree
        target = parse_target(path)
        return tree if target.is_root else get_at(tree, target)

    def history(self, *, limit: int = 50, offset: int = 0) -> List[HistoryEntry]:
        return self.store.list_history(limit=limit, offset=offset)

    # ------------------------------
    # Writes
    # ------------------------------

    @contextmanager
    def writer(self) -> Iterator[KnowledgeWriter]:
        if self.writer_wait_seconds > 0:
            acquired = self._lock.acquire(timeout=self.writer_wait_seconds)
        else:
            acquired = self._lock.acquire(blocking=False)
        if not acquired:
            self.metrics.inc("knowledge.writer_contention")
            raise ConcurrentModificationError(
                "Another apply is in progress.", details={"version": self._current.version}
            )
        try:
            yield KnowledgeWriter(self)
        finally:
            self._lock.release()

    def apply_fragments(
        self, fragments: Sequence[OverlayFragment], *, expected_version: Optional[int] = None
    ) -> CompiledKnowledge:
        with self.writer() as w:
            return w.apply(fragments, expected_version=expected_version)

    def _apply_locked(
        self, fragments: Sequence[OverlayFragment], *, expected_version: Optional[int] = None
    ) -> CompiledKnowledge:
        current = self._current
        if expected_version is not None and expected_version != current.version:
            raise ConcurrentModificationError(
                f"Knowledge moved from version {expected_version} to {current.version}.",
                details={"expected_version": expected_version, "version": current.version},
            )
        if not fragments:
            return current

        base_seq = len(current.applied_fragments)
        stamped = [f.model_copy(update={"sequence": base_seq + i}) for i, f in enumerate(fragments)]
        applied = list(current.applied_fragments) + stamped
        updated = CompiledKnowledge(
            tree=replay(applied),
            applied_fragments=applied,
            version=current.version + 1,
            updated_at=utcnow(),
        )
        self.store.commit(updated, stamped)
        self._current = updated
        self.metrics.inc("knowledge.applied")
        for f in stamped:
            logger.info(
                "fragment applied",
                extra={"version": updated.version, "path": f.path, "source": f.source.value, "fragment_id": f.fragment_id},
            )
        return updated

    # ------------------------------
    # Overlay editing
    # ------------------------------

    def make_fragment(
        self, path: str, value: Any = None, *, source: SourceKind = SourceKind.MANUAL, delete: bool = False
    ) -> OverlayFragment:
        if value is None and self.null_deletes and path != "":
            delete = True
        if path != "":
            path = render(parse(path))
        return OverlayFragment(path=path, value=None if delete else value, source=source, delete=delete)

    def put(self, path: str, value: Any, *, source: SourceKind = SourceKind.MANUAL) -> CompiledKnowledge:
        """Single-fragment pass; a null value deletes when null_deletes is on."""
        return self.apply_fragments([self.make_fragment(path, value, source=source)])

    def delete(self, path: str, *, source: SourceKind = SourceKind.MANUAL) -> CompiledKnowledge:
        return self.apply_fragments([self.make_fragment(path, source=source, delete=True)])

    def clear(self, *, source: SourceKind = SourceKind.MANUAL) -> CompiledKnowledge:
        return self.apply_fragments([OverlayFragment(path="", value={}, source=source)])

    def replace_overlay(self, overlay: Dict[str, Any], *, source: SourceKind = SourceKind.MANUAL) -> CompiledKnowledge:
        return self.apply_fragments([OverlayFragment(path="", value=overlay, source=source)])

    def exists(self, path: str) -> bool:
        return self.get(path) is not MISSING
