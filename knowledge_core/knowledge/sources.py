# ==============================
# Source Aggregation
# ==============================
"""
Collect knowledge fragments from every channel and put them in merge order.

Channels (SourceKind):
- dynamic: live entity records (speakers, artists, sponsors, ...) read from
  the entity collaborator. Never persisted; one fragment per collection at
  entities.<collection>.
- csv / manual / ai: overlay fragments persisted by the knowledge base.

Ordering is a documented total order: timestamp ascending, then source
precedence dynamic < csv < manual < ai, then insertion sequence.
Dynamic fragments are stamped at the epoch so the overlay always lands on top
of live entity data.

An unreachable entity collaborator degrades to overlay-only collection; it
never blocks overlay editing.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import yaml

from knowledge_core.contracts.errors import SourceUnavailableError
from knowledge_core.contracts.knowledge_schema import OverlayFragment, SourceKind
from knowledge_core.knowledge.merger import ordered
from knowledge_core.knowledge.paths import SEGMENT_RE
from knowledge_core.logging.metrics import Metrics

ENTITY_ROOT = "entities"
DYNAMIC_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

logger = logging.getLogger("knowledge.sources")


class EntitySource(Protocol):
    """Read-only view of current entity records, keyed by collection name."""

    def fetch(self) -> Dict[str, List[Dict[str, Any]]]:  # pragma: no cover
        ...


class StaticEntitySource:
    def __init__(self, collections: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> None:
        self.collections = collections or {}

    def fetch(self) -> Dict[str, List[Dict[str, Any]]]:
        return copy.deepcopy(self.collections)


class YamlEntitySource:
    """
    Entity collections exported to a YAML file:

        speakers:
          - {name: Ada, topic: AI}
        sponsors: []
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def fetch(self) -> Dict[str, List[Dict[str, Any]]]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SourceUnavailableError(
                f"Entity file not readable: {self.path}", details={"path": str(self.path)}
            ) from exc
        try:
            data = yaml.safe_load(raw) or {}
        except yaml.YAMLError as exc:
            raise SourceUnavailableError(
                f"Entity file is not valid YAML: {self.path}", details={"path": str(self.path)}
            ) from exc
        if not isinstance(data, dict):
            raise SourceUnavailableError("Entity file must map collection names to lists.")
        return data


@dataclass
class AggregationReport:
    fragments: List[OverlayFragment] = field(default_factory=list)
    degraded: bool = False
    error: Optional[str] = None


OverlayProvider = Callable[[], Sequence[OverlayFragment]]


class SourceAggregator:
    def __init__(
        self,
        *,
        entities: Optional[EntitySource] = None,
        overlay: Optional[OverlayProvider] = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.entities = entities
        self.overlay = overlay or (lambda: [])
        self.metrics = metrics

    def fetch_dynamic(self) -> List[OverlayFragment]:
        if self.entities is None:
            return []
        try:
            collections = self.entities.fetch()
        except SourceUnavailableError:
            raise
        except Exception as exc:
            raise SourceUnavailableError(f"Entity source failed: {exc}") from exc

        fragments: List[OverlayFragment] = []
        for idx, (name, rows) in enumerate(collections.items()):
            if not isinstance(name, str) or not SEGMENT_RE.match(name):
                logger.warning("skipping entity collection with unaddressable name", extra={"path": str(name)})
                continue
            fragments.append(
                OverlayFragment(
                    fragment_id=f"dyn_{name}",
                    path=f"{ENTITY_ROOT}.{name}",
                    value=rows if rows is not None else [],
                    source=SourceKind.DYNAMIC,
                    timestamp=DYNAMIC_EPOCH,
                    sequence=idx,
                )
            )
        return fragments

    def _gather(self, kind: SourceKind, persisted: Sequence[OverlayFragment]) -> List[OverlayFragment]:
        match kind:
            case SourceKind.DYNAMIC:
                return self.fetch_dynamic()
            case SourceKind.CSV | SourceKind.MANUAL | SourceKind.AI:
                return [f for f in persisted if f.source == kind]
        return []

    def collect_report(self, *, persisted: Optional[Sequence[OverlayFragment]] = None) -> AggregationReport:
        overlay = list(self.overlay() if persisted is None else persisted)
        report = AggregationReport()
        gathered: List[OverlayFragment] = []
        for kind in SourceKind:
            try:
                gathered.extend(self._gather(kind, overlay))
            except SourceUnavailableError as exc:
                report.degraded = True
                report.error = exc.message
                logger.warning("dynamic source unavailable; using overlay only", extra={"source": kind.value})
                if self.metrics is not None:
                    self.metrics.inc("sources.degraded")
        report.fragments = ordered(gathered)
        return report

    def collect(self, *, persisted: Optional[Sequence[OverlayFragment]] = None) -> List[OverlayFragment]:
        return self.collect_report(persisted=persisted).fragments
