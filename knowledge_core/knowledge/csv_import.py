# ==============================
# CSV Overlay Import
# ==============================
"""
Bulk overlay edits from a two-column CSV: path,value.

- Header row "path,value" is optional (case-insensitive).
- Quoted fields follow the usual CSV rules (read with pandas).
- Values are coerced: true/false, null or empty (delete when null_deletes),
  integers/decimals with "_" separators, JSON literals, otherwise text.
- Rows with an empty path are skipped.

Apply modes:
- default: one single-fragment apply per row; bad rows are reported and
  skipped, good rows land.
- all_or_nothing: every row is validated first; any bad row discards the
  batch. A clean batch lands as ONE apply (single version bump).
"""

from __future__ import annotations

import io
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple

import pandas as pd

from knowledge_core.contracts.errors import InvalidCsvError, KnowledgeError
from knowledge_core.contracts.knowledge_schema import OverlayFragment, SourceKind
from knowledge_core.orchestrator.knowledge_base import KnowledgeBase

logger = logging.getLogger("knowledge.csv_import")

_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")


class CsvRow(NamedTuple):
    path: str
    value: Any
    line: int


@dataclass
class CsvImportReport:
    rows: int = 0
    applied: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    version: int = 0
    discarded: bool = False

    @property
    def failed(self) -> int:
        return len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows": self.rows,
            "applied": self.applied,
            "failed": self.failed,
            "errors": list(self.errors),
            "version": self.version,
            "discarded": self.discarded,
        }


def coerce_value(raw: str) -> Any:
    v = raw.strip()
    if v == "true":
        return True
    if v == "false":
        return False
    if v in ("null", ""):
        return None
    compact = v.replace("_", "")
    if _NUMBER_RE.match(compact):
        return float(compact) if "." in compact else int(compact)
    try:
        return json.loads(v)
    except ValueError:
        return v


def parse_csv(text: str) -> List[CsvRow]:
    if not text or not text.strip():
        return []
    try:
        df = pd.read_csv(
            io.StringIO(text),
            header=None,
            names=["path", "value"],
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            skipinitialspace=True,
            index_col=False,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise InvalidCsvError(f"CSV could not be parsed: {exc}") from exc

    df = df.fillna("")
    rows: List[CsvRow] = []
    for idx, record in enumerate(df.itertuples(index=False), start=1):
        path = str(record.path).strip()
        raw = str(record.value)
        if idx == 1 and path.lower() == "path" and raw.strip().lower() == "value":
            continue
        if not path:
            continue
        rows.append(CsvRow(path=path, value=coerce_value(raw), line=idx))
    return rows


def _fragment(kb: KnowledgeBase, row: CsvRow, source: SourceKind) -> OverlayFragment:
    return kb.make_fragment(row.path, row.value, source=source)


def import_csv(
    kb: KnowledgeBase,
    text: str,
    *,
    all_or_nothing: bool = False,
    source: SourceKind = SourceKind.CSV,
) -> CsvImportReport:
    rows = parse_csv(text)
    if not rows:
        raise InvalidCsvError("No valid data found in CSV.")

    report = CsvImportReport(rows=len(rows), version=kb.version)

    if all_or_nothing:
        fragments: List[OverlayFragment] = []
        for row in rows:
            try:
                fragments.append(_fragment(kb, row, source))
            except KnowledgeError as exc:
                report.errors.append({"line": row.line, "path": row.path, "code": exc.code, "message": exc.message})
        if report.errors:
            report.discarded = True
            logger.warning("csv batch discarded: %d bad row(s)", report.failed)
            return report
        applied = kb.apply_fragments(fragments)
        report.applied = len(fragments)
        report.version = applied.version
        logger.info("csv batch applied", extra={"version": applied.version, "source": source.value})
        return report

    for row in rows:
        try:
            applied = kb.apply_fragments([_fragment(kb, row, source)])
        except KnowledgeError as exc:
            report.errors.append({"line": row.line, "path": row.path, "code": exc.code, "message": exc.message})
            continue
        report.applied += 1
        report.version = applied.version
    if report.errors:
        logger.warning("csv import: %d of %d row(s) rejected", report.failed, report.rows)
    return report


def import_csv_file(kb: KnowledgeBase, path: str, *, all_or_nothing: bool = False) -> CsvImportReport:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except OSError as exc:
        raise InvalidCsvError(f"CSV file not readable: {path}", details={"path": path}) from exc
    return import_csv(kb, text, all_or_nothing=all_or_nothing)
