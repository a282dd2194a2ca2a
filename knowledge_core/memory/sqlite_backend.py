# ==============================
# SQLite Backend
# ==============================
"""
SQLite backend for durable knowledge state.

Tables:
- schema_version
- fragments   append-only applied fragment history
- compiled    single row: latest materialized tree + version
- drafts      compilation results (pending review, applied, discarded)

Notes:
- Idempotent schema creation on init.
- Minimal migration strategy: integer schema version.
- All JSON fields stored as TEXT (json dumps).
- WAL journal so readers never block the single writer.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any, List, Optional, Sequence

from knowledge_core.contracts.knowledge_schema import (
    CompilationResult,
    CompilationStatus,
    CompiledKnowledge,
    OverlayFragment,
)
from knowledge_core.memory.base import HistoryEntry, KnowledgeBackend

SCHEMA_VERSION = 1
BUSY_TIMEOUT_MS = 5000


def _dumps(x: Any) -> str:
    return json.dumps(x, ensure_ascii=False)


def _loads(s: Optional[str], default: Any) -> Any:
    if s is None:
        return default
    try:
        return json.loads(s)
    except ValueError:
        return default


class SQLiteBackend(KnowledgeBackend):
    def __init__(self, *, db_path: str, initialize: bool = True) -> None:
        self.db_path = db_path
        if initialize:
            self._init_db()

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.db_path, check_same_thread=False, timeout=BUSY_TIMEOUT_MS / 1000)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS};")
        return con

    def _init_db(self) -> None:
        with self._connect() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  version INTEGER NOT NULL
                )
                """
            )
            row = con.execute("SELECT version FROM schema_version WHERE id=1").fetchone()
            if row is None:
                con.execute("INSERT INTO schema_version (id, version) VALUES (1, ?)", (SCHEMA_VERSION,))
                version = SCHEMA_VERSION
            else:
                version = int(row["version"])

            if version < SCHEMA_VERSION:
                self._migrate(con, from_version=version, to_version=SCHEMA_VERSION)

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS fragments (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  fragment_id TEXT NOT NULL UNIQUE,
                  version INTEGER NOT NULL,
                  path TEXT NOT NULL,
                  value_json TEXT,
                  source TEXT NOT NULL,
                  ts TEXT NOT NULL,
                  is_delete INTEGER NOT NULL DEFAULT 0,
                  sequence INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_fragments_version ON fragments(version)")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS compiled (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  version INTEGER NOT NULL,
                  tree_json TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS drafts (
                  compilation_id TEXT PRIMARY KEY,
                  status TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  payload_json TEXT NOT NULL
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_drafts_status ON drafts(status, created_at)")
            con.commit()

    def _migrate(self, con: sqlite3.Connection, *, from_version: int, to_version: int) -> None:
        # v1 only; placeholder for future migrations
        con.execute("UPDATE schema_version SET version=? WHERE id=1", (to_version,))

    def ensure_schema(self) -> None:
        self._init_db()

    def get_schema_version(self) -> int:
        with self._connect() as con:
            try:
                row = con.execute("SELECT version FROM schema_version WHERE id=1").fetchone()
            except sqlite3.OperationalError:
                return 0
            return int(row["version"]) if row else 0

    # ------------------------------
    # Fragments + compiled tree
    # ------------------------------

    @staticmethod
    def _fragment_row(fragment: OverlayFragment, version: int) -> tuple:
        return (
            fragment.fragment_id,
            version,
            fragment.path,
            _dumps(fragment.value),
            fragment.source.value,
            fragment.timestamp.isoformat(),
            1 if fragment.delete else 0,
            fragment.sequence,
        )

    @staticmethod
    def _row_fragment(row: sqlite3.Row) -> OverlayFragment:
        return OverlayFragment(
            fragment_id=row["fragment_id"],
            path=row["path"],
            value=_loads(row["value_json"], None),
            source=row["source"],
            timestamp=datetime.fromisoformat(row["ts"]),
            delete=bool(row["is_delete"]),
            sequence=int(row["sequence"]),
        )

    def _insert_fragment(self, con: sqlite3.Connection, fragment: OverlayFragment, version: int) -> None:
        con.execute(
            """
            INSERT INTO fragments (fragment_id, version, path, value_json, source, ts, is_delete, sequence)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._fragment_row(fragment, version),
        )

    def _upsert_compiled(self, con: sqlite3.Connection, knowledge: CompiledKnowledge) -> None:
        con.execute(
            """
            INSERT INTO compiled (id, version, tree_json, updated_at) VALUES (1, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              version=excluded.version, tree_json=excluded.tree_json, updated_at=excluded.updated_at
            """,
            (knowledge.version, _dumps(knowledge.tree), knowledge.updated_at.isoformat()),
        )

    def save_applied_fragment(self, fragment: OverlayFragment, *, version: int) -> None:
        with self._connect() as con:
            self._insert_fragment(con, fragment, version)
            con.commit()

    def save_compiled_knowledge(self, knowledge: CompiledKnowledge) -> None:
        with self._connect() as con:
            self._upsert_compiled(con, knowledge)
            con.commit()

    def commit(self, knowledge: CompiledKnowledge, fragments: Sequence[OverlayFragment]) -> None:
        con = self._connect()
        try:
            con.execute("BEGIN IMMEDIATE")
            for fragment in fragments:
                self._insert_fragment(con, fragment, knowledge.version)
            self._upsert_compiled(con, knowledge)
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def load_latest_compiled_knowledge(self) -> Optional[CompiledKnowledge]:
        with self._connect() as con:
            row = con.execute("SELECT version, tree_json, updated_at FROM compiled WHERE id=1").fetchone()
            if row is None:
                return None
            frags = con.execute("SELECT * FROM fragments ORDER BY seq ASC").fetchall()
        return CompiledKnowledge(
            tree=_loads(row["tree_json"], {}),
            applied_fragments=[self._row_fragment(r) for r in frags],
            version=int(row["version"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def list_history(self, *, limit: int = 50, offset: int = 0) -> List[HistoryEntry]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT * FROM fragments ORDER BY seq DESC LIMIT ? OFFSET ?",
                (int(limit), int(offset)),
            ).fetchall()
        return [HistoryEntry(version=int(r["version"]), fragment=self._row_fragment(r)) for r in rows]

    # ------------------------------
    # Drafts
    # ------------------------------

    def save_draft(self, draft: CompilationResult) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO drafts (compilation_id, status, created_at, payload_json) VALUES (?, ?, ?, ?)
                ON CONFLICT(compilation_id) DO UPDATE SET
                  status=excluded.status, payload_json=excluded.payload_json
                """,
                (
                    draft.compilation_id,
                    draft.status.value,
                    draft.created_at.isoformat(),
                    _dumps(draft.model_dump(mode="json")),
                ),
            )
            con.commit()

    def get_draft(self, compilation_id: str) -> Optional[CompilationResult]:
        with self._connect() as con:
            row = con.execute(
                "SELECT payload_json FROM drafts WHERE compilation_id=?", (compilation_id,)
            ).fetchone()
        if row is None:
            return None
        return CompilationResult.model_validate(_loads(row["payload_json"], {}))

    def list_drafts(
        self, *, status: Optional[CompilationStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[CompilationResult]:
        sql = "SELECT payload_json FROM drafts"
        params: list = []
        if status is not None:
            sql += " WHERE status=?"
            params.append(CompilationStatus(status).value)
        sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
        with self._connect() as con:
            rows = con.execute(sql, params).fetchall()
        return [CompilationResult.model_validate(_loads(r["payload_json"], {})) for r in rows]
