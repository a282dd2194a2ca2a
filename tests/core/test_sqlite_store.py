# ==============================
# Tests: Knowledge Store (SQLite Backend)
# ==============================
from __future__ import annotations

import sqlite3
import threading

from knowledge_core.config.schema import Settings
from knowledge_core.contracts.knowledge_schema import CompilationResult, CompilationStatus
from knowledge_core.memory.router import KnowledgeStore
from knowledge_core.memory.sqlite_backend import SCHEMA_VERSION, SQLiteBackend
from knowledge_core.orchestrator.knowledge_base import KnowledgeBase


def test_sqlite_backend_schema_idempotent(tmp_path) -> None:
    db_path = tmp_path / "schema.sqlite"
    backend = SQLiteBackend(db_path=str(db_path))
    backend.ensure_schema()
    backend.ensure_schema()
    assert backend.get_schema_version() == SCHEMA_VERSION
    assert backend.load_latest_compiled_knowledge() is None


def test_sqlite_backend_uses_wal(tmp_path) -> None:
    db_path = tmp_path / "wal.sqlite"
    SQLiteBackend(db_path=str(db_path))
    con = sqlite3.connect(str(db_path))
    try:
        mode = con.execute("PRAGMA journal_mode;").fetchone()[0]
    finally:
        con.close()
    assert str(mode).lower() == "wal"


def test_knowledge_survives_restart(tmp_path) -> None:
    db_path = str(tmp_path / "knowledge.sqlite")
    kb = KnowledgeBase(store=SQLiteBackend(db_path=db_path))
    kb.put("event.location", "JCC")
    kb.put("event", {"date": "2026-05-01"})
    kb.delete("event.location")

    reopened = KnowledgeBase(store=SQLiteBackend(db_path=db_path))
    assert reopened.version == 3
    assert reopened.snapshot().tree == {"event": {"date": "2026-05-01"}}
    assert [f.delete for f in reopened.snapshot().applied_fragments] == [False, False, True]
    assert [e.version for e in reopened.history(limit=2)] == [3, 2]


def test_drafts_upsert_and_filter(tmp_path) -> None:
    backend = SQLiteBackend(db_path=str(tmp_path / "drafts.sqlite"))
    draft = CompilationResult(status=CompilationStatus.PENDING_REVIEW, compiled_knowledge={"event": {"x": 1}})
    backend.save_draft(draft)
    backend.save_draft(draft.model_copy(update={"status": CompilationStatus.APPLIED, "applied_version": 4}))

    loaded = backend.get_draft(draft.compilation_id)
    assert loaded.status == CompilationStatus.APPLIED
    assert loaded.applied_version == 4
    assert loaded.compiled_knowledge == {"event": {"x": 1}}
    assert backend.list_drafts(status=CompilationStatus.PENDING_REVIEW) == []
    assert len(backend.list_drafts()) == 1
    assert backend.get_draft("cmp_missing") is None


def test_store_from_settings_uses_configured_path(tmp_path) -> None:
    settings = Settings.model_validate(
        {
            "app": {"paths": {"repo_root": str(tmp_path), "storage_dir": "storage"}},
            "secrets": {"knowledge_db_path": "db/custom.sqlite"},
        }
    )
    store = KnowledgeStore.from_settings(settings)
    store.save_draft(CompilationResult())
    assert (tmp_path / "db" / "custom.sqlite").exists()
    assert (tmp_path / "storage" / "knowledge").is_dir()


def test_concurrent_applies_never_lose_versions(tmp_path) -> None:
    kb = KnowledgeBase(store=SQLiteBackend(db_path=str(tmp_path / "race.sqlite")), writer_wait_seconds=5.0)
    thread_count = 6
    barrier = threading.Barrier(thread_count)
    errors = []

    def worker(idx: int) -> None:
        try:
            barrier.wait()
            kb.put(f"counters.w{idx}", idx)
        except Exception as exc:  # pragma: no cover - failure path
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(thread_count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert not errors, f"Concurrent applies raised errors: {errors}"
    assert kb.version == thread_count
    assert sorted(kb.get("counters")) == sorted(f"w{i}" for i in range(thread_count))
    assert KnowledgeBase(store=SQLiteBackend(db_path=str(tmp_path / "race.sqlite"))).version == thread_count
