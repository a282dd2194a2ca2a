# ==============================
# Integration fixtures
# ==============================
from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture
def knowledge_test_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """
    Shared env fixture for integration tests that rely on the sqlite-backed store.

    Points storage and the knowledge database at tmp_path so every test starts
    from an empty overlay at version 0.
    """
    repo_root = Path(__file__).resolve().parents[2]
    storage_dir = tmp_path / "storage"
    sqlite_path = tmp_path / "integration.sqlite"

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("KNOWLEDGE__APP__PATHS__REPO_ROOT", repo_root.as_posix())
    monkeypatch.setenv("KNOWLEDGE__APP__PATHS__STORAGE_DIR", storage_dir.as_posix())
    monkeypatch.setenv("KNOWLEDGE__SECRETS__KNOWLEDGE_DB_PATH", sqlite_path.as_posix())
    monkeypatch.setenv("KNOWLEDGE__LOGGING__CONSOLE", "false")
    monkeypatch.delenv("KNOWLEDGE__SECRETS__OPENAI_API_KEY", raising=False)

    return sqlite_path
