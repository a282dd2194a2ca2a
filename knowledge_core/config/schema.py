# ==============================
# Config Schemas (Pydantic)
# ==============================
"""
Pydantic settings models for the knowledge engine.

Notes:
- Keep these schemas stable: many modules will depend on them.
- No env reads here. No file IO here. Pure types + defaults.
- loader.py builds a single Settings object with precedence merging.

Precedence (implemented in loader.py):
env > .env > secrets/secrets.yaml > configs/*.yaml > defaults
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ==============================
# App Settings
# ==============================


class PathsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    repo_root: str = Field(default=".", description="Repo root (relative or absolute)")
    configs_dir: str = Field(default="configs", description="Configs directory")
    secrets_dir: str = Field(default="secrets", description="Secrets directory")
    storage_dir: str = Field(default="storage", description="Runtime storage directory")


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    env: str = Field(default="local", description="Environment name (local/stage/prod)")
    debug: bool = Field(default=False)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    event_name: str = Field(default="Paguyuban Messe 2026", description="Used in prompts and answers.")
    paths: PathsConfig = Field(default_factory=PathsConfig)


# ==============================
# Models Settings
# ==============================


class OpenAIConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_base: str = Field(default="https://api.openai.com/v1")
    api_key: Optional[str] = Field(default=None, description="Resolved via loader from env/secrets only")
    org_id: Optional[str] = Field(default=None, description="Optional OpenAI org id")
    timeout_seconds: float = Field(default=30.0, gt=0)


class ModelRoutingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_provider: str = Field(default="openai")
    default_model: str = Field(default="gpt-4o-mini")
    compile_model: Optional[str] = Field(default=None, description="Override for compilation passes")
    query_model: Optional[str] = Field(default=None, description="Override for question answering")
    compile_temperature: float = Field(default=0.3)
    query_temperature: float = Field(default=0.2)
    max_tokens: int = Field(default=2000)


class ModelsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    routing: ModelRoutingConfig = Field(default_factory=ModelRoutingConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)


# ==============================
# Knowledge Settings
# ==============================


class KnowledgeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_sources: int = Field(default=5, ge=1, le=20)
    writer_wait_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="How long a writer waits for the lock before ConcurrentModificationError.",
    )
    null_deletes: bool = Field(
        default=True,
        description="Treat a JSON null value from the admin editor or CSV as a subtree delete.",
    )
    entities_file: Optional[str] = Field(default=None, description="YAML export of entity collections")
    auto_apply_modes: List[str] = Field(default_factory=lambda: ["replace", "merge"])
    prompt_max_chars: int = Field(default=60000, description="Upper bound for serialized trees in prompts")


# ==============================
# Logging Settings
# ==============================


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = Field(default="INFO")
    redact: bool = Field(default=True)
    redact_patterns: List[str] = Field(default_factory=list)
    log_prompts: bool = Field(default=False, description="Log redacted prompts at DEBUG level")
    console: bool = Field(default=True)


# ==============================
# Secrets Settings
# ==============================


class SecretsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    openai_api_key: Optional[str] = Field(default=None)
    knowledge_db_path: Optional[str] = Field(default=None)


# ==============================
# Top-Level Settings
# ==============================


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    app: AppConfig = Field(default_factory=AppConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    knowledge: KnowledgeConfig = Field(default_factory=KnowledgeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)

    def repo_root_path(self) -> Path:
        return Path(self.app.paths.repo_root).expanduser().resolve()

    def resolve_path(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else (self.repo_root_path() / path)
