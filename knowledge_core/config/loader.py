# ==============================
# Config Loader (only env reader)
# ==============================
"""
Config loader for the knowledge engine.

Rules:
- This is the ONLY place allowed to read os.environ and .env.
- This is the ONLY place allowed to read secrets/secrets.yaml.
- Everything else receives a validated Settings object.

Precedence:
env > .env > secrets/secrets.yaml > configs/*.yaml > defaults

Testability:
- All functions accept injected paths and env dict.
- No hardcoded absolute paths.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from knowledge_core.config.schema import Settings

ENV_PREFIX = "KNOWLEDGE__"
CONFIG_SECTIONS = ("app", "models", "knowledge", "logging")


# ==============================
# YAML Helpers
# ==============================


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        return {}
    data = yaml.safe_load(raw)
    return data if isinstance(data, dict) else {}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep-merge dictionaries: override wins.
    """
    out: Dict[str, Any] = dict(base)
    for k, v in override.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    """
    configs/<name>.yaml may either hold the section body directly or wrap it
    under a top-level <name>: key.
    """
    inner = data.get(name)
    if isinstance(inner, dict) and len(data) == 1:
        return inner
    return data


# ==============================
# .env Loader
# ==============================


def _read_dotenv(dotenv_path: Path) -> Dict[str, str]:
    """
    Minimal .env parser (KEY=VALUE).
    - Ignores comments and blank lines.
    - Strips surrounding quotes.
    """
    if not dotenv_path.exists():
        return {}
    envs: Dict[str, str] = {}
    for line in dotenv_path.read_text(encoding="utf-8").splitlines():
        s = line.strip()
        if not s or s.startswith("#") or "=" not in s:
            continue
        key, val = s.split("=", 1)
        key = key.strip()
        val = val.strip().strip('"').strip("'")
        if key:
            envs[key] = val
    return envs


def _coerce(v: str) -> Any:
    vs = v.strip()
    if vs.lower() in {"true", "false"}:
        return vs.lower() == "true"
    if vs.isdigit() or (vs.startswith("-") and vs[1:].isdigit()):
        return int(vs)
    if "." in vs:
        try:
            return float(vs)
        except ValueError:
            pass
    return vs


def _apply_env_overrides(cfg: Dict[str, Any], env: Dict[str, str]) -> Dict[str, Any]:
    """
    Apply environment overrides with KNOWLEDGE__ style nesting.

    Example:
      KNOWLEDGE__APP__PORT=8001
      KNOWLEDGE__KNOWLEDGE__WRITER_WAIT_SECONDS=0.5
      KNOWLEDGE__MODELS__OPENAI__TIMEOUT_SECONDS=10
      KNOWLEDGE__SECRETS__OPENAI_API_KEY=...

    Rules:
    - Split by '__' after the prefix
    - Lowercase keys for dict insertion
    - Coerce booleans/ints/floats when obvious
    """
    out = dict(cfg)
    for k, v in env.items():
        if not k.startswith(ENV_PREFIX):
            continue
        path = k[len(ENV_PREFIX) :].split("__")
        if not path or any(not p for p in path):
            continue
        cur: Dict[str, Any] = out
        for i, seg in enumerate(path):
            key = seg.lower()
            if i == len(path) - 1:
                cur[key] = _coerce(v)
            else:
                nxt = cur.get(key)
                if not isinstance(nxt, dict):
                    nxt = {}
                else:
                    nxt = dict(nxt)
                cur[key] = nxt
                cur = nxt
    return out


# ==============================
# Public Loader API
# ==============================


def load_settings(
    *,
    repo_root: Optional[str] = None,
    configs_dir: Optional[str] = None,
    secrets_file: Optional[str] = None,
    dotenv_file: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> Settings:
    """
    Load and validate Settings.

    Inputs:
    - repo_root: defaults to current working directory
    - configs_dir: defaults to <repo_root>/configs
    - secrets_file: defaults to <repo_root>/secrets/secrets.yaml
    - dotenv_file: defaults to <repo_root>/.env
    - env: injected env vars (defaults to os.environ)
    """
    env_vars = dict(env) if env is not None else dict(os.environ)

    root = Path(repo_root or os.getcwd()).expanduser().resolve()
    cfg_dir = root / (configs_dir or "configs")

    merged: Dict[str, Any] = {}
    for name in CONFIG_SECTIONS:
        merged = _deep_merge(merged, {name: _section(_read_yaml(cfg_dir / f"{name}.yaml"), name)})

    # secrets.yaml (optional)
    sec_path = Path(secrets_file) if secrets_file else (root / "secrets" / "secrets.yaml")
    merged = _deep_merge(merged, {"secrets": _section(_read_yaml(sec_path), "secrets")})

    # .env (optional); real env wins over .env
    dotenv_path = Path(dotenv_file) if dotenv_file else (root / ".env")
    effective_env = dict(env_vars)
    for k, v in _read_dotenv(dotenv_path).items():
        effective_env.setdefault(k, v)

    merged = _apply_env_overrides(merged, effective_env)

    # repo_root is set deterministically unless an override points elsewhere
    paths = merged.get("app", {}).get("paths", {}) if isinstance(merged.get("app"), dict) else {}
    if not paths.get("repo_root"):
        merged = _deep_merge(merged, {"app": {"paths": {"repo_root": str(root)}}})

    try:
        settings = Settings.model_validate(merged)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e

    return _hydrate_provider_secrets(settings)


def _hydrate_provider_secrets(settings: Settings) -> Settings:
    """
    Map secrets into provider configs without breaking precedence.
    """
    if settings.models.openai.api_key or not settings.secrets.openai_api_key:
        return settings
    openai = settings.models.openai.model_copy(update={"api_key": settings.secrets.openai_api_key})
    models = settings.models.model_copy(update={"openai": openai})
    return settings.model_copy(update={"models": models})
