# ==============================
# Payload Utilities (Pure Helpers)
# ==============================
"""
Helpers for turning collaborator text into JSON and back.

Rules:
- Pure utilities only. No model calls. No persistence.
- Stable JSON (sorted keys) wherever output feeds a prompt, so equal inputs
  produce byte-identical prompts.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def safe_json_loads(text: str, *, default: Optional[Any] = None) -> Any:
    """
    Best-effort JSON parse.
    Returns default on failure (default=None).
    """
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return default


def extract_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Pull the outermost {...} block out of free text (models like to wrap JSON
    in prose or code fences). Returns None when no object can be parsed.
    """
    if not text:
        return None
    direct = safe_json_loads(text.strip())
    if isinstance(direct, dict):
        return direct
    match = _OBJECT_RE.search(text)
    if not match:
        return None
    parsed = safe_json_loads(match.group(0))
    return parsed if isinstance(parsed, dict) else None


def stable_json(value: Any, *, indent: Optional[int] = 2) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, indent=indent, default=str)


def coerce_str(x: Any, *, default: str = "") -> str:
    if x is None:
        return default
    return x if isinstance(x, str) else stable_json(x, indent=None)


def shorten(text: str, *, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."
