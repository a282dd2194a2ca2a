# ==============================
# Security & Redaction
# ==============================
"""
Redaction helpers for anything that leaves the engine as a log line.

Prompts sent to the text-generation collaborator embed the whole overlay,
which may contain contact details or credentials an administrator pasted in.
When prompt logging is enabled, prompts are scrubbed here first.

Scope:
- Practical regex-based redaction + key-based redaction (password, token, ...).
- Not a PII detector.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Pattern

from knowledge_core.config.schema import Settings

DEFAULT_KEY_HINTS: List[str] = [
    "password",
    "passwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "cookie",
    "private_key",
]

DEFAULT_PATTERNS: List[str] = [
    r"sk-[A-Za-z0-9_-]{20,}",
    r"(?i)api[_-]?key\s*[:=]\s*\S+",
    r"(?i)authorization\s*:\s*bearer\s+\S+",
    r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}",
]


def _compile(patterns: Iterable[str]) -> List[Pattern[str]]:
    compiled: List[Pattern[str]] = []
    for p in patterns:
        try:
            compiled.append(re.compile(p))
        except re.error:
            # invalid user patterns are ignored, defaults still apply
            continue
    return compiled


class SecurityRedactor:
    def __init__(
        self,
        *,
        patterns: Optional[List[str]] = None,
        key_hints: Optional[List[str]] = None,
        mask: str = "[REDACTED]",
        enabled: bool = True,
    ) -> None:
        self.mask = mask
        self.enabled = enabled
        self.key_hints = [k.lower() for k in (key_hints or DEFAULT_KEY_HINTS)]
        self.patterns = _compile(list(DEFAULT_PATTERNS) + list(patterns or []))

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecurityRedactor":
        return cls(patterns=settings.logging.redact_patterns, enabled=settings.logging.redact)

    def redact_text(self, text: str) -> str:
        if not self.enabled:
            return text
        out = text
        for p in self.patterns:
            out = p.sub(self.mask, out)
        return out

    def redact_dict(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._redact_any(obj)

    def _redact_any(self, x: Any) -> Any:
        if not self.enabled or x is None or isinstance(x, (bool, int, float)):
            return x
        if isinstance(x, str):
            return self.redact_text(x)
        if isinstance(x, (list, tuple)):
            return [self._redact_any(i) for i in x]
        if isinstance(x, dict):
            out: Dict[str, Any] = {}
            for k, v in x.items():
                if any(h in str(k).lower() for h in self.key_hints):
                    out[k] = self.mask
                else:
                    out[k] = self._redact_any(v)
            return out
        return self.redact_text(str(x))
