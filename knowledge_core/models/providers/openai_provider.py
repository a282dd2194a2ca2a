# ==============================
# OpenAI Provider
# ==============================
"""
OpenAI chat-completions adapter.

Important:
- No environment reads here. Config (api key, base url, timeout) is injected.
- Without an api key the provider runs in stub mode: no network, deterministic
  placeholder content, so the rest of the engine can be exercised offline.
- Failures are returned as structured OpenAIResponse(ok=False, error=...);
  timeouts are tagged with code "timeout" so callers can map them to
  CollaboratorTimeoutError.
- No retries here. Callers decide.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field


class OpenAIRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: str = Field(..., description="Model name (router sets this)")
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    temperature: float = Field(default=0.2)
    max_tokens: Optional[int] = Field(default=None)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OpenAIResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool = Field(default=True)
    model: str = Field(...)
    content: str = Field(default="")
    usage: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = Field(default=None)
    meta: Dict[str, Any] = Field(default_factory=dict)


class OpenAIProvider:
    """
    Provider boundary for OpenAI.

    config shape (example):
{
  "api_base": "https://api.openai.com/v1",
  "api_key": "...",            # resolved by config loader
  "timeout_seconds": 30.0
}
    """

    def __init__(self, *, config: Optional[Dict[str, Any]] = None, session: Optional[requests.Session] = None) -> None:
        self.config = config or {}
        self.session = session or requests.Session()

    @property
    def is_stub(self) -> bool:
        return not self.config.get("api_key")

    def complete(self, request: OpenAIRequest) -> OpenAIResponse:
        if self.is_stub:
            return OpenAIResponse(
                ok=True,
                model=request.model,
                content=_stub_summarize(request.messages),
                usage={"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
                meta={"provider": "openai", "stub": True},
            )

        timeout = request.timeout_seconds or float(self.config.get("timeout_seconds", 30.0))
        url = str(self.config.get("api_base") or "https://api.openai.com/v1").rstrip("/") + "/chat/completions"
        headers = {"Authorization": f"Bearer {self.config['api_key']}", "Content-Type": "application/json"}
        if self.config.get("org_id"):
            headers["OpenAI-Organization"] = str(self.config["org_id"])
        body: Dict[str, Any] = {
            "model": request.model,
            "messages": request.messages,
            "temperature": request.temperature,
        }
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens

        try:
            resp = self.session.post(url, json=body, headers=headers, timeout=timeout)
        except requests.Timeout:
            return _failure(request, code="timeout", message=f"model call exceeded {timeout}s")
        except requests.RequestException as exc:
            return _failure(request, code="network_error", message=str(exc))

        if resp.status_code >= 400:
            return _failure(
                request,
                code="http_error",
                message=f"provider returned HTTP {resp.status_code}",
                details={"status": resp.status_code, "body": resp.text[:500]},
            )
        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError):
            return _failure(request, code="bad_response", message="unexpected provider payload")

        return OpenAIResponse(
            ok=True,
            model=str(data.get("model") or request.model),
            content=str(content),
            usage=data.get("usage") or {},
            meta={"provider": "openai", "stub": False},
        )


def _failure(
    request: OpenAIRequest, *, code: str, message: str, details: Optional[Dict[str, Any]] = None
) -> OpenAIResponse:
    return OpenAIResponse(
        ok=False,
        model=request.model,
        error={"code": code, "message": message, "details": details or {}},
        meta={"provider": "openai", "stub": False},
    )


def _stub_summarize(messages: List[Dict[str, Any]]) -> str:
    if not messages:
        return "OpenAIProvider stub: no messages provided."
    last = messages[-1]
    role = str(last.get("role", "user"))
    content = str(last.get("content", "")).strip()
    if len(content) > 400:
        content = content[:400] + "…"
    return f"OpenAIProvider stub ({role}): {content}"
