# ==============================
# Tests: Model Router + Redaction
# ==============================
from __future__ import annotations

import logging
from typing import Any, Dict

import pytest

from knowledge_core.config.schema import Settings
from knowledge_core.contracts.errors import CollaboratorError, CollaboratorTimeoutError
from knowledge_core.governance.security import SecurityRedactor
from knowledge_core.logging.metrics import Metrics
from knowledge_core.models.providers.openai_provider import OpenAIProvider, OpenAIRequest, OpenAIResponse
from knowledge_core.models.router import ModelRouter


class _FailingProvider:
    def __init__(self, error: Dict[str, Any]) -> None:
        self.error = error

    def complete(self, request: OpenAIRequest) -> OpenAIResponse:
        return OpenAIResponse(ok=False, model=request.model, error=self.error)


def test_select_uses_purpose_overrides() -> None:
    router = ModelRouter(config={"default_model": "base", "compile_model": "big", "query_model": None})
    assert router.select(purpose="compile").model == "big"
    assert router.select(purpose="smart_entry").model == "big"
    assert router.select(purpose="query").model == "base"
    assert router.select(purpose="query", override_model="other").model == "other"


def test_stub_provider_without_api_key() -> None:
    router = ModelRouter.from_settings(Settings())
    text = router.complete_text("hello there", purpose="query")
    assert isinstance(text, str)
    assert OpenAIProvider(config={}).is_stub


@pytest.mark.parametrize(
    "error,expected",
    [
        ({"code": "timeout", "message": "slow"}, CollaboratorTimeoutError),
        ({"code": "http_error", "message": "500"}, CollaboratorError),
    ],
)
def test_provider_errors_are_typed(error: Dict[str, Any], expected) -> None:
    router = ModelRouter(providers={"openai": _FailingProvider(error)})
    with pytest.raises(expected):
        router.complete_text("x", purpose="compile")


def test_latency_is_recorded() -> None:
    metrics = Metrics()
    router = ModelRouter.from_callable(lambda prompt: "ok", metrics=metrics)
    assert router.complete_text("x", purpose="query") == "ok"
    assert len(metrics.snapshot()["timers_ms"]["model.latency_ms"]) == 1


def test_redactor_masks_secrets_and_sensitive_keys() -> None:
    redactor = SecurityRedactor()
    text = redactor.redact_text("key sk-abcdefghijklmnopqrstuvwxyz mail ops@messe.example")
    assert "sk-abcdefghijklmnopqrstuvwxyz" not in text
    assert "ops@messe.example" not in text
    assert redactor.redact_dict({"contact": {"password": "hunter2", "name": "Ops"}}) == {
        "contact": {"password": "[REDACTED]", "name": "Ops"}
    }


def test_logged_prompts_are_redacted(caplog) -> None:
    router = ModelRouter.from_callable(lambda prompt: "ok")
    router.log_prompts = True
    caplog.set_level(logging.DEBUG, logger="knowledge.models")
    router.complete_text("api_key=sk-secretsecretsecretsecret123", purpose="compile")
    assert "sk-secretsecretsecretsecret123" not in caplog.text


class _FakeResponse:
    def __init__(self, status_code: int, payload: Dict[str, Any]) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self) -> Dict[str, Any]:
        return self._payload


class _RecordingSession:
    def __init__(self, response: _FakeResponse) -> None:
        self.response = response
        self.calls = []

    def post(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.calls.append((url, kwargs))
        return self.response


def test_openai_provider_sends_auth_headers() -> None:
    session = _RecordingSession(
        _FakeResponse(200, {"model": "gpt-4o-mini", "choices": [{"message": {"content": "hi"}}]})
    )
    provider = OpenAIProvider(
        config={"api_key": "sk-test", "org_id": "org-1", "api_base": "https://llm.example/v1/"}, session=session
    )
    resp = provider.complete(OpenAIRequest(model="gpt-4o-mini", messages=[{"role": "user", "content": "x"}]))

    assert resp.ok is True
    assert resp.content == "hi"
    url, kwargs = session.calls[0]
    assert url == "https://llm.example/v1/chat/completions"
    assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
    assert kwargs["headers"]["OpenAI-Organization"] == "org-1"


def test_openai_provider_maps_http_errors() -> None:
    provider = OpenAIProvider(config={"api_key": "sk-test"}, session=_RecordingSession(_FakeResponse(503, {})))
    resp = provider.complete(OpenAIRequest(model="m", messages=[]))
    assert resp.ok is False
    assert resp.error["code"] == "http_error"
