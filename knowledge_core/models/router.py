# ==============================
# Model Router
# ==============================
"""
Single boundary to the text-generation collaborator.

Goals:
- Centralize model selection per purpose (compile / query / smart_entry).
- Avoid vendor-specific imports outside providers/.
- No env reads here. Configuration is injected by the caller.
- Every call carries an explicit deadline. The deadline is enforced here as
  well as in the provider, so an injected provider that hangs still surfaces
  as CollaboratorTimeoutError.
- Typed failures: CollaboratorTimeoutError / CollaboratorError. No retries.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from knowledge_core.config.schema import Settings
from knowledge_core.contracts.errors import CollaboratorError, CollaboratorTimeoutError
from knowledge_core.governance.security import SecurityRedactor
from knowledge_core.logging.metrics import Metrics
from knowledge_core.models.providers.openai_provider import OpenAIProvider, OpenAIRequest, OpenAIResponse

logger = logging.getLogger("knowledge.models")

_CALL_POOL = ThreadPoolExecutor(max_workers=4, thread_name_prefix="model-call")


class CallableProvider:
    """Adapts a plain callable(prompt) -> str to the provider interface."""

    def __init__(self, fn: Callable[[str], str]) -> None:
        self.fn = fn

    def complete(self, request: OpenAIRequest) -> OpenAIResponse:
        prompt = str(request.messages[-1].get("content", "")) if request.messages else ""
        return OpenAIResponse(ok=True, model=request.model, content=str(self.fn(prompt)), meta={"provider": "callable"})


@dataclass(frozen=True)
class ModelSelection:
    provider: str
    model: str
    temperature: float


class ModelRouter:
    """
    Config shape (ModelRoutingConfig):
{
  "default_provider": "openai",
  "default_model": "gpt-4o-mini",
  "compile_model": "gpt-4o",
  "query_model": null
}
    """

    def __init__(
        self,
        *,
        config: Optional[Dict[str, Any]] = None,
        providers: Optional[Dict[str, Any]] = None,
        timeout_seconds: float = 30.0,
        redactor: Optional[SecurityRedactor] = None,
        log_prompts: bool = False,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.config = config or {}
        self.providers = providers or {"openai": OpenAIProvider(config=self.config.get("openai", {}))}
        self.timeout_seconds = timeout_seconds
        self.redactor = redactor or SecurityRedactor()
        self.log_prompts = log_prompts
        self.metrics = metrics

    @classmethod
    def from_settings(cls, settings: Settings, *, metrics: Optional[Metrics] = None) -> "ModelRouter":
        config = settings.models.routing.model_dump()
        provider = OpenAIProvider(config=settings.models.openai.model_dump())
        return cls(
            config=config,
            providers={"openai": provider},
            timeout_seconds=settings.models.openai.timeout_seconds,
            redactor=SecurityRedactor.from_settings(settings),
            log_prompts=settings.logging.log_prompts,
            metrics=metrics,
        )

    @classmethod
    def from_callable(
        cls, fn: Callable[[str], str], *, timeout_seconds: float = 30.0, metrics: Optional[Metrics] = None
    ) -> "ModelRouter":
        return cls(providers={"openai": CallableProvider(fn)}, timeout_seconds=timeout_seconds, metrics=metrics)

    def select(self, *, purpose: str, override_model: Optional[str] = None) -> ModelSelection:
        provider = str(self.config.get("default_provider", "openai"))
        model = str(self.config.get("default_model", "gpt-4o-mini"))
        temperature = 0.2
        if purpose in ("compile", "smart_entry"):
            model = str(self.config.get("compile_model") or model)
            temperature = float(self.config.get("compile_temperature", 0.3))
        elif purpose == "query":
            model = str(self.config.get("query_model") or model)
            temperature = float(self.config.get("query_temperature", 0.2))
        if override_model:
            model = override_model
        return ModelSelection(provider=provider, model=model, temperature=temperature)

    def complete_text(
        self,
        prompt: str,
        *,
        purpose: str,
        system: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        override_model: Optional[str] = None,
    ) -> str:
        sel = self.select(purpose=purpose, override_model=override_model)
        provider = self._get_provider(sel.provider)
        timeout = float(timeout_seconds or self.timeout_seconds)

        messages: List[Dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        request = OpenAIRequest(
            model=sel.model,
            messages=messages,
            temperature=sel.temperature,
            max_tokens=self.config.get("max_tokens"),
            timeout_seconds=timeout,
            metadata={"purpose": purpose},
        )
        if self.log_prompts:
            logger.debug("model prompt: %s", self.redactor.redact_text(prompt))

        resp = self._call(provider, request, timeout=timeout, purpose=purpose)
        if not resp.ok:
            error = resp.error or {}
            code = str(error.get("code") or "")
            message = str(error.get("message") or "model_error")
            logger.warning("model call failed: %s", message, extra={"status": code or "error"})
            if code == "timeout":
                raise CollaboratorTimeoutError(message, details={"purpose": purpose, "timeout_seconds": timeout})
            raise CollaboratorError(message, details={"purpose": purpose, "error": error})
        return resp.content

    def _call(self, provider: Any, request: OpenAIRequest, *, timeout: float, purpose: str) -> OpenAIResponse:
        timer = self.metrics.start_timer("model.latency_ms") if self.metrics is not None else None
        future = _CALL_POOL.submit(provider.complete, request)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise CollaboratorTimeoutError(
                f"model call exceeded {timeout}s", details={"purpose": purpose, "timeout_seconds": timeout}
            ) from exc
        except (CollaboratorError, CollaboratorTimeoutError):
            raise
        except Exception as exc:
            raise CollaboratorError(f"model provider raised: {exc}", details={"purpose": purpose}) from exc
        finally:
            if timer is not None:
                self.metrics.stop_timer(timer)

    def _get_provider(self, name: str) -> Any:
        p = self.providers.get(name)
        if p is None:
            raise KeyError(f"Unknown model provider: {name}")
        return p
