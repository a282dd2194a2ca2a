# ==============================
# Testing Fixtures
# ==============================
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from knowledge_core.knowledge.sources import SourceAggregator, StaticEntitySource
from knowledge_core.logging.metrics import Metrics
from knowledge_core.memory.in_memory import InMemoryBackend
from knowledge_core.models.router import ModelRouter
from knowledge_core.orchestrator.compiler import CompilationOrchestrator
from knowledge_core.orchestrator.knowledge_base import KnowledgeBase
from knowledge_core.orchestrator.review import DraftReview
from knowledge_core.query.engine import KnowledgeQueryEngine
from gateway.api.http_app import create_app
from gateway.api import deps as gateway_deps

Reply = Union[str, Exception, Callable[[str], str]]


class ScriptedModel:
    """
    Deterministic stand-in for the text-generation collaborator.
    Replies are consumed in order; an Exception reply is raised, a callable
    reply receives the prompt.
    """

    def __init__(self) -> None:
        self.replies: List[Reply] = []
        self.prompts: List[str] = []

    def queue(self, *replies: Reply) -> "ScriptedModel":
        self.replies.extend(replies)
        return self

    def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply: Reply = self.replies.pop(0) if self.replies else "{}"
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply

    @property
    def calls(self) -> int:
        return len(self.prompts)


def compiled_reply(
    tree: Dict[str, Any],
    *,
    summary: str = "compiled",
    conflicts: Optional[List[Dict[str, Any]]] = None,
    enhancements: Optional[List[Dict[str, Any]]] = None,
) -> str:
    return json.dumps(
        {
            "summary": summary,
            "conflicts": conflicts or [],
            "enhancements": enhancements or [],
            "compiledKnowledge": tree,
        }
    )


@pytest.fixture
def metrics() -> Metrics:
    return Metrics()


@pytest.fixture
def memory_backend() -> InMemoryBackend:
    """In-memory knowledge backend for deterministic persistence during tests."""
    return InMemoryBackend()


@pytest.fixture
def entity_source() -> StaticEntitySource:
    return StaticEntitySource(
        {
            "speakers": [{"name": "Ada Lovelace", "topic": "Analytical engines"}],
            "sponsors": [{"name": "Bank Nusantara", "tier": "gold"}],
        }
    )


@pytest.fixture
def kb(memory_backend: InMemoryBackend, metrics: Metrics) -> KnowledgeBase:
    return KnowledgeBase(store=memory_backend, metrics=metrics)


@pytest.fixture
def kb_with_entities(memory_backend: InMemoryBackend, metrics: Metrics, entity_source: StaticEntitySource) -> KnowledgeBase:
    return KnowledgeBase(
        store=memory_backend,
        aggregator=SourceAggregator(entities=entity_source, metrics=metrics),
        metrics=metrics,
    )


@pytest.fixture
def scripted_model() -> ScriptedModel:
    return ScriptedModel()


@pytest.fixture
def model_router(scripted_model: ScriptedModel, metrics: Metrics) -> ModelRouter:
    return ModelRouter.from_callable(scripted_model, timeout_seconds=2.0, metrics=metrics)


@pytest.fixture
def compiler(kb: KnowledgeBase, model_router: ModelRouter) -> CompilationOrchestrator:
    return CompilationOrchestrator(kb=kb, model=model_router)


@pytest.fixture
def review(kb: KnowledgeBase) -> DraftReview:
    return DraftReview(kb=kb)


@pytest.fixture
def query_engine(kb: KnowledgeBase, model_router: ModelRouter) -> KnowledgeQueryEngine:
    return KnowledgeQueryEngine(kb=kb, model=model_router)


def _reset_deps() -> None:
    gateway_deps.get_settings.cache_clear()
    gateway_deps.get_metrics.cache_clear()
    gateway_deps.get_store.cache_clear()
    gateway_deps.get_model_router.cache_clear()
    gateway_deps.get_knowledge_base.cache_clear()
    gateway_deps.get_compiler.cache_clear()
    gateway_deps.get_review.cache_clear()
    gateway_deps.get_query_engine.cache_clear()


@pytest.fixture
def app_client(
    kb: KnowledgeBase,
    compiler: CompilationOrchestrator,
    review: DraftReview,
    query_engine: KnowledgeQueryEngine,
    metrics: Metrics,
) -> TestClient:
    """FastAPI test client wired to the in-memory engine and scripted model."""
    _reset_deps()
    app = create_app()
    app.dependency_overrides[gateway_deps.get_knowledge_base] = lambda: kb
    app.dependency_overrides[gateway_deps.get_compiler] = lambda: compiler
    app.dependency_overrides[gateway_deps.get_review] = lambda: review
    app.dependency_overrides[gateway_deps.get_query_engine] = lambda: query_engine
    app.dependency_overrides[gateway_deps.get_metrics] = lambda: metrics
    client = TestClient(app)
    yield client
    client.close()
    _reset_deps()
