# ==============================
# API Dependencies / Singletons
# ==============================
from __future__ import annotations

from functools import lru_cache

from knowledge_core.config.loader import load_settings
from knowledge_core.config.schema import Settings
from knowledge_core.logging.metrics import Metrics
from knowledge_core.memory.router import KnowledgeStore
from knowledge_core.models.router import ModelRouter
from knowledge_core.orchestrator.compiler import CompilationOrchestrator
from knowledge_core.orchestrator.knowledge_base import KnowledgeBase
from knowledge_core.orchestrator.review import DraftReview
from knowledge_core.query.engine import KnowledgeQueryEngine


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


@lru_cache(maxsize=1)
def get_metrics() -> Metrics:
    return Metrics()


@lru_cache(maxsize=1)
def get_store() -> KnowledgeStore:
    return KnowledgeStore.from_settings(get_settings())


@lru_cache(maxsize=1)
def get_model_router() -> ModelRouter:
    return ModelRouter.from_settings(get_settings(), metrics=get_metrics())


@lru_cache(maxsize=1)
def get_knowledge_base() -> KnowledgeBase:
    return KnowledgeBase.from_settings(get_settings(), store=get_store(), metrics=get_metrics())


@lru_cache(maxsize=1)
def get_compiler() -> CompilationOrchestrator:
    return CompilationOrchestrator.from_settings(get_settings(), kb=get_knowledge_base(), model=get_model_router())


@lru_cache(maxsize=1)
def get_review() -> DraftReview:
    return DraftReview(kb=get_knowledge_base())


@lru_cache(maxsize=1)
def get_query_engine() -> KnowledgeQueryEngine:
    return KnowledgeQueryEngine.from_settings(get_settings(), kb=get_knowledge_base(), model=get_model_router())
