# ==============================
# FastAPI App Factory
# ==============================
from __future__ import annotations

from fastapi import FastAPI

from gateway.api.deps import get_settings
from gateway.api.routes_knowledge import router as knowledge_router
from knowledge_core.logging.logger import bootstrap_logger


def create_app() -> FastAPI:
    bootstrap_logger(get_settings())
    app = FastAPI(title="messe-knowledge", version="0.1.0")
    app.include_router(knowledge_router, prefix="/api")
    return app
