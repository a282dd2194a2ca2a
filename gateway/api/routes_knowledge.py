# ==============================
# Knowledge Admin & Query Routes
# ==============================
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from knowledge_core.contracts.errors import InvalidCompilationOutputError, KnowledgeError
from knowledge_core.contracts.knowledge_schema import (
    CompilationRequest,
    CompilationStatus,
    QueryRequest,
)
from knowledge_core.knowledge.csv_import import import_csv
from knowledge_core.knowledge.paths import MISSING
from knowledge_core.knowledge.versioning import diff_versions, restore_version
from knowledge_core.logging.metrics import Metrics
from knowledge_core.orchestrator.compiler import CompilationOrchestrator, fragments_from_knowledge
from knowledge_core.orchestrator.knowledge_base import KnowledgeBase
from knowledge_core.orchestrator.review import DraftReview
from knowledge_core.query.engine import KnowledgeQueryEngine
from gateway.api.deps import get_compiler, get_knowledge_base, get_metrics, get_query_engine, get_review

router = APIRouter()

ERROR_STATUS: Dict[str, int] = {
    "invalid_path": status.HTTP_400_BAD_REQUEST,
    "invalid_output": status.HTTP_400_BAD_REQUEST,
    "invalid_state": status.HTTP_400_BAD_REQUEST,
    "invalid_csv": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "concurrent_modification": status.HTTP_409_CONFLICT,
    "collaborator_error": status.HTTP_502_BAD_GATEWAY,
    "source_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "collaborator_timeout": status.HTTP_504_GATEWAY_TIMEOUT,
}


class KnowledgeUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: Optional[str] = Field(default=None, description="Dot path; omit together with overlay to replace it.")
    value: Any = Field(default=None)
    delete: bool = Field(default=False)
    overlay: Optional[Dict[str, Any]] = Field(default=None, description="Whole overlay replacement.")


class CsvUploadRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    content: str = Field(..., min_length=1, description="CSV text: path,value rows")
    all_or_nothing: bool = Field(default=False, alias="allOrNothing")


class SmartEntryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = Field(..., min_length=1)


class ReviewRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reviewer: Optional[str] = Field(default=None)
    comment: Optional[str] = Field(default=None)


def _ok(data: Dict[str, Any], *, meta: Dict[str, Any] | None = None) -> Dict[str, Any]:
    return {"ok": True, "data": data, "error": None, "meta": meta or {}}


def _error(
    *,
    http_status: int,
    code: str,
    message: str,
    details: Dict[str, Any] | None = None,
    meta: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    payload = {
        "ok": False,
        "data": None,
        "error": {"code": code, "message": message, "details": details or {}},
        "meta": meta or {},
    }
    raise HTTPException(status_code=http_status, detail=payload)


@contextmanager
def _engine_errors(meta: Dict[str, Any] | None = None) -> Iterator[None]:
    try:
        yield
    except KnowledgeError as exc:
        _error(
            http_status=ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
            code=exc.code,
            message=exc.message,
            details=exc.details,
            meta=meta,
        )


def _knowledge_view(kb: KnowledgeBase) -> Dict[str, Any]:
    snap = kb.snapshot()
    tree, report = kb.live_report(snap)
    return {
        "version": snap.version,
        "updatedAt": snap.updated_at.isoformat(),
        "knowledge": tree,
        "overlay": snap.tree,
        "degraded": report.degraded,
    }


# ------------------------------
# Overlay
# ------------------------------


@router.get("/knowledge")
def get_knowledge(kb: KnowledgeBase = Depends(get_knowledge_base)) -> Dict[str, Any]:
    return _ok(_knowledge_view(kb))


@router.get("/knowledge/value")
def get_value(path: str, kb: KnowledgeBase = Depends(get_knowledge_base)) -> Dict[str, Any]:
    with _engine_errors(meta={"path": path}):
        value = kb.get(path)
    if value is MISSING:
        _error(http_status=status.HTTP_404_NOT_FOUND, code="not_found", message=f"Nothing stored at '{path}'.")
    return _ok({"path": path, "value": value})


@router.put("/knowledge")
def put_knowledge(req: KnowledgeUpdateRequest, kb: KnowledgeBase = Depends(get_knowledge_base)) -> Dict[str, Any]:
    if req.overlay is None and req.path is None:
        _error(http_status=status.HTTP_400_BAD_REQUEST, code="invalid_request", message="Provide path or overlay.")
    with _engine_errors(meta={"path": req.path}):
        if req.overlay is not None:
            kb.replace_overlay(req.overlay)
        elif req.delete:
            kb.delete(req.path)
        else:
            kb.put(req.path, req.value)
    return _ok(_knowledge_view(kb))


@router.delete("/knowledge")
def delete_knowledge(path: Optional[str] = None, kb: KnowledgeBase = Depends(get_knowledge_base)) -> Dict[str, Any]:
    with _engine_errors(meta={"path": path}):
        if path:
            kb.delete(path)
        else:
            kb.clear()
    return _ok(_knowledge_view(kb), meta={"message": "Knowledge overlay cleared" if not path else "Path deleted"})


@router.post("/knowledge/upload")
def upload_csv(req: CsvUploadRequest, kb: KnowledgeBase = Depends(get_knowledge_base)) -> Dict[str, Any]:
    with _engine_errors():
        report = import_csv(kb, req.content, all_or_nothing=req.all_or_nothing)
    return _ok(report.to_dict())


# ------------------------------
# Compilation + review
# ------------------------------


@router.post("/knowledge/compile")
def compile_knowledge(
    req: CompilationRequest,
    fallback: bool = False,
    kb: KnowledgeBase = Depends(get_knowledge_base),
    compiler: CompilationOrchestrator = Depends(get_compiler),
) -> Dict[str, Any]:
    meta = {"mode": req.compilation_type.value, "auto_apply": req.auto_apply}
    with _engine_errors(meta=meta):
        fragments = fragments_from_knowledge(req.new_knowledge, null_deletes=kb.null_deletes)
        try:
            result = compiler.compile(
                fragments, context=req.context, mode=req.compilation_type, auto_apply=req.auto_apply
            )
        except InvalidCompilationOutputError:
            if not fallback:
                raise
            result = compiler.compile_without_model(
                fragments, context=req.context, mode=req.compilation_type, auto_apply=req.auto_apply
            )
            meta["fallback"] = True
    return _ok(result.model_dump(mode="json", by_alias=True), meta=meta)


@router.post("/knowledge/smart-entry")
def smart_entry(req: SmartEntryRequest, compiler: CompilationOrchestrator = Depends(get_compiler)) -> Dict[str, Any]:
    with _engine_errors():
        result = compiler.smart_entry(req.description)
    return _ok(result.model_dump(mode="json", by_alias=True))


@router.get("/knowledge/drafts")
def list_drafts(
    status_filter: Optional[CompilationStatus] = Query(default=None, alias="status"),
    limit: int = 50,
    offset: int = 0,
    review: DraftReview = Depends(get_review),
) -> Dict[str, Any]:
    drafts = review.list_drafts(status=status_filter, limit=limit, offset=offset)
    return _ok({"drafts": [d.model_dump(mode="json", by_alias=True) for d in drafts]})


@router.get("/knowledge/drafts/{compilation_id}")
def get_draft(compilation_id: str, review: DraftReview = Depends(get_review)) -> Dict[str, Any]:
    with _engine_errors(meta={"compilation_id": compilation_id}):
        draft = review.get(compilation_id)
    return _ok(draft.model_dump(mode="json", by_alias=True))


@router.post("/knowledge/drafts/{compilation_id}/approve")
def approve_draft(
    compilation_id: str, req: ReviewRequest, review: DraftReview = Depends(get_review)
) -> Dict[str, Any]:
    with _engine_errors(meta={"compilation_id": compilation_id}):
        result = review.approve(compilation_id, reviewer=req.reviewer, comment=req.comment)
    return _ok(result.model_dump(mode="json", by_alias=True), meta={"decision": "approve"})


@router.post("/knowledge/drafts/{compilation_id}/reject")
def reject_draft(
    compilation_id: str, req: ReviewRequest, review: DraftReview = Depends(get_review)
) -> Dict[str, Any]:
    with _engine_errors(meta={"compilation_id": compilation_id}):
        result = review.reject(compilation_id, reviewer=req.reviewer, comment=req.comment)
    return _ok(result.model_dump(mode="json", by_alias=True), meta={"decision": "reject"})


# ------------------------------
# Query
# ------------------------------


@router.post("/knowledge/query")
def query_knowledge(req: QueryRequest, engine: KnowledgeQueryEngine = Depends(get_query_engine)) -> Dict[str, Any]:
    result = engine.ask(
        req.query, max_sources=req.max_sources, include_sources=req.include_sources, context=req.context
    )
    return _ok(result.model_dump(mode="json", by_alias=True))


@router.get("/knowledge/query")
def query_capabilities(engine: KnowledgeQueryEngine = Depends(get_query_engine)) -> Dict[str, Any]:
    return _ok(engine.capabilities())


# ------------------------------
# History
# ------------------------------


@router.get("/knowledge/history")
def knowledge_history(
    limit: int = 50, offset: int = 0, kb: KnowledgeBase = Depends(get_knowledge_base)
) -> Dict[str, Any]:
    entries = [e.model_dump(mode="json") for e in kb.history(limit=limit, offset=offset)]
    return _ok({"version": kb.version, "history": entries})


@router.get("/knowledge/diff")
def knowledge_diff(
    from_version: int = Query(..., alias="from", ge=0),
    to_version: Optional[int] = Query(default=None, alias="to", ge=0),
    kb: KnowledgeBase = Depends(get_knowledge_base),
) -> Dict[str, Any]:
    with _engine_errors(meta={"from_version": from_version, "to_version": to_version}):
        diff = diff_versions(kb, from_version, to_version)
    return _ok(diff.to_dict())


@router.post("/knowledge/restore/{version}")
def knowledge_restore(version: int, kb: KnowledgeBase = Depends(get_knowledge_base)) -> Dict[str, Any]:
    with _engine_errors(meta={"restored_from": version}):
        restore_version(kb, version)
    return _ok(_knowledge_view(kb), meta={"restored_from": version})


@router.get("/knowledge/metrics")
def knowledge_metrics(metrics: Metrics = Depends(get_metrics)) -> Dict[str, Any]:
    return _ok(metrics.snapshot())
