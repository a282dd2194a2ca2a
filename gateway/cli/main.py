# ==============================
# CLI Entrypoint
# ==============================
"""
CLI for the event knowledge engine.

Supported commands:
  knowledge show [--path event.location] [--overlay]
  knowledge set --path event.location --value '"Jakarta Convention Center"'
  knowledge delete --path event.location
  knowledge clear
  knowledge import-csv --file updates.csv [--all-or-nothing]
  knowledge compile --payload '{"event": {"date": "2026-05-01"}}' [--mode merge] [--auto-apply]
  knowledge drafts [--status pending_review]
  knowledge approve --id cmp_123 [--reviewer ops] [--comment "looks right"]
  knowledge reject --id cmp_123
  knowledge ask --question "Where is the event?"
  knowledge history [--limit 20]
  knowledge diff --from 1 [--to 3]
  knowledge restore --version 2

Values passed to --value are parsed as JSON when possible, else kept as text.
Exit code is 0 on success, 1 when the engine refuses the operation.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from knowledge_core.config.loader import load_settings
from knowledge_core.config.schema import Settings
from knowledge_core.contracts.errors import KnowledgeError
from knowledge_core.contracts.knowledge_schema import CompilationMode, CompilationStatus
from knowledge_core.knowledge.csv_import import import_csv_file
from knowledge_core.knowledge.paths import MISSING
from knowledge_core.knowledge.versioning import diff_versions, restore_version
from knowledge_core.logging.logger import bootstrap_logger
from knowledge_core.logging.metrics import Metrics
from knowledge_core.memory.router import KnowledgeStore
from knowledge_core.models.router import ModelRouter
from knowledge_core.orchestrator.compiler import CompilationOrchestrator, fragments_from_knowledge
from knowledge_core.orchestrator.knowledge_base import KnowledgeBase
from knowledge_core.orchestrator.review import DraftReview
from knowledge_core.query.engine import KnowledgeQueryEngine


def _json_load(text: str) -> Dict[str, Any]:
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(value, dict):
        raise SystemExit("JSON payload must be an object.")
    return value


def _load_payload_arg(payload: Optional[str], payload_file: Optional[str]) -> Dict[str, Any]:
    if payload and payload_file:
        raise SystemExit("Provide only one of --payload or --payload-file.")
    if payload_file:
        text = Path(payload_file).read_text(encoding="utf-8")
        return _json_load(text)
    if payload:
        return _json_load(payload)
    raise SystemExit("Provide --payload or --payload-file.")


def _value_arg(text: Optional[str]) -> Any:
    if text is None:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _print_error(exc: KnowledgeError) -> int:
    _print_json({"ok": False, "error": exc.to_dict()})
    return 1


class Services:
    """Wiring for one CLI invocation. Model-backed parts are built lazily."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.metrics = Metrics()
        self.store = KnowledgeStore.from_settings(settings)
        self.kb = KnowledgeBase.from_settings(settings, store=self.store, metrics=self.metrics)
        self._model: Optional[ModelRouter] = None

    @property
    def model(self) -> ModelRouter:
        if self._model is None:
            self._model = ModelRouter.from_settings(self.settings, metrics=self.metrics)
        return self._model

    def compiler(self) -> CompilationOrchestrator:
        return CompilationOrchestrator.from_settings(self.settings, kb=self.kb, model=self.model)

    def review(self) -> DraftReview:
        return DraftReview(kb=self.kb)

    def query_engine(self) -> KnowledgeQueryEngine:
        return KnowledgeQueryEngine.from_settings(self.settings, kb=self.kb, model=self.model)


def cmd_show(kb: KnowledgeBase, *, path: Optional[str], overlay: bool) -> int:
    value = kb.get(path or "", live=not overlay)
    if value is MISSING:
        _print_json({"ok": False, "error": {"code": "not_found", "message": f"Nothing stored at '{path}'."}})
        return 1
    _print_json({"version": kb.version, "path": path or "", "value": value})
    return 0


def cmd_set(kb: KnowledgeBase, *, path: str, value: Any) -> int:
    updated = kb.put(path, value)
    _print_json({"ok": True, "version": updated.version, "path": path})
    return 0


def cmd_delete(kb: KnowledgeBase, *, path: str) -> int:
    updated = kb.delete(path)
    _print_json({"ok": True, "version": updated.version, "path": path})
    return 0


def cmd_clear(kb: KnowledgeBase) -> int:
    updated = kb.clear()
    _print_json({"ok": True, "version": updated.version})
    return 0


def cmd_import_csv(kb: KnowledgeBase, *, file: str, all_or_nothing: bool) -> int:
    report = import_csv_file(kb, file, all_or_nothing=all_or_nothing)
    _print_json(report.to_dict())
    return 1 if report.discarded else 0


def cmd_compile(
    compiler: CompilationOrchestrator,
    *,
    payload: Dict[str, Any],
    mode: str,
    context: Optional[str],
    auto_apply: bool,
) -> int:
    fragments = fragments_from_knowledge(payload, null_deletes=compiler.kb.null_deletes)
    result = compiler.compile(fragments, context=context, mode=CompilationMode(mode), auto_apply=auto_apply)
    _print_json(result.model_dump(mode="json", by_alias=True))
    return 0


def cmd_drafts(review: DraftReview, *, status: Optional[str], limit: int) -> int:
    drafts = review.list_drafts(status=CompilationStatus(status) if status else None, limit=limit)
    _print_json({"drafts": [d.model_dump(mode="json", by_alias=True) for d in drafts]})
    return 0


def cmd_decide(
    review: DraftReview, *, compilation_id: str, approve: bool, reviewer: Optional[str], comment: Optional[str]
) -> int:
    if approve:
        result = review.approve(compilation_id, reviewer=reviewer, comment=comment)
    else:
        result = review.reject(compilation_id, reviewer=reviewer, comment=comment)
    _print_json(result.model_dump(mode="json", by_alias=True))
    return 0


def cmd_ask(engine: KnowledgeQueryEngine, *, question: str, max_sources: Optional[int]) -> int:
    result = engine.ask(question, max_sources=max_sources)
    _print_json(result.model_dump(mode="json", by_alias=True))
    return 0


def cmd_history(kb: KnowledgeBase, *, limit: int, offset: int) -> int:
    entries = [e.model_dump(mode="json") for e in kb.history(limit=limit, offset=offset)]
    _print_json({"version": kb.version, "history": entries})
    return 0


def cmd_diff(kb: KnowledgeBase, *, old: int, new: Optional[int]) -> int:
    _print_json(diff_versions(kb, old, new).to_dict())
    return 0


def cmd_restore(kb: KnowledgeBase, *, version: int) -> int:
    updated = restore_version(kb, version)
    _print_json({"ok": True, "version": updated.version, "restored_from": version})
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="knowledge")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_show = sub.add_parser("show")
    ap_show.add_argument("--path", default=None, help="Dot path; omit for the whole tree")
    ap_show.add_argument("--overlay", action="store_true", help="Show the stored overlay without live entity data")

    ap_set = sub.add_parser("set")
    ap_set.add_argument("--path", required=True)
    ap_set.add_argument("--value", required=True, help="JSON value (falls back to plain text)")

    ap_delete = sub.add_parser("delete")
    ap_delete.add_argument("--path", required=True)

    sub.add_parser("clear")

    ap_csv = sub.add_parser("import-csv")
    ap_csv.add_argument("--file", required=True)
    ap_csv.add_argument("--all-or-nothing", action="store_true", help="Discard the batch on any bad row")

    ap_compile = sub.add_parser("compile")
    ap_compile.add_argument("--payload", help="JSON object string", default=None)
    ap_compile.add_argument("--payload-file", help="Path to JSON file with new knowledge", default=None)
    ap_compile.add_argument("--mode", choices=[m.value for m in CompilationMode], default=CompilationMode.MERGE.value)
    ap_compile.add_argument("--context", default=None)
    ap_compile.add_argument("--auto-apply", action="store_true")

    ap_drafts = sub.add_parser("drafts")
    ap_drafts.add_argument("--status", choices=[s.value for s in CompilationStatus], default=None)
    ap_drafts.add_argument("--limit", type=int, default=50)

    for name in ("approve", "reject"):
        ap_decide = sub.add_parser(name)
        ap_decide.add_argument("--id", required=True, dest="compilation_id")
        ap_decide.add_argument("--reviewer", help="Optional reviewer identifier", default=None)
        ap_decide.add_argument("--comment", help="Optional review comment", default=None)

    ap_ask = sub.add_parser("ask")
    ap_ask.add_argument("--question", required=True)
    ap_ask.add_argument("--max-sources", type=int, default=None)

    ap_history = sub.add_parser("history")
    ap_history.add_argument("--limit", type=int, default=50)
    ap_history.add_argument("--offset", type=int, default=0)

    ap_diff = sub.add_parser("diff")
    ap_diff.add_argument("--from", type=int, required=True, dest="old")
    ap_diff.add_argument("--to", type=int, default=None, dest="new")

    ap_restore = sub.add_parser("restore")
    ap_restore.add_argument("--version", type=int, required=True)

    return ap


def main(argv: Optional[List[str]] = None, *, services: Optional[Services] = None) -> int:
    args = build_parser().parse_args(argv)

    if services is None:
        settings = load_settings()
        bootstrap_logger(settings, stream=sys.stderr)
        services = Services(settings)
    kb = services.kb

    try:
        if args.cmd == "show":
            return cmd_show(kb, path=args.path, overlay=args.overlay)
        if args.cmd == "set":
            return cmd_set(kb, path=args.path, value=_value_arg(args.value))
        if args.cmd == "delete":
            return cmd_delete(kb, path=args.path)
        if args.cmd == "clear":
            return cmd_clear(kb)
        if args.cmd == "import-csv":
            return cmd_import_csv(kb, file=args.file, all_or_nothing=args.all_or_nothing)
        if args.cmd == "compile":
            payload = _load_payload_arg(args.payload, args.payload_file)
            return cmd_compile(
                services.compiler(),
                payload=payload,
                mode=args.mode,
                context=args.context,
                auto_apply=args.auto_apply,
            )
        if args.cmd == "drafts":
            return cmd_drafts(services.review(), status=args.status, limit=args.limit)
        if args.cmd in {"approve", "reject"}:
            return cmd_decide(
                services.review(),
                compilation_id=args.compilation_id,
                approve=args.cmd == "approve",
                reviewer=args.reviewer,
                comment=args.comment,
            )
        if args.cmd == "ask":
            return cmd_ask(services.query_engine(), question=args.question, max_sources=args.max_sources)
        if args.cmd == "history":
            return cmd_history(kb, limit=args.limit, offset=args.offset)
        if args.cmd == "diff":
            return cmd_diff(kb, old=args.old, new=args.new)
        if args.cmd == "restore":
            return cmd_restore(kb, version=args.version)
    except KnowledgeError as exc:
        return _print_error(exc)

    raise SystemExit("Unknown command")


if __name__ == "__main__":
    raise SystemExit(main())
