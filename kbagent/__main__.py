from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from kbagent.app import AgentApp, build_app
from kbagent.config import (
    WORKROOT_ENV_VAR,
    build_chunking_cfg,
    build_embed_cfg,
    build_emitter_queue_size,
    build_provider_settings,
    build_retrieval_config,
    load_effective_config,
)
from kbagent.conversation_db import connect_db as connect_conversations
from kbagent.conversation_db import create_conversation, list_message_rows, set_conversation_model_override
from kbagent.emitter import QueueEmitter
from kbagent.errors import AgentError
from kbagent.events import CH_PROVIDER_FALLBACK, CH_PROVIDER_RETRY, CH_TEXT_DELTA, CH_TOOL_RESULT, CH_VERIFICATION
from kbagent.indexer import index_vault
from kbagent.ledger_db import connect_db as connect_ledger
from kbagent.ledger_db import get_run, list_run_events, list_runs
from kbagent.providers.registry import is_valid_model_id, split_model_id
from kbagent.retrieval_eval import evaluate, load_dataset
from kbagent.run_loop import RunResult
from kbagent.tools import ToolContext


def print_output(text: str) -> None:
    """Print safely on consoles with limited code pages."""
    try:
        print(text)
    except UnicodeEncodeError:
        sys.stdout.buffer.write((text + "\n").encode("utf-8", errors="replace"))
        sys.stdout.flush()


def make_typed_failure(error_code: str, error_message: str) -> str:
    payload = {
        "ok": False,
        "error_code": error_code,
        "error_message": error_message,
    }
    return json.dumps(payload, ensure_ascii=False)


def print_failure(error_code: str, error_message: str) -> int:
    print(make_typed_failure(error_code, error_message), file=sys.stderr)
    return 1


def configure_logging(cfg: Dict[str, Any], verbose: bool) -> None:
    level_name = "DEBUG" if verbose else str((cfg.get("logging") or {}).get("level") or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _install_sigint_handler(cancel: threading.Event) -> None:
    def _handler(sig, frame):  # noqa: ARG001
        cancel.set()

    signal.signal(signal.SIGINT, _handler)


def _console_event(channel: str, payload: Dict[str, Any]) -> None:
    if channel == CH_TEXT_DELTA:
        sys.stdout.write(str(payload.get("delta") or ""))
        sys.stdout.flush()
    elif channel == CH_TOOL_RESULT:
        status = "ok" if payload.get("ok") else f"error: {(payload.get('error') or {}).get('code')}"
        print(f"\n[tool {payload.get('tool')}] {status}", file=sys.stderr)
    elif channel == CH_VERIFICATION:
        proof = payload.get("proof") or {}
        print(
            f"[verify {payload.get('target')}] readback_ok={proof.get('readback_ok')} commit={proof.get('commit_id')}",
            file=sys.stderr,
        )
    elif channel == CH_PROVIDER_RETRY:
        print(
            f"[retry {payload.get('attempt')}/{payload.get('max_attempts')}] {payload.get('error')}",
            file=sys.stderr,
        )
    elif channel == CH_PROVIDER_FALLBACK:
        print(f"[fallback] {payload.get('from_model_id')} -> {payload.get('to_model_id')}", file=sys.stderr)


def write_json(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False, default=str), encoding="utf-8")


def write_run_record(app: AgentApp, result: RunResult, record: Dict[str, Any]) -> Path:
    """Mirror the finished run as runs/<run_id>/run.json under the state dir."""
    ended = time.time()
    record.update(result.to_dict())
    record["ended_unix"] = ended
    record["elapsed_s"] = round(ended - float(record["started_unix"]), 3)
    path = app.paths.state_dir / "runs" / result.run_id / "run.json"
    write_json(path, record)
    return path


def run_chat(
    app: AgentApp,
    prompt: str,
    *,
    conversation_id: Optional[str] = None,
    model_override: Optional[str] = None,
    regenerate: bool = False,
    json_output: bool = False,
) -> int:
    emitter = QueueEmitter(build_emitter_queue_size(app.cfg))
    record: Dict[str, Any] = {
        "mode": "regenerate" if regenerate else "chat",
        "prompt": prompt,
        "workroot": str(app.workroot),
        "started_unix": time.time(),
    }
    try:
        with connect_conversations(app.paths.conversations_db) as conn:
            if conversation_id is None:
                conversation_id = create_conversation(conn, prompt[:60] or "New conversation")
            if model_override is not None:
                split_model_id(model_override)
                set_conversation_model_override(conn, conversation_id, model_override)
        if regenerate:
            handle = app.registry.regenerate(conversation_id, emitter=emitter)
        else:
            handle = app.registry.start(conversation_id, prompt, emitter=emitter)
    except (AgentError, KeyError, ValueError) as exc:
        return print_failure(getattr(exc, "code", "invalid_request"), str(exc))

    _install_sigint_handler(handle.cancel_event)
    while not handle.done or len(emitter):
        item = emitter.get(timeout=0.1)
        if item is not None and not json_output:
            _console_event(*item)
    try:
        result = handle.wait()
    except Exception as exc:
        return print_failure(getattr(exc, "code", "RUN_ERROR"), f"run {handle.run_id} crashed: {exc}")
    if result is None:
        return print_failure("RUN_ERROR", f"run {handle.run_id} ended without a result")
    if emitter.dropped:
        print(f"[{emitter.dropped} progress event(s) dropped; see: kbagent runs {result.run_id}]", file=sys.stderr)
    record_path = write_run_record(app, result, record)

    if json_output:
        print_output(json.dumps(result.to_dict(), ensure_ascii=False))
    else:
        if not result.ok or not result.text:
            print_output(result.text)
        else:
            print_output("")
        print(
            f"run {result.run_id} {result.status.value}"
            f"{' (' + result.reason + ')' if result.reason else ''} "
            f"conversation={result.conversation_id} iterations={result.iterations} tools={result.tool_calls}",
            file=sys.stderr,
        )
        print(f"[logged] {record_path}", file=sys.stderr)
    return 0 if result.ok else 1


def run_reindex(app: AgentApp, *, rebuild: bool = False, embed: bool = True, json_output: bool = False) -> int:
    max_chars, overlap = build_chunking_cfg(app.cfg)
    embed_cfg = build_embed_cfg(app.cfg)
    try:
        with app.tools.lock.reading():
            summary = index_vault(
                vault=app.vault,
                db_path=app.paths.index_db,
                max_chars=max_chars,
                overlap=overlap,
                embedder=app.embedder if embed else None,
                batch_size=int(embed_cfg["batch_size"]),
                rebuild=rebuild,
            )
    except (OSError, RuntimeError, ValueError) as exc:
        return print_failure("INDEX_ERROR", str(exc))

    if json_output:
        payload = {"ok": not summary.errors, "index_db": str(app.paths.index_db)}
        payload.update(
            {
                "notes_scanned": summary.notes_scanned,
                "notes_changed": summary.notes_changed,
                "notes_unchanged": summary.notes_unchanged,
                "notes_pruned": summary.notes_pruned,
                "chunks_written": summary.chunks_written,
                "vectors_written": summary.vectors_written,
                "total_notes": summary.total_notes,
                "total_chunks": summary.total_chunks,
                "errors": list(summary.errors),
            }
        )
        print_output(json.dumps(payload, ensure_ascii=False))
    else:
        print_output(f"index_db: {app.paths.index_db}")
        print_output(
            "index summary: "
            f"notes_scanned={summary.notes_scanned}, "
            f"notes_changed={summary.notes_changed}, "
            f"notes_unchanged={summary.notes_unchanged}, "
            f"notes_pruned={summary.notes_pruned}, "
            f"chunks_written={summary.chunks_written}, "
            f"vectors_written={summary.vectors_written}, "
            f"total_notes={summary.total_notes}, "
            f"total_chunks={summary.total_chunks}, "
            f"errors={len(summary.errors)}"
        )
        for err in summary.errors:
            print_output(f"error: {err}")
    return 0 if not summary.errors else 1


def run_search(
    app: AgentApp,
    query: str,
    *,
    k: int = 8,
    folder: str = "",
    rerank: bool = True,
    hyde: bool = True,
    json_output: bool = False,
) -> int:
    if not query.strip():
        return print_failure("INVALID_QUERY", "Query text must be non-empty.")
    result = app.retrieval.search(
        query,
        k,
        path_prefix=folder,
        rerank_enabled=rerank,
        hyde_enabled=hyde,
        read_gate=app.tools.lock.reading,
    )
    if json_output:
        payload = {
            "ok": True,
            "query": result.query,
            "fusion": result.fusion,
            "hyde_used": result.hyde_used,
            "rerank_applied": result.rerank_applied,
            "vector_search_used": result.vector_search_used,
            "warnings": list(result.warnings),
            "results": [
                {
                    "chunk_key": c.chunk_key,
                    "path": c.path,
                    "heading": c.heading,
                    "score": c.score,
                    "method": c.method,
                }
                for c in result.chunks
            ],
        }
        print_output(json.dumps(payload, ensure_ascii=False))
        return 0
    if not result.chunks:
        print_output("No matching notes.")
        return 0
    for i, c in enumerate(result.chunks, start=1):
        snippet = " ".join(c.text.split())
        if len(snippet) > 180:
            snippet = snippet[:177] + "..."
        print_output(f"{i}. [{c.method} {c.score:.4f}] {c.source_label}")
        print_output(f"   {snippet}")
    for warning in result.warnings:
        print_output(f"warning: {warning}")
    return 0


def run_eval(
    app: AgentApp,
    dataset_path: str,
    *,
    k: int = 5,
    rerank: bool = True,
    hyde: bool = True,
    json_output: bool = False,
) -> int:
    try:
        dataset = load_dataset(Path(dataset_path))
    except (OSError, ValueError) as exc:
        return print_failure("INVALID_DATASET", str(exc))
    if not dataset.cases:
        return print_failure("INVALID_DATASET", f"{dataset_path}: dataset has no cases")

    report = evaluate(
        app.retrieval,
        dataset,
        k,
        rerank_enabled=rerank,
        hyde_enabled=hyde,
        read_gate=app.tools.lock.reading,
    )
    if json_output:
        payload: Dict[str, Any] = {"ok": True}
        payload.update(report.to_dict())
        print_output(json.dumps(payload, ensure_ascii=False))
        return 0
    print_output(
        f"dataset={report.dataset} cases={report.cases} "
        f"recall@{report.k}={report.recall_at_k:.3f} mrr@{report.k}={report.mrr_at_k:.3f}"
    )
    for case_id in report.misses:
        print_output(f"miss: {case_id}")
    return 0


def _run_tool_command(app: AgentApp, name: str, args: Dict[str, Any], json_output: bool) -> Dict[str, Any]:
    envelope = app.tools.execute(name, args, ToolContext(run_id=None, iteration=0))
    if json_output:
        print_output(json.dumps(envelope, ensure_ascii=False, default=str))
    return envelope


def run_history(app: AgentApp, *, path: Optional[str] = None, limit: int = 20, json_output: bool = False) -> int:
    args: Dict[str, Any] = {"limit": max(1, min(100, int(limit)))}
    if path:
        args["path"] = path
    envelope = _run_tool_command(app, "kb_history", args, json_output)
    if not envelope["ok"]:
        error = envelope["error"] or {}
        if not json_output:
            print_failure(str(error.get("code")), str(error.get("message")))
        return 1
    if not json_output:
        commits = envelope["result"]["commits"]
        if not commits:
            print_output("No commits.")
        for c in commits:
            stats = c.get("diff_stats") or {}
            print_output(
                f"{c['commit_id']} {c['action']:<6} {c['path']} "
                f"+{stats.get('added_lines', 0)} -{stats.get('removed_lines', 0)}"
                f"{' reverts ' + c['reverts'] if c.get('reverts') else ''}"
            )
    return 0


def run_revert(app: AgentApp, commit_id: str, *, json_output: bool = False) -> int:
    envelope = _run_tool_command(app, "kb_revert", {"commit_id": commit_id}, json_output)
    if not envelope["ok"]:
        error = envelope["error"] or {}
        if not json_output:
            print_failure(str(error.get("code")), str(error.get("message")))
        return 1
    if not json_output:
        proof = envelope.get("proof") or {}
        print_output(f"reverted {commit_id} on {envelope.get('target')}: new commit {proof.get('commit_id')}")
    return 0


def run_runs(
    app: AgentApp,
    *,
    run_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    limit: int = 20,
    json_output: bool = False,
) -> int:
    with connect_ledger(app.paths.ledger_db) as conn:
        if run_id:
            run = get_run(conn, run_id)
            if run is None:
                return print_failure("RUN_NOT_FOUND", f"Unknown run: {run_id}")
            events = list_run_events(conn, run_id)
        else:
            runs = list_runs(conn, conversation_id=conversation_id, limit=limit)

    if run_id:
        if json_output:
            print_output(json.dumps({"ok": True, "run": run, "events": events}, ensure_ascii=False, default=str))
        else:
            print_output(f"run {run['run_id']} {run['status']} model={run['provider']}:{run['model']}")
            for ev in events:
                detail = ev["payload"].get("state") or ev["payload"].get("tool") or ev["payload"].get("phase") or ""
                print_output(f"  {ev['seq']:>4} it={ev['iteration']} {ev['channel']:<18} {detail}")
        return 0

    if json_output:
        print_output(json.dumps({"ok": True, "runs": runs}, ensure_ascii=False, default=str))
    else:
        for r in runs:
            print_output(
                f"{r['run_id']} {r['status']:<10} conv={r['conversation_id']} "
                f"iterations={r.get('iterations') or 0} tools={r.get('tool_calls') or 0}"
            )
    return 0


def run_messages(app: AgentApp, conversation_id: str, *, json_output: bool = False) -> int:
    with connect_conversations(app.paths.conversations_db) as conn:
        rows = list_message_rows(conn, conversation_id)
    if json_output:
        print_output(json.dumps({"ok": True, "messages": rows}, ensure_ascii=False, default=str))
        return 0
    for row in rows:
        content = str(row["content"])
        if row["role"] == "tool":
            content = content[:160] + ("..." if len(content) > 160 else "")
        print_output(f"[{row['id']}] {row['role']}: {content}")
    return 0


@dataclass(frozen=True)
class DoctorCheck:
    ok: bool
    error_code: str
    message: str
    suggested_fix: str = ""


def collect_doctor_checks(app: AgentApp, *, check_network: bool = True) -> List[DoctorCheck]:
    checks: List[DoctorCheck] = []
    cfg = app.cfg

    for key in ("model_id", "fallback_model_id"):
        raw = str(cfg.get(key) or "").strip()
        if not raw and key == "fallback_model_id":
            continue
        if is_valid_model_id(raw):
            checks.append(DoctorCheck(True, f"{key.upper()}_OK", f"{key}={raw}"))
        else:
            checks.append(
                DoctorCheck(
                    False,
                    f"{key.upper()}_INVALID",
                    f"{key} is not a valid '<provider>:<model>' id: {raw!r}",
                    "Use e.g. 'ollama:qwen3:8b' or 'anthropic:claude-sonnet-4-5'.",
                )
            )

    try:
        build_retrieval_config(cfg)
        checks.append(DoctorCheck(True, "RETRIEVAL_CONFIG_OK", "retrieval config parsed"))
    except ValueError as exc:
        checks.append(DoctorCheck(False, "RETRIEVAL_CONFIG_INVALID", str(exc), "Set retrieval.fusion to rrf or weighted_sum."))

    note_count = app.vault.note_count()
    checks.append(DoctorCheck(True, "VAULT_OK", f"vault={app.vault.root} notes={note_count}"))

    notes, chunks = app.retrieval.index_counts()
    if note_count > 0 and notes == 0:
        checks.append(
            DoctorCheck(False, "INDEX_EMPTY", "The vault has notes but the index is empty.", "Run: python -m kbagent reindex")
        )
    else:
        checks.append(DoctorCheck(True, "INDEX_OK", f"indexed_notes={notes} chunks={chunks}"))

    if check_network:
        model_id = str(cfg.get("model_id") or "")
        if is_valid_model_id(model_id):
            provider = split_model_id(model_id).provider
            settings = build_provider_settings(cfg, provider)
            if provider == "ollama":
                try:
                    resp = requests.get(f"{settings.base_url}/api/tags", timeout=5)
                    resp.raise_for_status()
                    checks.append(DoctorCheck(True, "OLLAMA_REACHABLE", f"reachable at {settings.base_url}"))
                except requests.RequestException as exc:
                    checks.append(
                        DoctorCheck(
                            False,
                            "OLLAMA_UNREACHABLE",
                            f"Ollama not reachable at {settings.base_url}: {exc}",
                            "Start Ollama or set providers.ollama.base_url.",
                        )
                    )
            elif not settings.api_key and provider not in ("lm_studio",):
                checks.append(
                    DoctorCheck(
                        False,
                        "PROVIDER_KEY_MISSING",
                        f"No API key configured for {provider}",
                        f"Set providers.{provider}.api_key_env and export that variable.",
                    )
                )
            else:
                checks.append(DoctorCheck(True, "PROVIDER_CONFIGURED", f"{provider} configured"))
    return checks


def run_doctor(app: AgentApp, *, json_output: bool = False, check_network: bool = True) -> int:
    checks = collect_doctor_checks(app, check_network=check_network)
    failed = [c for c in checks if not c.ok]
    if json_output:
        payload: Dict[str, Any] = {
            "ok": len(failed) == 0,
            "checks": [
                {"ok": c.ok, "error_code": c.error_code, "message": c.message, "suggested_fix": c.suggested_fix}
                for c in checks
            ],
            "workroot": str(app.workroot),
            "state_dir": str(app.paths.state_dir),
        }
        print_output(json.dumps(payload, ensure_ascii=False))
    else:
        for c in checks:
            tag = "OK" if c.ok else "FAIL"
            print_output(f"[{tag}] {c.error_code}: {c.message}")
            if (not c.ok) and c.suggested_fix:
                print_output(f"  fix: {c.suggested_fix}")
        print_output("")
        print_output(f"doctor summary: ok={len(checks) - len(failed)} fail={len(failed)}")
    return 0 if not failed else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kbagent")
    parser.add_argument(
        "--workroot",
        type=str,
        default=None,
        help=f"Data root for the vault and state (or set {WORKROOT_ENV_VAR}).",
    )
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML config file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_chat = sub.add_parser("chat", help="Send a message and run the agent loop.")
    p_chat.add_argument("prompt", type=str, nargs="?", default="")
    p_chat.add_argument("--conversation", type=str, default=None, help="Continue an existing conversation.")
    p_chat.add_argument("--model", type=str, default=None, help="Set the conversation's model override.")
    p_chat.add_argument("--regenerate", action="store_true", help="Answer the last user message again.")
    p_chat.add_argument("--json", action="store_true", help="Emit the run result as JSON.")

    p_reindex = sub.add_parser("reindex", help="Chunk and embed the vault.")
    p_reindex.add_argument("--rebuild", action="store_true", help="Rechunk every note regardless of hashes.")
    p_reindex.add_argument("--no-embed", action="store_true", help="Build the lexical index only.")
    p_reindex.add_argument("--json", action="store_true", help="Emit machine-readable JSON summary.")

    p_search = sub.add_parser("search", help="Hybrid search over the index.")
    p_search.add_argument("query", type=str)
    p_search.add_argument("-k", type=int, default=8, help="Number of results.")
    p_search.add_argument("--folder", type=str, default="", help="Restrict to a vault folder.")
    p_search.add_argument("--no-rerank", action="store_true")
    p_search.add_argument("--no-hyde", action="store_true")
    p_search.add_argument("--json", action="store_true")

    p_eval = sub.add_parser("eval", help="Score retrieval against a YAML dataset (recall@k, MRR@k).")
    p_eval.add_argument("dataset", type=str, help="Path to the eval dataset YAML.")
    p_eval.add_argument("-k", type=int, default=5, help="Cutoff for recall and MRR.")
    p_eval.add_argument("--no-rerank", action="store_true")
    p_eval.add_argument("--no-hyde", action="store_true")
    p_eval.add_argument("--json", action="store_true")

    p_history = sub.add_parser("history", help="List verified vault commits.")
    p_history.add_argument("--path", type=str, default=None)
    p_history.add_argument("--limit", type=int, default=20)
    p_history.add_argument("--json", action="store_true")

    p_revert = sub.add_parser("revert", help="Revert a commit as a new forward commit.")
    p_revert.add_argument("commit_id", type=str)
    p_revert.add_argument("--json", action="store_true")

    p_runs = sub.add_parser("runs", help="List runs, or show one run's event ledger.")
    p_runs.add_argument("run_id", type=str, nargs="?", default=None)
    p_runs.add_argument("--conversation", type=str, default=None)
    p_runs.add_argument("--limit", type=int, default=20)
    p_runs.add_argument("--json", action="store_true")

    p_messages = sub.add_parser("messages", help="Print a conversation's stored messages.")
    p_messages.add_argument("conversation_id", type=str)
    p_messages.add_argument("--json", action="store_true")

    p_doctor = sub.add_parser("doctor", help="Run preflight checks.")
    p_doctor.add_argument("--json", action="store_true")
    p_doctor.add_argument("--offline", action="store_true", help="Skip provider reachability checks.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    loaded_cfg_path: Optional[Path] = None
    try:
        cfg, loaded_cfg_path = load_effective_config(Path(args.config) if args.config else None)
        configure_logging(cfg, bool(args.verbose))
        app = build_app(
            cfg,
            config_path=loaded_cfg_path,
            cli_workroot=args.workroot,
            with_embedder=not (args.cmd == "reindex" and bool(getattr(args, "no_embed", False))),
        )
    except Exception as exc:
        print(
            json.dumps(
                {
                    "ok": False,
                    "error_code": "CONFIG_ERROR",
                    "error_message": str(exc),
                    "resolved_config_path": str(loaded_cfg_path) if loaded_cfg_path else None,
                },
                ensure_ascii=False,
            ),
            file=sys.stderr,
        )
        return 1

    if args.cmd == "chat":
        if not args.prompt.strip() and not args.regenerate:
            return print_failure("INVALID_PROMPT", "Prompt must be non-empty.")
        if args.regenerate and not args.conversation:
            return print_failure("INVALID_REQUEST", "--regenerate needs --conversation.")
        return run_chat(
            app,
            args.prompt,
            conversation_id=args.conversation,
            model_override=args.model,
            regenerate=bool(args.regenerate),
            json_output=bool(args.json),
        )
    if args.cmd == "reindex":
        return run_reindex(app, rebuild=bool(args.rebuild), embed=not args.no_embed, json_output=bool(args.json))
    if args.cmd == "search":
        return run_search(
            app,
            args.query,
            k=int(args.k),
            folder=args.folder,
            rerank=not args.no_rerank,
            hyde=not args.no_hyde,
            json_output=bool(args.json),
        )
    if args.cmd == "eval":
        return run_eval(
            app,
            args.dataset,
            k=int(args.k),
            rerank=not args.no_rerank,
            hyde=not args.no_hyde,
            json_output=bool(args.json),
        )
    if args.cmd == "history":
        return run_history(app, path=args.path, limit=int(args.limit), json_output=bool(args.json))
    if args.cmd == "revert":
        return run_revert(app, args.commit_id, json_output=bool(args.json))
    if args.cmd == "runs":
        return run_runs(
            app,
            run_id=args.run_id,
            conversation_id=args.conversation,
            limit=int(args.limit),
            json_output=bool(args.json),
        )
    if args.cmd == "messages":
        return run_messages(app, args.conversation_id, json_output=bool(args.json))
    if args.cmd == "doctor":
        return run_doctor(app, json_output=bool(args.json), check_network=not args.offline)
    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
