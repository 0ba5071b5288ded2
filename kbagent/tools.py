from __future__ import annotations

import difflib
import hashlib
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from kbagent import chunk_db
from kbagent.commit_db import (
    ACTION_CREATE,
    ACTION_REVERT,
    ACTION_UPDATE,
    connect_db as connect_commit_db,
    diff_stats,
    get_blob,
    get_commit,
    init_db as init_commit_db,
    list_commits,
    record_commit,
)
from kbagent.events import now_iso
from kbagent.indexer import index_note_text
from kbagent.providers.base import ToolDefinition
from kbagent.retrieval import RetrievalEngine
from kbagent.vault import VaultLock, VaultPathError, VaultStore, normalize_rel_path, vault_lock_for
from kbagent.web_search import WebSearchClient, WebSearchError


logger = logging.getLogger("kbagent.tools")

READ_MAX_CHARS = 12_000
SNIPPET_CHARS = 600
ACTION_NOOP = "noop"


class ToolError(Exception):
    """Raised when a tool is called with invalid args or cannot complete safely."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        retriable: bool = False,
        proof: Optional[Dict[str, Any]] = None,
        target: Optional[str] = None,
    ) -> None:
        self.code = code
        self.retriable = retriable
        self.proof = proof
        self.target = target
        super().__init__(message)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_schema: Dict[str, Any]  # simple JSON-schema-ish dict
    mutating: bool
    func: Callable[[Dict[str, Any], "ToolContext"], "ToolOutcome"]


@dataclass
class ToolContext:
    run_id: Optional[str] = None
    iteration: int = 0


@dataclass
class ToolOutcome:
    action: str
    result: Dict[str, Any]
    target: Optional[str] = None
    proof: Optional[Dict[str, Any]] = None


_TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
}


def validate_args(tool: str, schema: Dict[str, Any], args: Dict[str, Any]) -> None:
    props: Dict[str, Any] = schema.get("properties") or {}
    for key in schema.get("required") or []:
        value = args.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ToolError("invalid_arguments", f"{tool} requires args.{key}")
    if schema.get("additionalProperties") is False:
        extra = sorted(set(args) - set(props))
        if extra:
            raise ToolError("invalid_arguments", f"{tool} got unexpected args: {', '.join(extra)}")
    for key, value in args.items():
        prop = props.get(key) or {}
        check = _TYPE_CHECKS.get(str(prop.get("type")))
        if check is not None and value is not None and not check(value):
            raise ToolError("invalid_arguments", f"{tool} args.{key} must be {prop['type']}")
        if "minimum" in prop and isinstance(value, (int, float)) and value < prop["minimum"]:
            raise ToolError("invalid_arguments", f"{tool} args.{key} must be >= {prop['minimum']}")
        if "maximum" in prop and isinstance(value, (int, float)) and value > prop["maximum"]:
            raise ToolError("invalid_arguments", f"{tool} args.{key} must be <= {prop['maximum']}")


def _sha256(data: Optional[bytes]) -> Optional[str]:
    return hashlib.sha256(data).hexdigest() if data is not None else None


def _decode(data: Optional[bytes]) -> Optional[str]:
    return data.decode("utf-8", errors="replace") if data is not None else None


def _proof(before: Optional[bytes], after: Optional[bytes], readback_ok: bool) -> Dict[str, Any]:
    return {
        "before_hash": _sha256(before),
        "after_hash": _sha256(after),
        "before_bytes": len(before) if before is not None else 0,
        "after_bytes": len(after) if after is not None else 0,
        "readback_ok": readback_ok,
        "diff_stats": diff_stats(_decode(before), _decode(after)),
        "commit_id": None,
    }


class ToolExecutor:
    """
    The fixed tool set over one vault.

    Writes follow one protocol: take the vault write lock, write, read the
    file back from disk, and only on an exact byte match record a commit
    (inside the finalize gate, which keeps readers out). A mismatch or I/O
    error returns a failure envelope and records nothing.
    """

    def __init__(
        self,
        *,
        vault: VaultStore,
        commit_db_path: Path,
        retrieval: Optional[RetrievalEngine] = None,
        web: Optional[WebSearchClient] = None,
        lock: Optional[VaultLock] = None,
        chunking: tuple[int, int] = (1200, 120),
    ) -> None:
        self.vault = vault
        self.commit_db_path = commit_db_path
        self.retrieval = retrieval
        self.web = web
        self.lock = lock or vault_lock_for(vault.root)
        self.chunking = chunking
        init_commit_db(commit_db_path)
        self.specs: Dict[str, ToolSpec] = {spec.name: spec for spec in self._build_specs()}

    def list_definitions(self) -> List[ToolDefinition]:
        return [
            ToolDefinition(name=s.name, description=s.description, parameters=s.args_schema)
            for s in self.specs.values()
        ]

    def is_mutating(self, name: str) -> bool:
        spec = self.specs.get(name)
        return bool(spec and spec.mutating)

    def execute(
        self,
        name: str,
        args: Dict[str, Any],
        context: Optional[ToolContext] = None,
        *,
        raw_arguments: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run one tool and always return an envelope; tool failures never raise."""
        ctx = context or ToolContext()
        started = time.monotonic()
        envelope: Dict[str, Any] = {
            "ok": False,
            "tool": name,
            "action": None,
            "result": None,
            "proof": None,
            "target": None,
            "trace_id": uuid.uuid4().hex,
            "ts": now_iso(),
            "duration_ms": 0,
            "error": None,
        }
        spec = self.specs.get(name)
        try:
            if spec is None:
                raise ToolError("unknown_tool", f"Unknown tool: {name}")
            if raw_arguments is not None:
                raise ToolError("invalid_arguments", f"{name} arguments are not a JSON object: {raw_arguments[:200]}")
            validate_args(name, spec.args_schema, args)
            outcome = spec.func(args, ctx)
        except ToolError as exc:
            envelope["error"] = {"code": exc.code, "message": str(exc), "retriable": exc.retriable}
            envelope["proof"] = exc.proof
            envelope["target"] = exc.target
            envelope["action"] = "failed"
        except VaultPathError as exc:
            envelope["error"] = {"code": exc.code, "message": str(exc), "retriable": False}
            envelope["action"] = "failed"
        except (OSError, sqlite3.Error) as exc:
            logger.warning("tool %s hit a storage error: %s", name, exc)
            envelope["error"] = {"code": "io_error", "message": f"{name} failed: {exc}", "retriable": True}
            envelope["action"] = "failed"
        else:
            envelope.update(
                ok=True,
                action=outcome.action,
                result=outcome.result,
                proof=outcome.proof,
                target=outcome.target,
            )
        envelope["duration_ms"] = int((time.monotonic() - started) * 1000)
        if not envelope["ok"]:
            logger.info("tool %s failed: %s", name, envelope["error"])
        return envelope

    def _search(self, args: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        if self.retrieval is None:
            raise ToolError("not_configured", "Search index is not configured")
        query = str(args["query"]).strip()
        k = int(args.get("k", 5))
        folder = str(args.get("folder") or "")
        prefix = normalize_rel_path(folder, require_note=False) if folder else ""
        try:
            found = self.retrieval.search(query, k, path_prefix=prefix, read_gate=self.lock.reading)
        except sqlite3.Error as exc:
            raise ToolError("search_failed", f"Search failed: {exc}", retriable=True) from exc
        hits = [
            {
                "path": c.path,
                "heading": c.heading,
                "chunk_key": c.chunk_key,
                "score": round(c.score, 6),
                "method": c.method,
                "source": f"[Source: {c.source_label}]",
                "text": c.text if len(c.text) <= SNIPPET_CHARS else c.text[: SNIPPET_CHARS - 3] + "...",
            }
            for c in found.chunks
        ]
        summary = f"{len(hits)} result(s) for '{query}'" if hits else f"No matching notes for '{query}'"
        return ToolOutcome(
            action="search",
            result={
                "query": query,
                "count": len(hits),
                "hits": hits,
                "hyde_used": found.hyde_used,
                "rerank_applied": found.rerank_applied,
                "rerank_reason": found.rerank_reason,
                "warnings": found.warnings,
                "summary": summary,
            },
        )

    def _read(self, args: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        path = normalize_rel_path(str(args["path"]))
        max_chars = int(args.get("max_chars", READ_MAX_CHARS))
        with self.lock.reading():
            data = self.vault.read_bytes(path)
        if data is None:
            raise ToolError("not_found", f"Note does not exist: {path}", target=path)
        text = data.decode("utf-8", errors="replace")
        truncated = len(text) > max_chars
        return ToolOutcome(
            action="read",
            target=path,
            result={
                "path": path,
                "sha256": _sha256(data),
                "bytes": len(data),
                "chars_full": len(text),
                "truncated": truncated,
                "content": text[:max_chars] if truncated else text,
                "summary": f"Read {path} ({len(data)} bytes)",
            },
        )

    def _list(self, args: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        folder = normalize_rel_path(str(args.get("folder") or ""), require_note=False)
        try:
            with self.lock.reading():
                entries = self.vault.list_folder(folder)
        except OSError as exc:
            raise ToolError("list_failed", f"Could not list {folder or '/'}: {exc}") from exc
        return ToolOutcome(
            action="list",
            target=folder or "/",
            result={
                "folder": folder or "/",
                "entries": [{"path": e.path, "kind": e.kind, "size": e.size} for e in entries],
                "summary": f"{len(entries)} entries in {folder or '/'}",
            },
        )

    def _create(self, args: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        path = normalize_rel_path(str(args["path"]))
        return self._write(path, str(args["content"]).encode("utf-8"), ACTION_CREATE, ctx)

    def _update(self, args: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        path = normalize_rel_path(str(args["path"]))
        return self._write(path, str(args["content"]).encode("utf-8"), ACTION_UPDATE, ctx)

    def _write(
        self,
        path: str,
        intended: Optional[bytes],
        action: str,
        ctx: ToolContext,
        *,
        message: str = "",
        reverts: Optional[str] = None,
    ) -> ToolOutcome:
        """intended=None deletes the note (only reverts of a create do that)."""
        with self.lock.writing():
            before = self.vault.read_bytes(path)
            if action == ACTION_CREATE and before is not None:
                raise ToolError("file_exists", f"Note already exists: {path}; use kb_update", target=path)
            if action == ACTION_UPDATE and before is None:
                raise ToolError("not_found", f"Note does not exist: {path}; use kb_create", target=path)

            if action == ACTION_UPDATE and intended == before:
                proof = _proof(before, before, True)
                return ToolOutcome(
                    action=ACTION_NOOP,
                    target=path,
                    proof=proof,
                    result={"path": path, "summary": f"{path} already has this content; nothing written"},
                )

            try:
                if intended is None:
                    self.vault.delete(path)
                else:
                    self.vault.write_bytes(path, intended)
            except OSError as exc:
                raise ToolError("write_failed", f"Write to {path} failed: {exc}", retriable=True, target=path) from exc

            try:
                readback = self.vault.read_bytes(path)
            except OSError as exc:
                raise ToolError(
                    "verify_failed",
                    f"Readback of {path} failed: {exc}",
                    proof=_proof(before, None, False),
                    target=path,
                ) from exc
            if readback != intended:
                logger.warning("readback mismatch for %s: no commit recorded", path)
                raise ToolError(
                    "verify_mismatch",
                    f"Readback of {path} does not match the intended content; the write is NOT confirmed",
                    proof=_proof(before, readback, False),
                    target=path,
                )

            proof = _proof(before, readback, True)
            with self.lock.finalizing():
                with connect_commit_db(self.commit_db_path) as conn:
                    commit = record_commit(
                        conn,
                        path=path,
                        action=action,
                        before=before,
                        after=readback,
                        run_id=ctx.run_id,
                        message=message,
                        reverts=reverts,
                    )
                proof["commit_id"] = commit.get("commit_id")
                self._reindex(path, _decode(readback))

        verb = {ACTION_CREATE: "Created", ACTION_UPDATE: "Updated", ACTION_REVERT: "Reverted"}.get(action, action)
        return ToolOutcome(
            action=action,
            target=path,
            proof=proof,
            result={"path": path, "commit_id": proof["commit_id"], "summary": f"{verb} {path} (verified)"},
        )

    def _reindex(self, path: str, content: Optional[str]) -> None:
        if self.retrieval is None:
            return
        max_chars, overlap = self.chunking
        try:
            with chunk_db.connect_db(self.retrieval.db_path) as conn:
                if content is None:
                    chunk_db.delete_note(conn, path)
                else:
                    index_note_text(conn, path=path, text=content, max_chars=max_chars, overlap=overlap)
        except sqlite3.Error as exc:
            # The note is committed; the index catches up on the next reindex.
            logger.warning("index refresh failed for %s: %s", path, exc)

    def _web_search(self, args: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        if self.web is None:
            raise ToolError("not_configured", "Web search is not configured")
        query = str(args["query"]).strip()
        try:
            results = self.web.search(query, int(args.get("max_results", 5)))
        except WebSearchError as exc:
            raise ToolError(exc.code, str(exc), retriable=exc.retriable) from exc
        return ToolOutcome(
            action="web_search",
            result={
                "query": query,
                "count": len(results),
                "results": [r.to_dict() for r in results],
                "summary": f"{len(results)} web result(s) for '{query}'",
            },
        )

    def _history(self, args: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        path = normalize_rel_path(str(args["path"])) if args.get("path") else None
        with connect_commit_db(self.commit_db_path) as conn:
            commits = list_commits(conn, path=path, limit=int(args.get("limit", 10)))
        return ToolOutcome(
            action="history",
            target=path,
            result={"path": path, "commits": commits, "summary": f"{len(commits)} commit(s)"},
        )

    def _load_commit(self, commit_id: str) -> tuple[Dict[str, Any], Optional[bytes], Optional[bytes]]:
        with connect_commit_db(self.commit_db_path) as conn:
            commit = get_commit(conn, commit_id)
            if commit is None:
                raise ToolError("not_found", f"Unknown commit: {commit_id}")
            return commit, get_blob(conn, commit["before_hash"]), get_blob(conn, commit["after_hash"])

    def _diff(self, args: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        commit, before, after = self._load_commit(str(args["commit_id"]).strip())
        lines = difflib.unified_diff(
            (_decode(before) or "").splitlines(keepends=True),
            (_decode(after) or "").splitlines(keepends=True),
            fromfile=f"a/{commit['path']}",
            tofile=f"b/{commit['path']}",
        )
        return ToolOutcome(
            action="diff",
            target=commit["path"],
            result={
                "commit_id": commit["commit_id"],
                "path": commit["path"],
                "diff_stats": commit["diff_stats"],
                "diff": "".join(lines),
                "summary": f"Diff of {commit['commit_id']} on {commit['path']}",
            },
        )

    def _revert(self, args: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        """Restore a commit's before-state as a new forward commit."""
        commit_id = str(args["commit_id"]).strip()
        commit, before, _ = self._load_commit(commit_id)
        path = str(commit["path"])
        # A create has no before-state, so before=None removes the note.
        return self._write(
            path,
            before,
            ACTION_REVERT,
            ctx,
            message=f"revert {commit_id}",
            reverts=commit_id,
        )

    def _build_specs(self) -> List[ToolSpec]:
        path_prop = {"type": "string", "description": "Vault-relative note path, e.g. projects/plan.md"}
        return [
            ToolSpec(
                name="kb_search",
                description="Search the knowledge base (hybrid lexical + semantic) and return ranked note excerpts.",
                args_schema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string"},
                        "k": {"type": "integer", "minimum": 1, "maximum": 20},
                        "folder": {"type": "string"},
                    },
                    "required": ["query"],
                    "additionalProperties": False,
                },
                mutating=False,
                func=self._search,
            ),
            ToolSpec(
                name="kb_read",
                description="Read a note from the vault.",
                args_schema={
                    "type": "object",
                    "properties": {
                        "path": path_prop,
                        "max_chars": {"type": "integer", "minimum": 200, "maximum": 200_000},
                    },
                    "required": ["path"],
                    "additionalProperties": False,
                },
                mutating=False,
                func=self._read,
            ),
            ToolSpec(
                name="kb_list",
                description="List notes and folders in a vault folder.",
                args_schema={
                    "type": "object",
                    "properties": {"folder": {"type": "string"}},
                    "required": [],
                    "additionalProperties": False,
                },
                mutating=False,
                func=self._list,
            ),
            ToolSpec(
                name="kb_create",
                description="Create a new markdown note. Fails if the note exists.",
                args_schema={
                    "type": "object",
                    "properties": {"path": path_prop, "content": {"type": "string"}},
                    "required": ["path", "content"],
                    "additionalProperties": False,
                },
                mutating=True,
                func=self._create,
            ),
            ToolSpec(
                name="kb_update",
                description="Replace the full content of an existing note.",
                args_schema={
                    "type": "object",
                    "properties": {"path": path_prop, "content": {"type": "string"}},
                    "required": ["path", "content"],
                    "additionalProperties": False,
                },
                mutating=True,
                func=self._update,
            ),
            ToolSpec(
                name="web_search",
                description="Search the web and return titles, URLs and snippets.",
                args_schema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string"},
                        "max_results": {"type": "integer", "minimum": 1, "maximum": 20},
                    },
                    "required": ["query"],
                    "additionalProperties": False,
                },
                mutating=False,
                func=self._web_search,
            ),
            ToolSpec(
                name="kb_history",
                description="List recent verified commits, optionally for one note.",
                args_schema={
                    "type": "object",
                    "properties": {"path": path_prop, "limit": {"type": "integer", "minimum": 1, "maximum": 100}},
                    "required": [],
                    "additionalProperties": False,
                },
                mutating=False,
                func=self._history,
            ),
            ToolSpec(
                name="kb_diff",
                description="Show the diff recorded by a commit.",
                args_schema={
                    "type": "object",
                    "properties": {"commit_id": {"type": "string"}},
                    "required": ["commit_id"],
                    "additionalProperties": False,
                },
                mutating=False,
                func=self._diff,
            ),
            ToolSpec(
                name="kb_revert",
                description="Undo a commit by restoring the note to its content before that commit.",
                args_schema={
                    "type": "object",
                    "properties": {"commit_id": {"type": "string"}},
                    "required": ["commit_id"],
                    "additionalProperties": False,
                },
                mutating=True,
                func=self._revert,
            ),
        ]
