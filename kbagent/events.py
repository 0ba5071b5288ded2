from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


SCHEMA_VERSION = 1

CH_RUN_STATE = "run_state"
CH_THINKING_SUMMARY = "thinking_summary"
CH_TEXT_DELTA = "text_delta"
CH_TOOL_CALL = "tool_call"
CH_TOOL_START = "tool_start"
CH_TOOL_RESULT = "tool_result"
CH_VERIFICATION = "verification"
CH_PROVIDER_RETRY = "provider_retry"
CH_PROVIDER_FALLBACK = "provider_fallback"
CH_CONTEXT_COMPACTION = "context_compaction"
CH_TIMELINE_STEP = "timeline_step"
CH_USAGE = "usage"

CHANNELS = (
    CH_RUN_STATE,
    CH_THINKING_SUMMARY,
    CH_TEXT_DELTA,
    CH_TOOL_CALL,
    CH_TOOL_START,
    CH_TOOL_RESULT,
    CH_VERIFICATION,
    CH_PROVIDER_RETRY,
    CH_PROVIDER_FALLBACK,
    CH_CONTEXT_COMPACTION,
    CH_TIMELINE_STEP,
    CH_USAGE,
)

# Keys worth showing in a one-line preview of tool arguments.
_PREVIEW_ARG_KEYS = ("query", "path", "folder", "commit_id")
_PREVIEW_CHARS = 240


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def versioned(payload: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(payload)
    out["schema_version"] = SCHEMA_VERSION
    return out


def run_state_payload(run_id: str, state: str, iteration: int, reason: Optional[str] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"run_id": run_id, "state": state, "iteration": int(iteration), "ts": now_iso()}
    if reason:
        payload["reason"] = reason
    return versioned(payload)


def args_preview(args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    preview = {k: args[k] for k in _PREVIEW_ARG_KEYS if k in args}
    return preview or None


def result_preview(envelope: Dict[str, Any]) -> Optional[str]:
    if envelope.get("ok"):
        result = envelope.get("result")
        summary = result.get("summary") if isinstance(result, dict) else None
        text = str(summary) if summary else None
    else:
        error = envelope.get("error") or {}
        text = str(error.get("message") or "") or None
    if text and len(text) > _PREVIEW_CHARS:
        text = text[: _PREVIEW_CHARS - 3] + "..."
    return text


def file_changes(envelope: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    """Describe the vault change carried by a write envelope, if any."""
    proof = envelope.get("proof")
    target = envelope.get("target")
    if not isinstance(proof, dict) or not target:
        return None
    return [
        {
            "path": target,
            "action": envelope.get("action"),
            "before_hash": proof.get("before_hash"),
            "after_hash": proof.get("after_hash"),
            "before_bytes": proof.get("before_bytes"),
            "after_bytes": proof.get("after_bytes"),
            "readback_ok": proof.get("readback_ok"),
            "diff_stats": proof.get("diff_stats"),
            "commit_id": proof.get("commit_id"),
        }
    ]


def timeline_step_payload(
    run_id: str,
    iteration: int,
    phase: str,
    *,
    tool: Optional[str] = None,
    args: Optional[Dict[str, Any]] = None,
    envelope: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": uuid.uuid4().hex,
        "run_id": run_id,
        "iteration": int(iteration),
        "phase": phase,
        "ts": now_iso(),
    }
    if tool:
        payload["tool"] = tool
    if args is not None:
        preview = args_preview(args)
        if preview is not None:
            payload["args_preview"] = preview
    if envelope is not None:
        preview_text = result_preview(envelope)
        if preview_text:
            payload["result_preview"] = preview_text
        changes = file_changes(envelope)
        if changes:
            payload["file_changes"] = changes
    return versioned(payload)


def verification_payload(run_id: str, iteration: int, tool: str, envelope: Dict[str, Any]) -> Dict[str, Any]:
    return versioned(
        {
            "run_id": run_id,
            "iteration": int(iteration),
            "tool": tool,
            "ok": bool(envelope.get("ok")),
            "action": envelope.get("action"),
            "target": envelope.get("target"),
            "proof": envelope.get("proof"),
            "error": envelope.get("error"),
            "ts": now_iso(),
        }
    )


def tool_call_payload(run_id: str, iteration: int, call_id: str, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    return versioned(
        {"run_id": run_id, "iteration": int(iteration), "call_id": call_id, "tool": name, "args": args, "ts": now_iso()}
    )


def tool_result_payload(run_id: str, iteration: int, call_id: str, envelope: Dict[str, Any]) -> Dict[str, Any]:
    return versioned(
        {
            "run_id": run_id,
            "iteration": int(iteration),
            "call_id": call_id,
            "tool": envelope.get("tool"),
            "ok": bool(envelope.get("ok")),
            "duration_ms": envelope.get("duration_ms"),
            "result_preview": result_preview(envelope),
            "error": envelope.get("error"),
            "ts": now_iso(),
        }
    )


def with_run(run_id: str, iteration: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    out = {"run_id": run_id, "iteration": int(iteration), "ts": now_iso()}
    out.update(payload)
    return versioned(out)
