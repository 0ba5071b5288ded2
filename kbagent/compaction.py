from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

from kbagent.budget import approximate_model_context_limit, approximate_token_count
from kbagent.config import CompactionConfig
from kbagent.protocol import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_TOOL, ROLE_USER, ChatMessage


logger = logging.getLogger("kbagent.compaction")

MIN_MESSAGES = 4
DIGEST_MIN_CHARS = 400
SUMMARY_INPUT_CHARS = 12_000
SUMMARY_MESSAGE_CHARS = 1_200
SUMMARY_PREFIX = "Context compaction summary: "
SUMMARY_SYSTEM_PROMPT = (
    "Summarize the provided chat history in 2-3 sentences. "
    "Keep key decisions, unresolved tasks, and factual constraints."
)
FALLBACK_SUMMARY = (
    "Conversation context was compacted. Keep using tool outputs and recent user constraints for subsequent steps."
)
FLUSH_NOTE_PATH = "context-compaction-flush.md"

Summarizer = Callable[[List[ChatMessage]], Optional[str]]
# (summary) -> tool envelope of the write that stored it.
FlushWriter = Callable[[str], Dict[str, Any]]


@dataclass
class CompactionOutcome:
    messages: List[ChatMessage]
    summary: str
    payload: Dict[str, Any]


def _importance(index: int, total: int, keep_recent: int, msg: ChatMessage) -> int:
    score = 0
    if msg.tool_calls or msg.role == ROLE_TOOL:
        score += 3
    if index + keep_recent >= total:
        score += 2
    if msg.role == ROLE_USER:
        score += 1
    return score


def digest_tool_body(content: str) -> str:
    data = content.encode("utf-8")
    first_line = content.strip().splitlines()[0] if content.strip() else ""
    if len(first_line) > 160:
        first_line = first_line[:157] + "..."
    sha = hashlib.sha256(data).hexdigest()[:12]
    return f"[compacted tool result] {first_line} ({len(data)} bytes, sha256 {sha})"


def format_for_summary(messages: List[ChatMessage], max_chars: int = SUMMARY_INPUT_CHARS) -> str:
    remaining = max_chars
    parts: List[str] = []
    for msg in messages:
        if remaining <= 0:
            break
        content = msg.content.strip()
        if not content:
            continue
        piece = f"{msg.role.upper()}: {content[:SUMMARY_MESSAGE_CHARS]}"
        if len(piece) >= remaining:
            parts.append(piece[:remaining])
            break
        remaining -= len(piece)
        parts.append(piece)
    return "\n\n".join(parts)


def summary_request(messages: List[ChatMessage]) -> Optional[List[ChatMessage]]:
    formatted = format_for_summary(messages)
    if not formatted.strip():
        return None
    return [
        ChatMessage.system(SUMMARY_SYSTEM_PROMPT),
        ChatMessage.user(f"History to summarize:\n\n{formatted}"),
    ]


def _envelope_ok(content: str) -> bool:
    try:
        obj = json.loads(content)
    except json.JSONDecodeError:
        return False
    return isinstance(obj, dict) and obj.get("ok") is True


def needs_flush(dropped: List[ChatMessage]) -> bool:
    """Only conversations with human-visible content and no verified write of their own are worth flushing."""
    has_content = any(
        m.role in (ROLE_USER, ROLE_ASSISTANT) and m.content.strip() for m in dropped
    )
    wrote = any(
        m.role == ROLE_TOOL and m.tool_name in ("kb_create", "kb_update") and _envelope_ok(m.content)
        for m in dropped
    )
    return has_content and not wrote


def maybe_compact(
    messages: List[ChatMessage],
    *,
    model: str,
    config: CompactionConfig,
    summarize: Optional[Summarizer] = None,
    flush: Optional[FlushWriter] = None,
) -> Optional[CompactionOutcome]:
    """
    Shrink history that is close to the model's context limit.

    The leading system prompt and the most recent messages stay untouched.
    Older tool results keep their role and position but their bodies become a
    digest. Older plain chat turns are dropped and replaced by one summary
    system message placed right after the system prompt. Returns None when
    nothing needed compacting.
    """
    limit = approximate_model_context_limit(model)
    threshold = int(limit * config.threshold_ratio)
    before = approximate_token_count(messages)
    total = len(messages)
    if before < threshold or total < MIN_MESSAGES:
        return None

    keep = min(config.keep_recent, total - 1)
    end = total - keep
    if end <= 1:
        return None

    drop = {i for i in range(1, end) if _importance(i, total, keep, messages[i]) <= 2}
    digested = 0
    out: List[ChatMessage] = []
    dropped: List[ChatMessage] = []
    for i, msg in enumerate(messages):
        if i in drop:
            dropped.append(msg)
            continue
        if 1 <= i < end and msg.role == ROLE_TOOL and len(msg.content) >= DIGEST_MIN_CHARS:
            out.append(replace(msg, content=digest_tool_body(msg.content)))
            digested += 1
            continue
        out.append(msg)

    if not dropped and digested == 0:
        return None

    summary: Optional[str] = None
    if dropped and summarize is not None:
        try:
            summary = summarize(dropped)
        except Exception as exc:
            logger.warning("compaction summary failed: %s", exc)
            summary = None
    summary = (summary or "").strip() or FALLBACK_SUMMARY

    flush_ok: Optional[bool] = None
    if flush is not None and config.flush_to_note and needs_flush(dropped):
        envelope = flush(summary)
        flush_ok = bool(envelope.get("ok"))

    if dropped:
        insert_at = 1 if out and out[0].role == ROLE_SYSTEM else 0
        out.insert(insert_at, ChatMessage.system(SUMMARY_PREFIX + summary))

    after = approximate_token_count(out)
    payload: Dict[str, Any] = {
        "before_tokens": before,
        "after_tokens": after,
        "model_context_limit": limit,
        "trigger_threshold": threshold,
        "removed_messages": len(dropped),
        "digested_messages": digested,
        "summary_chars": len(summary),
    }
    if flush_ok is not None:
        payload["flush_write_executed"] = True
        payload["flush_ok"] = flush_ok
    logger.info("compacted context for %s: %d -> %d tokens", model, before, after)
    return CompactionOutcome(messages=out, summary=summary, payload=payload)
