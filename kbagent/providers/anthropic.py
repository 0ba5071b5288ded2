from __future__ import annotations

import threading
from typing import Any, Dict, Iterator, List, Optional

from kbagent.config import ProviderSettings
from kbagent.errors import ProviderFatal, classify_provider_error
from kbagent.protocol import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_TOOL, ChatMessage, ToolCall, parse_tool_arguments
from kbagent.providers.base import (
    ChatProvider,
    StreamDeadline,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    TokenUsage,
    ToolCallEvent,
    ToolDefinition,
    UsageEvent,
    as_count,
    decode_json_chunk,
    iter_sse_data,
    post_stream,
)


ANTHROPIC_VERSION = "2023-06-01"
MAX_OUTPUT_TOKENS = 8192


def _content_blocks(msg: ChatMessage) -> List[Dict[str, Any]]:
    if msg.role == ROLE_TOOL:
        return [{"type": "tool_result", "tool_use_id": msg.tool_call_id or "", "content": msg.content}]
    blocks: List[Dict[str, Any]] = []
    if msg.content:
        blocks.append({"type": "text", "text": msg.content})
    for call in msg.tool_calls:
        blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.args})
    return blocks


def build_messages(messages: List[ChatMessage]) -> tuple[str, List[Dict[str, Any]]]:
    """Split out system text and merge consecutive same-role turns; tool results travel as user turns."""
    system_parts: List[str] = []
    out: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == ROLE_SYSTEM:
            system_parts.append(msg.content)
            continue
        role = "assistant" if msg.role == ROLE_ASSISTANT else "user"
        blocks = _content_blocks(msg)
        if not blocks:
            continue
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": role, "content": blocks})
    return "\n\n".join(p for p in system_parts if p), out


class AnthropicProvider(ChatProvider):
    name = "anthropic"

    def __init__(self, settings: ProviderSettings) -> None:
        self.base_url = settings.base_url or "https://api.anthropic.com/v1"
        self.settings = settings

    def stream_chat(
        self,
        model: str,
        messages: List[ChatMessage],
        tools: Optional[List[ToolDefinition]],
        *,
        timeout_s: float,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[StreamEvent]:
        if not self.settings.api_key:
            raise ProviderFatal("No API key configured for anthropic (unauthorized)", provider=self.name, model=model)
        deadline = StreamDeadline(timeout_s, provider=self.name, model=model)
        system, turns = build_messages(messages)
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "messages": turns,
            "stream": True,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters} for t in tools
            ]
        headers = {
            "x-api-key": self.settings.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        response = post_stream(f"{self.base_url}/messages", payload=payload, headers=headers, deadline=deadline)

        usage = TokenUsage()
        blocks: Dict[int, Dict[str, Any]] = {}
        for event_name, data in iter_sse_data(response, deadline, cancel):
            chunk = decode_json_chunk(data, deadline)
            kind = str(chunk.get("type") or event_name)

            if kind == "error":
                err = chunk.get("error") or {}
                message = err.get("message") if isinstance(err, dict) else str(err)
                err_type = err.get("type", "") if isinstance(err, dict) else ""
                raise classify_provider_error(
                    f"{err_type}: {message}" if err_type else str(message),
                    provider=self.name,
                    model=model,
                    status_code=529 if err_type == "overloaded_error" else None,
                )
            if kind == "message_start":
                raw = (chunk.get("message") or {}).get("usage") or {}
                usage.input_tokens = as_count(raw.get("input_tokens"))
                usage.cache_read_tokens = as_count(raw.get("cache_read_input_tokens"))
                usage.cache_write_tokens = as_count(raw.get("cache_creation_input_tokens"))
            elif kind == "content_block_start":
                block = chunk.get("content_block") or {}
                blocks[int(chunk.get("index", 0))] = {
                    "type": block.get("type"),
                    "id": block.get("id", ""),
                    "name": block.get("name", ""),
                    "json": [],
                }
            elif kind == "content_block_delta":
                delta = chunk.get("delta") or {}
                dtype = delta.get("type")
                if dtype == "text_delta" and delta.get("text"):
                    yield TextDelta(str(delta["text"]))
                elif dtype == "thinking_delta" and delta.get("thinking"):
                    yield ThinkingDelta(str(delta["thinking"]))
                elif dtype == "input_json_delta":
                    slot = blocks.get(int(chunk.get("index", 0)))
                    if slot is not None:
                        slot["json"].append(str(delta.get("partial_json") or ""))
            elif kind == "content_block_stop":
                slot = blocks.pop(int(chunk.get("index", 0)), None)
                if slot is not None and slot["type"] == "tool_use" and slot["name"]:
                    args, raw_text = parse_tool_arguments("".join(slot["json"]))
                    call = ToolCall(name=str(slot["name"]), args=args, raw_arguments=raw_text)
                    if slot["id"]:
                        call.id = str(slot["id"])
                    yield ToolCallEvent(call)
            elif kind == "message_delta":
                raw = chunk.get("usage") or {}
                usage.output_tokens = as_count(raw.get("output_tokens"))
            elif kind == "message_stop":
                break

        usage.total_tokens = usage.input_tokens + usage.output_tokens
        yield UsageEvent(usage)
