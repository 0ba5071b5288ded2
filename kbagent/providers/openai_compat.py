from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from kbagent.config import ProviderSettings
from kbagent.errors import ProviderFatal, classify_provider_error
from kbagent.protocol import ROLE_TOOL, ChatMessage, ToolCall, parse_tool_arguments
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
    tool_schema_openai,
)


DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "lm_studio": "http://127.0.0.1:1234/v1",
}


@dataclass
class _PendingCall:
    id: str = ""
    name: str = ""
    arguments: List[str] = field(default_factory=list)


def _message_payload(msg: ChatMessage) -> Dict[str, Any]:
    if msg.role == ROLE_TOOL:
        return {"role": "tool", "tool_call_id": msg.tool_call_id or "", "content": msg.content}
    out: Dict[str, Any] = {"role": msg.role, "content": msg.content}
    if msg.tool_calls:
        out["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.raw_arguments or call.arguments_json()},
            }
            for call in msg.tool_calls
        ]
    return out


def _usage_from(raw: Dict[str, Any]) -> TokenUsage:
    prompt = as_count(raw.get("prompt_tokens"))
    completion = as_count(raw.get("completion_tokens"))
    details = raw.get("completion_tokens_details") or {}
    prompt_details = raw.get("prompt_tokens_details") or {}
    return TokenUsage(
        input_tokens=prompt,
        output_tokens=completion,
        total_tokens=as_count(raw.get("total_tokens")) or prompt + completion,
        reasoning_tokens=as_count(details.get("reasoning_tokens")) if isinstance(details, dict) else 0,
        cache_read_tokens=as_count(prompt_details.get("cached_tokens")) if isinstance(prompt_details, dict) else 0,
    )


def _reasoning_text(delta: Dict[str, Any]) -> str:
    for key in ("reasoning", "reasoning_content"):
        value = delta.get(key)
        if isinstance(value, str) and value:
            return value
    details = delta.get("reasoning_details")
    if isinstance(details, list):
        return "".join(str(d.get("text") or "") for d in details if isinstance(d, dict))
    return ""


class OpenAICompatProvider(ChatProvider):
    """Chat Completions SSE, shared by OpenAI, OpenRouter and LM Studio."""

    def __init__(self, name: str, settings: ProviderSettings) -> None:
        self.name = name
        self.base_url = settings.base_url or DEFAULT_BASE_URLS.get(name, "")
        self.settings = settings

    def _headers(self, model: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        elif self.name in ("openai", "openrouter"):
            raise ProviderFatal(
                f"No API key configured for {self.name} (unauthorized)", provider=self.name, model=model
            )
        return headers

    def stream_chat(
        self,
        model: str,
        messages: List[ChatMessage],
        tools: Optional[List[ToolDefinition]],
        *,
        timeout_s: float,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[StreamEvent]:
        deadline = StreamDeadline(timeout_s, provider=self.name, model=model)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [_message_payload(m) for m in messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        schema = tool_schema_openai(tools)
        if schema:
            payload["tools"] = schema

        response = post_stream(
            f"{self.base_url}/chat/completions", payload=payload, headers=self._headers(model), deadline=deadline
        )

        pending: Dict[int, _PendingCall] = {}
        for _, data in iter_sse_data(response, deadline, cancel):
            if data.strip() == "[DONE]":
                break
            chunk = decode_json_chunk(data, deadline)
            error = chunk.get("error")
            if error:
                message = error.get("message") if isinstance(error, dict) else str(error)
                code = error.get("code") if isinstance(error, dict) else None
                raise classify_provider_error(
                    str(message),
                    provider=self.name,
                    model=model,
                    status_code=code if isinstance(code, int) else None,
                )
            usage = chunk.get("usage")
            if isinstance(usage, dict):
                yield UsageEvent(_usage_from(usage))

            for choice in chunk.get("choices") or []:
                delta = choice.get("delta") if isinstance(choice, dict) else None
                if not isinstance(delta, dict):
                    continue
                reasoning = _reasoning_text(delta)
                if reasoning:
                    yield ThinkingDelta(reasoning)
                content = delta.get("content")
                if isinstance(content, str) and content:
                    yield TextDelta(content)
                for raw_call in delta.get("tool_calls") or []:
                    index = int(raw_call.get("index", 0))
                    slot = pending.setdefault(index, _PendingCall())
                    if raw_call.get("id"):
                        slot.id = str(raw_call["id"])
                    fn = raw_call.get("function") or {}
                    if fn.get("name"):
                        slot.name = str(fn["name"])
                    if fn.get("arguments"):
                        slot.arguments.append(str(fn["arguments"]))

        for index in sorted(pending):
            slot = pending[index]
            if not slot.name:
                continue
            args, raw_text = parse_tool_arguments("".join(slot.arguments))
            call = ToolCall(name=slot.name, args=args, raw_arguments=raw_text)
            if slot.id:
                call.id = slot.id
            yield ToolCallEvent(call)
