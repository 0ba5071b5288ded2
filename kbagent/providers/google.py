from __future__ import annotations

import threading
from typing import Any, Dict, Iterator, List, Optional

from kbagent.config import ProviderSettings
from kbagent.errors import ProviderFatal, classify_provider_error
from kbagent.protocol import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_TOOL, ChatMessage, ToolCall
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


def _parts(msg: ChatMessage) -> List[Dict[str, Any]]:
    if msg.role == ROLE_TOOL:
        return [{"functionResponse": {"name": msg.tool_name or "", "response": {"content": msg.content}}}]
    parts: List[Dict[str, Any]] = []
    if msg.content:
        parts.append({"text": msg.content})
    for call in msg.tool_calls:
        parts.append({"functionCall": {"name": call.name, "args": call.args}})
    return parts


def build_contents(messages: List[ChatMessage]) -> tuple[str, List[Dict[str, Any]]]:
    system_parts: List[str] = []
    contents: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == ROLE_SYSTEM:
            system_parts.append(msg.content)
            continue
        role = "model" if msg.role == ROLE_ASSISTANT else "user"
        parts = _parts(msg)
        if not parts:
            continue
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].extend(parts)
        else:
            contents.append({"role": role, "parts": parts})
    return "\n\n".join(p for p in system_parts if p), contents


class GoogleProvider(ChatProvider):
    """Gemini streamGenerateContent over SSE."""

    name = "google"

    def __init__(self, settings: ProviderSettings) -> None:
        self.base_url = settings.base_url or "https://generativelanguage.googleapis.com/v1beta"
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
            raise ProviderFatal("No API key configured for google (unauthorized)", provider=self.name, model=model)
        deadline = StreamDeadline(timeout_s, provider=self.name, model=model)
        system, contents = build_contents(messages)
        payload: Dict[str, Any] = {"contents": contents}
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters} for t in tools
                    ]
                }
            ]
        response = post_stream(
            f"{self.base_url}/models/{model}:streamGenerateContent",
            payload=payload,
            headers={"x-goog-api-key": self.settings.api_key},
            params={"alt": "sse"},
            deadline=deadline,
        )

        last_usage: Optional[TokenUsage] = None
        for _, data in iter_sse_data(response, deadline, cancel):
            chunk = decode_json_chunk(data, deadline)
            error = chunk.get("error")
            if isinstance(error, dict):
                code = error.get("code")
                raise classify_provider_error(
                    str(error.get("message") or error),
                    provider=self.name,
                    model=model,
                    status_code=code if isinstance(code, int) else None,
                )
            for candidate in chunk.get("candidates") or []:
                content = candidate.get("content") if isinstance(candidate, dict) else None
                for part in (content or {}).get("parts") or []:
                    if not isinstance(part, dict):
                        continue
                    text = part.get("text")
                    if isinstance(text, str) and text:
                        yield ThinkingDelta(text) if part.get("thought") else TextDelta(text)
                    fn = part.get("functionCall")
                    if isinstance(fn, dict) and fn.get("name"):
                        args = fn.get("args")
                        yield ToolCallEvent(ToolCall(name=str(fn["name"]), args=args if isinstance(args, dict) else {}))
            meta = chunk.get("usageMetadata")
            if isinstance(meta, dict):
                # usageMetadata is cumulative, only the last one counts.
                prompt = as_count(meta.get("promptTokenCount"))
                output = as_count(meta.get("candidatesTokenCount"))
                last_usage = TokenUsage(
                    input_tokens=prompt,
                    output_tokens=output,
                    total_tokens=as_count(meta.get("totalTokenCount")) or prompt + output,
                    reasoning_tokens=as_count(meta.get("thoughtsTokenCount")),
                    cache_read_tokens=as_count(meta.get("cachedContentTokenCount")),
                )
        if last_usage is not None:
            yield UsageEvent(last_usage)
