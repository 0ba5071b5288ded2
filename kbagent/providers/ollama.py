from __future__ import annotations

import threading
from typing import Any, Dict, Iterator, List, Optional

from kbagent.config import ProviderSettings
from kbagent.errors import classify_provider_error
from kbagent.protocol import ChatMessage, ToolCall, parse_tool_arguments, try_parse_text_tool_call
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
    iter_response_lines,
    post_stream,
    tool_schema_openai,
)


def _message_payload(msg: ChatMessage) -> Dict[str, Any]:
    out: Dict[str, Any] = {"role": msg.role, "content": msg.content}
    if msg.tool_calls:
        out["tool_calls"] = [
            {"function": {"name": call.name, "arguments": call.args}} for call in msg.tool_calls
        ]
    if msg.tool_name:
        out["tool_name"] = msg.tool_name
    return out


class OllamaProvider(ChatProvider):
    """Ollama /api/chat with NDJSON streaming."""

    name = "ollama"

    def __init__(self, settings: ProviderSettings) -> None:
        self.base_url = settings.base_url or "http://127.0.0.1:11434"
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
        deadline = StreamDeadline(timeout_s, provider=self.name, model=model)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [_message_payload(m) for m in messages],
            "stream": True,
        }
        schema = tool_schema_openai(tools)
        if schema:
            payload["tools"] = schema

        response = post_stream(f"{self.base_url}/api/chat", payload=payload, headers={}, deadline=deadline)

        text_parts: List[str] = []
        native_calls = 0
        for line in iter_response_lines(response, deadline, cancel):
            if not line.strip():
                continue
            chunk = decode_json_chunk(line, deadline)
            if chunk.get("error"):
                raise classify_provider_error(str(chunk["error"]), provider=self.name, model=model)

            message = chunk.get("message")
            if isinstance(message, dict):
                thinking = message.get("thinking")
                if isinstance(thinking, str) and thinking:
                    yield ThinkingDelta(thinking)
                content = message.get("content")
                if isinstance(content, str) and content:
                    text_parts.append(content)
                    yield TextDelta(content)
                for raw_call in message.get("tool_calls") or []:
                    fn = raw_call.get("function") if isinstance(raw_call, dict) else None
                    if not isinstance(fn, dict) or not fn.get("name"):
                        continue
                    args, raw_text = parse_tool_arguments(fn.get("arguments"))
                    native_calls += 1
                    yield ToolCallEvent(ToolCall(name=str(fn["name"]), args=args, raw_arguments=raw_text))

            if chunk.get("done"):
                prompt = as_count(chunk.get("prompt_eval_count"))
                completion = as_count(chunk.get("eval_count"))
                yield UsageEvent(
                    TokenUsage(input_tokens=prompt, output_tokens=completion, total_tokens=prompt + completion)
                )
                break

        # Small local models often write the call as a JSON envelope in the text.
        if native_calls == 0 and tools:
            parsed = try_parse_text_tool_call("".join(text_parts))
            if parsed is not None:
                yield ToolCallEvent(parsed.tool_call)
