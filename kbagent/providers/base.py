from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

import requests

from kbagent.errors import ProviderError, ProviderTransient, ResponseTimeout, classify_provider_error
from kbagent.protocol import ChatMessage, ToolCall


logger = logging.getLogger("kbagent.providers")

_U64_MAX = 2**64 - 1
_ERROR_BODY_CHARS = 600


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    def is_empty(self) -> bool:
        return not any(asdict(self).values())

    def add(self, other: "TokenUsage") -> None:
        for name, value in asdict(other).items():
            setattr(self, name, min(_U64_MAX, getattr(self, name) + max(0, int(value))))

    def effective_total(self) -> int:
        return self.total_tokens or (self.input_tokens + self.output_tokens)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: Dict[str, Any]


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True)
class ToolCallEvent:
    call: ToolCall


@dataclass(frozen=True)
class UsageEvent:
    usage: TokenUsage


@dataclass
class CompletionResult:
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    model_id: str = ""
    finish_reason: str = ""


StreamEvent = Union[TextDelta, ThinkingDelta, ToolCallEvent, UsageEvent]


class ChatProvider(ABC):
    """One provider backend. stream_chat yields deltas in generation order."""

    name: str = ""

    @abstractmethod
    def stream_chat(
        self,
        model: str,
        messages: List[ChatMessage],
        tools: Optional[List[ToolDefinition]],
        *,
        timeout_s: float,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[StreamEvent]:
        raise NotImplementedError


class StreamDeadline:
    """Wall-clock deadline for one streamed response."""

    def __init__(self, timeout_s: float, *, provider: str, model: str) -> None:
        self.timeout_s = max(0.001, float(timeout_s))
        self.expires_at = time.monotonic() + self.timeout_s
        self.provider = provider
        self.model = model

    def remaining(self) -> float:
        return max(0.001, self.expires_at - time.monotonic())

    def check(self) -> None:
        if time.monotonic() > self.expires_at:
            raise ResponseTimeout(
                f"response timed out after {self.timeout_s:.1f}s",
                provider=self.provider,
                model=self.model,
            )


def post_stream(
    url: str,
    *,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    deadline: StreamDeadline,
    params: Optional[Dict[str, str]] = None,
) -> requests.Response:
    """POST with stream=True and map transport and HTTP failures onto ProviderError."""
    try:
        response = requests.post(
            url,
            json=payload,
            headers=headers,
            params=params,
            stream=True,
            timeout=(min(10.0, deadline.remaining()), deadline.remaining()),
        )
    except requests.Timeout as exc:
        raise ResponseTimeout(
            f"request timed out: {exc}", provider=deadline.provider, model=deadline.model
        ) from exc
    except requests.ConnectionError as exc:
        raise ProviderTransient(
            f"connection failed (temporary): {exc}", provider=deadline.provider, model=deadline.model
        ) from exc
    except requests.RequestException as exc:
        raise classify_provider_error(str(exc), provider=deadline.provider, model=deadline.model) from exc

    if response.status_code >= 400:
        try:
            body = response.text[:_ERROR_BODY_CHARS]
        except requests.RequestException:
            body = ""
        finally:
            response.close()
        raise classify_provider_error(
            f"HTTP {response.status_code} from {deadline.provider}: {body}".strip(),
            provider=deadline.provider,
            model=deadline.model,
            status_code=response.status_code,
        )
    return response


def iter_response_lines(
    response: requests.Response,
    deadline: StreamDeadline,
    cancel: Optional[threading.Event] = None,
) -> Iterator[str]:
    try:
        for raw in response.iter_lines(decode_unicode=False):
            deadline.check()
            if cancel is not None and cancel.is_set():
                return
            if raw is None:
                continue
            yield raw.decode("utf-8", errors="replace")
    except requests.exceptions.ChunkedEncodingError as exc:
        raise ProviderTransient(
            f"stream interrupted (connection reset): {exc}", provider=deadline.provider, model=deadline.model
        ) from exc
    except requests.Timeout as exc:
        raise ResponseTimeout(
            f"stream read timed out: {exc}", provider=deadline.provider, model=deadline.model
        ) from exc
    except requests.ConnectionError as exc:
        raise ProviderTransient(
            f"stream connection reset: {exc}", provider=deadline.provider, model=deadline.model
        ) from exc
    finally:
        response.close()


def iter_sse_data(
    response: requests.Response,
    deadline: StreamDeadline,
    cancel: Optional[threading.Event] = None,
) -> Iterator[tuple[str, str]]:
    """Yield (event_name, data) pairs from a server-sent-events body."""
    event_name = ""
    data_lines: List[str] = []
    for line in iter_response_lines(response, deadline, cancel):
        if not line:
            if data_lines:
                yield event_name, "\n".join(data_lines)
            event_name = ""
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event_name = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        yield event_name, "\n".join(data_lines)


def decode_json_chunk(data: str, deadline: StreamDeadline) -> Dict[str, Any]:
    try:
        obj = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ProviderError(
            f"malformed stream chunk from {deadline.provider}: {data[:200]}",
            provider=deadline.provider,
            model=deadline.model,
        ) from exc
    if not isinstance(obj, dict):
        raise ProviderError(
            f"unexpected stream chunk type from {deadline.provider}",
            provider=deadline.provider,
            model=deadline.model,
        )
    return obj


def as_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    return 0


def tool_schema_openai(tools: Optional[List[ToolDefinition]]) -> Optional[List[Dict[str, Any]]]:
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
        }
        for t in tools
    ]
