from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generator, Iterator, List, Optional, Sequence, Union

from kbagent.config import build_provider_settings
from kbagent.errors import ProviderError, ProviderFatal, ProviderTransient, RunCancelled
from kbagent.protocol import ChatMessage, ToolCall
from kbagent.providers.base import (
    ChatProvider,
    CompletionResult,
    StreamEvent,
    TextDelta,
    TokenUsage,
    ToolCallEvent,
    ToolDefinition,
    UsageEvent,
)
from kbagent.providers.registry import ModelRef, create_provider


logger = logging.getLogger("kbagent.providers.gateway")

RETRY_DELAYS_S = (1.0, 2.0)


@dataclass(frozen=True)
class RetryNotice:
    provider: str
    model: str
    attempt: int
    max_attempts: int
    retry_in_ms: int
    error: str


@dataclass(frozen=True)
class FallbackNotice:
    from_model_id: str
    to_model_id: str
    reason: str


GatewayEvent = Union[StreamEvent, RetryNotice, FallbackNotice, CompletionResult]

# (delay_s, cancel) -> True when the wait was interrupted by cancellation.
SleepFn = Callable[[float, Optional[threading.Event]], bool]


def _cancellable_sleep(delay_s: float, cancel: Optional[threading.Event]) -> bool:
    if cancel is None:
        time.sleep(delay_s)
        return False
    return cancel.wait(delay_s)


class _Attempt:
    def __init__(self) -> None:
        self.emitted = False


class ProviderGateway:
    """
    Streaming chat completion across provider backends with retry and fallback.

    stream_completion is a generator: it yields deltas in generation order,
    RetryNotice/FallbackNotice as they happen, and ends with exactly one
    CompletionResult. Transient errors are retried with backoff as long as no
    delta of that attempt reached the caller; once retries are exhausted the
    fallback model (if any, and different from the primary) takes over the
    same logical call with its own retries. Fatal errors propagate at once.
    """

    def __init__(
        self,
        resolve_provider: Callable[[str], ChatProvider],
        *,
        retry_delays: Sequence[float] = RETRY_DELAYS_S,
        sleep: SleepFn = _cancellable_sleep,
    ) -> None:
        self._resolve_provider = resolve_provider
        self.retry_delays = tuple(float(d) for d in retry_delays)
        self._sleep = sleep

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], **kwargs: Any) -> "ProviderGateway":
        cache: Dict[str, ChatProvider] = {}
        guard = threading.Lock()

        def resolve(name: str) -> ChatProvider:
            with guard:
                provider = cache.get(name)
                if provider is None:
                    provider = create_provider(name, build_provider_settings(cfg, name))
                    cache[name] = provider
                return provider

        return cls(resolve, **kwargs)

    @property
    def max_attempts(self) -> int:
        return len(self.retry_delays) + 1

    def stream_completion(
        self,
        messages: List[ChatMessage],
        tools: Optional[List[ToolDefinition]],
        model_ref: ModelRef,
        *,
        fallback: Optional[ModelRef] = None,
        timeout_s: float = 45.0,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[GatewayEvent]:
        try:
            result = yield from self._with_retry(model_ref, messages, tools, timeout_s, cancel)
        except ProviderFatal:
            raise
        except ProviderTransient as primary_error:
            if fallback is None or fallback.model_id == model_ref.model_id:
                raise
            if cancel is not None and cancel.is_set():
                raise RunCancelled("cancelled before fallback") from primary_error
            logger.warning(
                "primary model %s failed, falling back to %s: %s",
                model_ref.model_id,
                fallback.model_id,
                primary_error,
            )
            yield FallbackNotice(
                from_model_id=model_ref.model_id,
                to_model_id=fallback.model_id,
                reason=str(primary_error),
            )
            try:
                result = yield from self._with_retry(fallback, messages, tools, timeout_s, cancel)
            except ProviderError as fallback_error:
                raise type(fallback_error)(
                    f"Primary model '{model_ref.model_id}' failed: {primary_error}. "
                    f"Fallback model '{fallback.model_id}' failed: {fallback_error}",
                    provider=fallback.provider,
                    model=fallback.model,
                    status_code=fallback_error.status_code,
                ) from fallback_error
        yield result

    def complete(
        self,
        messages: List[ChatMessage],
        model_ref: ModelRef,
        *,
        timeout_s: float = 45.0,
        cancel: Optional[threading.Event] = None,
    ) -> CompletionResult:
        """Drain a tool-less completion; used for summaries and hypothetical passages."""
        result: Optional[CompletionResult] = None
        for event in self.stream_completion(messages, None, model_ref, timeout_s=timeout_s, cancel=cancel):
            if isinstance(event, CompletionResult):
                result = event
        if result is None:
            raise ProviderError("Provider stream ended without a result", provider=model_ref.provider)
        return result

    def _with_retry(
        self,
        ref: ModelRef,
        messages: List[ChatMessage],
        tools: Optional[List[ToolDefinition]],
        timeout_s: float,
        cancel: Optional[threading.Event],
    ) -> Generator[GatewayEvent, None, CompletionResult]:
        provider = self._resolve_provider(ref.provider)
        attempt = 0
        while True:
            attempt += 1
            state = _Attempt()
            try:
                return (yield from self._attempt(provider, ref, messages, tools, timeout_s, cancel, state))
            except ProviderFatal:
                raise
            except ProviderTransient as exc:
                # Deltas already handed out cannot be retracted.
                if state.emitted or attempt >= self.max_attempts:
                    raise
                delay = self.retry_delays[attempt - 1]
                logger.info(
                    "transient error from %s (attempt %d/%d), retrying in %.1fs: %s",
                    ref.model_id,
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                yield RetryNotice(
                    provider=ref.provider,
                    model=ref.model,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    retry_in_ms=int(delay * 1000),
                    error=str(exc),
                )
                if self._sleep(delay, cancel):
                    raise RunCancelled("cancelled while waiting to retry") from exc

    def _attempt(
        self,
        provider: ChatProvider,
        ref: ModelRef,
        messages: List[ChatMessage],
        tools: Optional[List[ToolDefinition]],
        timeout_s: float,
        cancel: Optional[threading.Event],
        state: _Attempt,
    ) -> Generator[GatewayEvent, None, CompletionResult]:
        text_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        usage = TokenUsage()
        for event in provider.stream_chat(ref.model, messages, tools, timeout_s=timeout_s, cancel=cancel):
            if isinstance(event, TextDelta):
                text_parts.append(event.text)
            elif isinstance(event, ToolCallEvent):
                tool_calls.append(event.call)
            elif isinstance(event, UsageEvent):
                usage.add(event.usage)
            state.emitted = True
            yield event
        finish = "tool_calls" if tool_calls else "stop"
        if cancel is not None and cancel.is_set():
            finish = "cancelled"
        return CompletionResult(
            text="".join(text_parts),
            tool_calls=tool_calls,
            usage=usage,
            model_id=ref.model_id,
            finish_reason=finish,
        )
