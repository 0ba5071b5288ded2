from __future__ import annotations

import threading
import unittest
from typing import Dict, List

from kbagent.errors import ProviderFatal, ProviderTransient, RunCancelled
from kbagent.protocol import ChatMessage, ToolCall
from kbagent.providers.base import ChatProvider, CompletionResult, TextDelta, TokenUsage, ToolCallEvent, UsageEvent
from kbagent.providers.gateway import FallbackNotice, ProviderGateway, RetryNotice
from kbagent.providers.registry import split_model_id


class _ScriptedProvider(ChatProvider):
    """Each call pops the next script; an exception entry is raised at that point of the stream."""

    def __init__(self, name: str, scripts: Dict[str, List[list]]) -> None:
        self.name = name
        self.scripts = scripts
        self.calls: List[str] = []

    def stream_chat(self, model, messages, tools, *, timeout_s, cancel=None):  # type: ignore[no-untyped-def]
        self.calls.append(model)
        for item in self.scripts[model].pop(0):
            if isinstance(item, Exception):
                raise item
            yield item


def _gateway(providers: Dict[str, ChatProvider], sleeps: List[float], *, cancel_on_sleep: bool = False) -> ProviderGateway:
    def sleep(delay: float, cancel) -> bool:  # type: ignore[no-untyped-def]
        sleeps.append(delay)
        return cancel_on_sleep

    return ProviderGateway(providers.__getitem__, retry_delays=(0.5, 1.0), sleep=sleep)


def _drain(gateway: ProviderGateway, primary: str, fallback: str = "", cancel=None) -> list:  # type: ignore[no-untyped-def]
    return list(
        gateway.stream_completion(
            [ChatMessage.user("hi")],
            None,
            split_model_id(primary),
            fallback=split_model_id(fallback) if fallback else None,
            cancel=cancel,
        )
    )


OK_STREAM = [TextDelta("Hel"), TextDelta("lo"), UsageEvent(TokenUsage(input_tokens=2, output_tokens=1, total_tokens=3))]


class GatewayTests(unittest.TestCase):
    def test_success_yields_deltas_then_one_result(self) -> None:
        provider = _ScriptedProvider("ollama", {"m": [OK_STREAM]})
        events = _drain(_gateway({"ollama": provider}, []), "ollama:m")
        self.assertEqual(events[:2], [TextDelta("Hel"), TextDelta("lo")])
        result = events[-1]
        self.assertIsInstance(result, CompletionResult)
        self.assertEqual(result.text, "Hello")
        self.assertEqual(result.finish_reason, "stop")
        self.assertEqual(result.usage.total_tokens, 3)
        self.assertEqual(result.model_id, "ollama:m")
        self.assertEqual(sum(isinstance(e, CompletionResult) for e in events), 1)

    def test_transient_error_is_retried_with_backoff(self) -> None:
        provider = _ScriptedProvider("ollama", {"m": [[ProviderTransient("503")], OK_STREAM]})
        sleeps: List[float] = []
        events = _drain(_gateway({"ollama": provider}, sleeps), "ollama:m")
        notices = [e for e in events if isinstance(e, RetryNotice)]
        self.assertEqual(len(notices), 1)
        self.assertEqual(notices[0].attempt, 1)
        self.assertEqual(notices[0].max_attempts, 3)
        self.assertEqual(notices[0].retry_in_ms, 500)
        self.assertEqual(sleeps, [0.5])
        self.assertEqual(events[-1].text, "Hello")

    def test_fallback_after_exhausted_retries(self) -> None:
        primary = _ScriptedProvider("ollama", {"m": [[ProviderTransient("503")] for _ in range(3)]})
        backup = _ScriptedProvider("openai", {"gpt": [OK_STREAM]})
        sleeps: List[float] = []
        events = _drain(_gateway({"ollama": primary, "openai": backup}, sleeps), "ollama:m", "openai:gpt")

        self.assertEqual(len(primary.calls), 3)
        self.assertEqual(sleeps, [0.5, 1.0])
        fallbacks = [e for e in events if isinstance(e, FallbackNotice)]
        self.assertEqual(len(fallbacks), 1)
        self.assertEqual(fallbacks[0].from_model_id, "ollama:m")
        self.assertEqual(fallbacks[0].to_model_id, "openai:gpt")
        self.assertEqual(events[-1].model_id, "openai:gpt")
        self.assertEqual(events[-1].text, "Hello")

    def test_exhausted_without_fallback_raises(self) -> None:
        primary = _ScriptedProvider("ollama", {"m": [[ProviderTransient("503")] for _ in range(3)]})
        with self.assertRaises(ProviderTransient):
            _drain(_gateway({"ollama": primary}, []), "ollama:m")

    def test_fallback_equal_to_primary_is_ignored(self) -> None:
        primary = _ScriptedProvider("ollama", {"m": [[ProviderTransient("503")] for _ in range(3)]})
        with self.assertRaises(ProviderTransient):
            _drain(_gateway({"ollama": primary}, []), "ollama:m", "ollama:m")
        self.assertEqual(len(primary.calls), 3)

    def test_fatal_error_skips_retry_and_fallback(self) -> None:
        primary = _ScriptedProvider("ollama", {"m": [[ProviderFatal("401 unauthorized")]]})
        backup = _ScriptedProvider("openai", {"gpt": [OK_STREAM]})
        with self.assertRaises(ProviderFatal):
            _drain(_gateway({"ollama": primary, "openai": backup}, []), "ollama:m", "openai:gpt")
        self.assertEqual(backup.calls, [])

    def test_partial_stream_is_not_retried(self) -> None:
        primary = _ScriptedProvider("ollama", {"m": [[TextDelta("par"), ProviderTransient("connection reset")]]})
        sleeps: List[float] = []
        with self.assertRaises(ProviderTransient):
            _drain(_gateway({"ollama": primary}, sleeps), "ollama:m")
        self.assertEqual(len(primary.calls), 1)
        self.assertEqual(sleeps, [])

    def test_both_models_failing_names_both(self) -> None:
        primary = _ScriptedProvider("ollama", {"m": [[ProviderTransient("503")] for _ in range(3)]})
        backup = _ScriptedProvider("openai", {"gpt": [[ProviderFatal("403 forbidden")]]})
        with self.assertRaises(ProviderFatal) as ctx:
            _drain(_gateway({"ollama": primary, "openai": backup}, []), "ollama:m", "openai:gpt")
        self.assertIn("ollama:m", str(ctx.exception))
        self.assertIn("openai:gpt", str(ctx.exception))

    def test_cancel_during_retry_wait(self) -> None:
        primary = _ScriptedProvider("ollama", {"m": [[ProviderTransient("503")], OK_STREAM]})
        with self.assertRaises(RunCancelled):
            _drain(_gateway({"ollama": primary}, [], cancel_on_sleep=True), "ollama:m", cancel=threading.Event())
        self.assertEqual(len(primary.calls), 1)

    def test_cancel_before_fallback(self) -> None:
        primary = _ScriptedProvider("ollama", {"m": [[ProviderTransient("503")] for _ in range(3)]})
        backup = _ScriptedProvider("openai", {"gpt": [OK_STREAM]})
        cancel = threading.Event()

        def sleep(delay: float, c) -> bool:  # type: ignore[no-untyped-def]
            if len(primary.calls) == 2:
                cancel.set()
            return False

        gateway = ProviderGateway({"ollama": primary, "openai": backup}.__getitem__, retry_delays=(0.0, 0.0), sleep=sleep)
        with self.assertRaises(RunCancelled):
            _drain(gateway, "ollama:m", "openai:gpt", cancel=cancel)
        self.assertEqual(backup.calls, [])

    def test_tool_calls_set_finish_reason_and_complete_drains(self) -> None:
        call = ToolCall(name="kb_read", args={"path": "a.md"})
        provider = _ScriptedProvider("ollama", {"m": [[ToolCallEvent(call)], [TextDelta("summary")]]})
        gateway = _gateway({"ollama": provider}, [])
        events = _drain(gateway, "ollama:m")
        self.assertEqual(events[-1].finish_reason, "tool_calls")
        self.assertEqual(events[-1].tool_calls, [call])
        self.assertEqual(gateway.complete([ChatMessage.user("x")], split_model_id("ollama:m")).text, "summary")


if __name__ == "__main__":
    unittest.main()
