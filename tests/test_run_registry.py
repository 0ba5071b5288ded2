from __future__ import annotations

import tempfile
import threading
import unittest
from pathlib import Path

from kbagent.budget import RunBudget
from kbagent.config import CompactionConfig, RetrievalConfig
from kbagent.conversation_db import connect_db, list_message_rows
from kbagent.emitter import CallbackEmitter
from kbagent.errors import InvalidModelId, RunBusy
from kbagent.providers.base import ChatProvider, TextDelta
from kbagent.providers.gateway import ProviderGateway
from kbagent.retrieval import RetrievalEngine
from kbagent.run_loop import RunLoop
from kbagent.run_registry import RunRegistry
from kbagent.state import AgentState
from kbagent.tools import ToolExecutor
from kbagent.vault import VaultStore


class _Harness:
    def __init__(self, root: Path, providers: dict) -> None:
        self.vault = VaultStore(root / "vault")
        self.vault.root.mkdir(parents=True, exist_ok=True)
        self.conversations_path = root / "state" / "conversations.sqlite"
        retrieval = RetrievalEngine(db_path=root / "state" / "index.sqlite", config=RetrievalConfig(hyde_enabled=False))
        tools = ToolExecutor(
            vault=self.vault, commit_db_path=root / "state" / "commits.sqlite", retrieval=retrieval, chunking=(400, 0)
        )
        self.loop = RunLoop(
            gateway=ProviderGateway(providers.__getitem__, retry_delays=(0.0, 0.0), sleep=lambda d, c: False),
            tools=tools,
            vault=self.vault,
            retrieval=retrieval,
            ledger_path=root / "state" / "ledger.sqlite",
            conversations_path=self.conversations_path,
            budget=RunBudget(),
            compaction=CompactionConfig(),
            default_model_id="ollama:m",
        )
        self.seen: list = []
        self.emitter = CallbackEmitter(lambda ch, payload: self.seen.append((ch, payload)))


class _EchoProvider(ChatProvider):
    """
    Answers with the last user message. With block set it waits for
    cancellation; with stall set it ignores cancellation until released.
    """

    name = "ollama"

    def __init__(self) -> None:
        self.block = False
        self.stall = False
        self.started = threading.Event()
        self.release = threading.Event()

    def stream_chat(self, model, messages, tools, *, timeout_s, cancel=None):  # type: ignore[no-untyped-def]
        self.started.set()
        if self.block and cancel is not None:
            cancel.wait(10.0)
            return
        if self.stall:
            self.release.wait(10.0)
        last_user = [m for m in messages if m.role == "user"][-1]
        yield TextDelta(f"echo: {last_user.content}")


class RunRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.provider = _EchoProvider()
        self.h = _Harness(Path(self._tmp.name), {"ollama": self.provider})
        self.registry = RunRegistry(self.h.loop, cancel_wait_s=5.0)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _contents(self, conversation_id: str = "c1") -> list:
        with connect_db(self.h.conversations_path) as conn:
            return [(m["role"], m["content"]) for m in list_message_rows(conn, conversation_id)]

    def test_start_runs_in_background(self) -> None:
        handle = self.registry.start("c1", "hi", emitter=self.h.emitter)
        result = handle.wait(5.0)
        self.assertIsNotNone(result)
        self.assertEqual(result.status, AgentState.COMPLETED)
        self.assertEqual(result.run_id, handle.run_id)
        self.assertEqual(result.text, "echo: hi")
        self.assertTrue(handle.done)
        self.assertIsNone(self.registry.active("c1"))

    def test_empty_message_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.registry.start("c1", "   ")

    def test_invalid_model_raises_in_caller(self) -> None:
        self.h.loop.default_model_id = "bogus"
        with self.assertRaises(InvalidModelId):
            self.registry.start("c1", "hi")

    def test_new_run_cancels_previous(self) -> None:
        self.provider.block = True
        first = self.registry.start("c1", "first")
        self.assertTrue(self.provider.started.wait(5.0))
        self.assertIs(self.registry.active("c1"), first)

        self.provider.block = False
        second = self.registry.start("c1", "second")
        self.assertEqual(first.wait(5.0).status, AgentState.CANCELLED)
        self.assertEqual(second.wait(5.0).status, AgentState.COMPLETED)
        self.assertEqual(second.result.text, "echo: second")

    def test_busy_conversation_rejects_start_until_previous_stops(self) -> None:
        registry = RunRegistry(self.h.loop, cancel_wait_s=0.05)
        self.provider.stall = True
        first = registry.start("c1", "first")
        self.assertTrue(self.provider.started.wait(5.0))

        with self.assertRaises(RunBusy):
            registry.start("c1", "second")
        self.assertTrue(first.cancel_event.is_set())
        self.assertIs(registry.active("c1"), first)
        self.assertEqual(self._contents(), [("user", "first")])

        self.provider.stall = False
        self.provider.release.set()
        self.assertEqual(first.wait(5.0).status, AgentState.CANCELLED)
        second = registry.start("c1", "second")
        self.assertEqual(second.wait(5.0).text, "echo: second")
        self.assertEqual(
            self._contents(),
            [
                ("user", "first"),
                ("assistant", "echo: first\n\n[Run stopped: cancelled]"),
                ("user", "second"),
                ("assistant", "echo: second"),
            ],
        )

    def test_finished_runs_are_forgotten(self) -> None:
        for i in range(3):
            self.registry.start(f"c{i}", "hi").wait(5.0)
        self.assertEqual(self.registry._active, {})
        self.assertEqual(self.registry._conversation_locks, {})

    def test_cancel(self) -> None:
        self.provider.block = True
        handle = self.registry.start("c1", "wait")
        self.assertTrue(self.provider.started.wait(5.0))
        self.assertTrue(self.registry.cancel("c1"))
        self.assertEqual(handle.wait(5.0).status, AgentState.CANCELLED)
        self.assertFalse(self.registry.cancel("c1"))

    def test_regenerate_replaces_last_answer(self) -> None:
        self.registry.start("c1", "one").wait(5.0)
        result = self.registry.regenerate("c1").wait(5.0)
        self.assertEqual(result.status, AgentState.COMPLETED)
        self.assertEqual(self._contents(), [("user", "one"), ("assistant", "echo: one")])
        with self.assertRaises(KeyError):
            self.registry.regenerate("empty")

    def test_edit_and_resend(self) -> None:
        self.registry.start("c1", "one").wait(5.0)
        self.registry.start("c1", "two").wait(5.0)
        first_id = 1
        result = self.registry.edit_and_resend("c1", first_id, "uno").wait(5.0)
        self.assertEqual(result.text, "echo: uno")
        self.assertEqual(self._contents(), [("user", "uno"), ("assistant", "echo: uno")])


if __name__ == "__main__":
    unittest.main()
