from __future__ import annotations

import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from kbagent.compaction import (
    FALLBACK_SUMMARY,
    SUMMARY_PREFIX,
    digest_tool_body,
    maybe_compact,
    needs_flush,
)
from kbagent.config import CompactionConfig
from kbagent.conversation_db import (
    append_message,
    connect_db,
    create_conversation,
    create_folder,
    edit_user_message_and_truncate,
    ensure_conversation,
    folder_instruction_chain,
    init_db,
    last_user_message,
    load_history,
    resolve_conversation_model_id,
    set_conversation_model_override,
    truncate_messages_from,
    update_folder,
)
from kbagent.instructions import (
    POLICY_VERSION,
    InstructionSources,
    build_system_prompt,
    load_instruction_sources,
    policy_fingerprint,
    runtime_context,
)
from kbagent.protocol import ChatMessage, ToolCall
from kbagent.providers.base import ToolDefinition
from kbagent.providers.registry import is_valid_model_id
from kbagent.vault import VaultStore


class ConversationDbTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "conversations.sqlite"
        init_db(self.db_path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _resolve(self, conn, cid: str) -> str:  # type: ignore[no-untyped-def]
        return resolve_conversation_model_id(conn, cid, global_default="ollama:qwen3:8b", is_valid=is_valid_model_id)

    def test_model_precedence(self) -> None:
        with connect_db(self.db_path) as conn:
            root = create_folder(conn, "work", default_model_id="openai:gpt-4o")
            child = create_folder(conn, "notes", parent_id=root)
            cid = create_conversation(conn, "chat", folder_id=child)

            self.assertEqual(self._resolve(conn, cid), "openai:gpt-4o")
            update_folder(conn, child, default_model_id="anthropic:claude-sonnet")
            self.assertEqual(self._resolve(conn, cid), "anthropic:claude-sonnet")
            set_conversation_model_override(conn, cid, "google:gemini-2.5-pro")
            self.assertEqual(self._resolve(conn, cid), "google:gemini-2.5-pro")

            set_conversation_model_override(conn, cid, "not-a-model")
            self.assertEqual(self._resolve(conn, cid), "anthropic:claude-sonnet")
            self.assertEqual(self._resolve(conn, "unknown"), "ollama:qwen3:8b")

    def test_folder_instruction_chain_root_first(self) -> None:
        with connect_db(self.db_path) as conn:
            root = create_folder(conn, "root", instructions="Be brief.")
            mid = create_folder(conn, "mid", parent_id=root)
            leaf = create_folder(conn, "leaf", parent_id=mid, instructions="Use German.")
            self.assertEqual(folder_instruction_chain(conn, leaf), ["Be brief.", "Use German."])
            self.assertEqual(folder_instruction_chain(conn, None), [])

    def test_history_round_trip_and_truncate(self) -> None:
        call = ToolCall(name="kb_read", args={"path": "a.md"}, id="call_1")
        with connect_db(self.db_path) as conn:
            cid = ensure_conversation(conn, "c1")
            self.assertEqual(ensure_conversation(conn, "c1"), "c1")
            first = append_message(conn, cid, ChatMessage.user("read a"))
            append_message(conn, cid, ChatMessage.assistant("", tool_calls=[call]))
            append_message(
                conn,
                cid,
                ChatMessage.tool('{"ok": true}', tool_call_id="call_1", tool_name="kb_read"),
                tool_result={"ok": True},
            )
            last = append_message(conn, cid, ChatMessage.user("again"))
            append_message(conn, cid, ChatMessage.assistant("done"))

            history = load_history(conn, cid)
            self.assertEqual([m.role for m in history], ["user", "assistant", "tool", "user", "assistant"])
            self.assertEqual(history[1].tool_calls[0].id, "call_1")
            self.assertEqual(history[2].tool_call_id, "call_1")
            self.assertEqual(last_user_message(conn, cid)["id"], last)

            self.assertEqual(truncate_messages_from(conn, cid, last + 1), 1)
            self.assertEqual(edit_user_message_and_truncate(conn, cid, first, "read b"), 3)
            history = load_history(conn, cid)
            self.assertEqual([m.content for m in history], ["read b"])

            with self.assertRaises(ValueError):
                append_message(conn, cid, ChatMessage(role="robot", content="x"))
            with self.assertRaises(ValueError):
                edit_user_message_and_truncate(conn, cid, first, "  ")
            with self.assertRaises(KeyError):
                edit_user_message_and_truncate(conn, cid, 9999, "x")


class InstructionsTests(unittest.TestCase):
    def test_blocks_in_precedence_order(self) -> None:
        ctx = runtime_context(
            vault_path="/v",
            note_count=3,
            language="de",
            provider="ollama",
            model="qwen3:8b",
            folder_instructions=["Be brief."],
            now=datetime(2024, 5, 1, 9, 30),
        )
        composed = build_system_prompt(
            ctx,
            InstructionSources(agents_md="AGENTS", rules="RULES", hints="HINTS"),
            [ToolDefinition(name="kb_read", description="Read a note.", parameters={})],
        )
        prompt = composed.prompt
        order = [
            prompt.index("You are kbagent"),
            prompt.index("AGENTS"),
            prompt.index("Rules (must follow):\nRULES"),
            prompt.index("Hints (guidance):\nHINTS"),
            prompt.index("- kb_read: Read a note."),
            prompt.index("Runtime Context:"),
        ]
        self.assertEqual(order, sorted(order))
        self.assertIn("Current date: 2024-05-01 09:30", prompt)
        self.assertIn("User language preference: de", prompt)
        self.assertIn("1. Be brief.", prompt)
        self.assertEqual(composed.policy_version, POLICY_VERSION)
        self.assertEqual(composed.policy_fingerprint, policy_fingerprint())

    def test_empty_sources_are_omitted(self) -> None:
        ctx = runtime_context(vault_path="/v", note_count=0, language=" ", provider="p", model="m")
        prompt = build_system_prompt(ctx, InstructionSources(), []).prompt
        self.assertNotIn("Rules (must follow)", prompt)
        self.assertIn("- no tools registered", prompt)
        self.assertIn("User language preference: not set", prompt)

    def test_sources_read_from_vault(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "AGENTS.md").write_text("Agent notes", encoding="utf-8")
            (root / ".kbagent").mkdir()
            (root / ".kbagent" / "rules").write_text("No deletes", encoding="utf-8")
            sources = load_instruction_sources(VaultStore(root))
        self.assertEqual(sources.agents_md, "Agent notes")
        self.assertEqual(sources.rules, "No deletes")
        self.assertIsNone(sources.hints)


def _history() -> list:
    call = ToolCall(name="kb_search", args={"query": "x"}, id="c1")
    return [
        ChatMessage.system("system prompt"),
        ChatMessage.user("an old question about sourdough"),
        ChatMessage.assistant("an old answer"),
        ChatMessage.assistant("", tool_calls=[call]),
        ChatMessage.tool("{" + '"ok": true, "hits": "' + "x" * 600 + '"}', tool_call_id="c1", tool_name="kb_search"),
        ChatMessage.user("recent question"),
        ChatMessage.assistant("recent answer"),
    ]


class CompactionTests(unittest.TestCase):
    CONFIG = CompactionConfig(threshold_ratio=0.001, keep_recent=2, flush_to_note=True)

    def test_below_threshold_is_untouched(self) -> None:
        self.assertIsNone(maybe_compact(_history(), model="m", config=CompactionConfig()))

    def test_drops_chat_digests_tools_and_keeps_recent(self) -> None:
        flushed = []
        outcome = maybe_compact(
            _history(),
            model="m",
            config=self.CONFIG,
            summarize=lambda dropped: f"{len(dropped)} turns about sourdough",
            flush=lambda summary: flushed.append(summary) or {"ok": True},
        )
        assert outcome is not None
        roles = [m.role for m in outcome.messages]
        self.assertEqual(roles, ["system", "system", "assistant", "tool", "user", "assistant"])
        self.assertEqual(outcome.messages[1].content, SUMMARY_PREFIX + "2 turns about sourdough")
        self.assertTrue(outcome.messages[3].content.startswith("[compacted tool result]"))
        self.assertEqual(outcome.messages[3].tool_call_id, "c1")
        self.assertEqual(outcome.messages[-1].content, "recent answer")
        self.assertEqual(outcome.payload["removed_messages"], 2)
        self.assertEqual(outcome.payload["digested_messages"], 1)
        self.assertTrue(outcome.payload["flush_ok"])
        self.assertLess(outcome.payload["after_tokens"], outcome.payload["before_tokens"])
        self.assertEqual(flushed, ["2 turns about sourdough"])

    def test_summarizer_failure_uses_fixed_text(self) -> None:
        def boom(dropped):  # type: ignore[no-untyped-def]
            raise RuntimeError("offline")

        outcome = maybe_compact(_history(), model="m", config=CompactionConfig(threshold_ratio=0.001, keep_recent=2), summarize=boom)
        assert outcome is not None
        self.assertEqual(outcome.summary, FALLBACK_SUMMARY)
        self.assertNotIn("flush_ok", outcome.payload)

    def test_needs_flush_skips_when_dropped_turns_already_wrote(self) -> None:
        wrote = ChatMessage.tool('{"ok": true}', tool_call_id="c", tool_name="kb_create")
        self.assertTrue(needs_flush([ChatMessage.user("hi")]))
        self.assertFalse(needs_flush([ChatMessage.user("hi"), wrote]))
        self.assertFalse(needs_flush([ChatMessage.assistant("  ")]))

    def test_digest_is_stable(self) -> None:
        body = "first line\nsecond"
        self.assertEqual(digest_tool_body(body), digest_tool_body(body))
        self.assertIn("first line", digest_tool_body(body))


if __name__ == "__main__":
    unittest.main()
