from __future__ import annotations

import unittest

from kbagent.protocol import ChatMessage, ToolCall, parse_tool_arguments, try_parse_text_tool_call


class TextToolCallParsingTests(unittest.TestCase):
    def test_strict_tool_call_json_parses(self) -> None:
        raw = '{"type":"tool_call","name":"kb_read","args":{"path":"a.md"}}'
        parsed = try_parse_text_tool_call(raw)
        self.assertIsNotNone(parsed)
        assert parsed is not None
        self.assertEqual(parsed.tool_call.name, "kb_read")
        self.assertEqual(parsed.tool_call.args, {"path": "a.md"})
        self.assertEqual(parsed.trailing_text, "")

    def test_prefix_tool_call_json_at_start_parses(self) -> None:
        raw = ' \n{"type":"tool_call","name":"kb_read","args":{"path":"a.md"}} trailing'
        parsed = try_parse_text_tool_call(raw)
        self.assertIsNotNone(parsed)
        assert parsed is not None
        self.assertEqual(parsed.tool_call.name, "kb_read")
        self.assertEqual(parsed.trailing_text, "trailing")

    def test_rejects_non_whitespace_prefix_before_json(self) -> None:
        raw = 'preface {"type":"tool_call","name":"kb_read","args":{"path":"a.md"}} trailing'
        self.assertIsNone(try_parse_text_tool_call(raw))

    def test_rejects_other_json_objects(self) -> None:
        self.assertIsNone(try_parse_text_tool_call('{"type":"answer","text":"hi"}'))
        self.assertIsNone(try_parse_text_tool_call('{"type":"tool_call","name":"kb_read","args":"a.md"}'))


class ToolArgumentTests(unittest.TestCase):
    def test_parse_tool_arguments(self) -> None:
        self.assertEqual(parse_tool_arguments('{"path": "a.md"}'), ({"path": "a.md"}, None))
        self.assertEqual(parse_tool_arguments({"k": 1}), ({"k": 1}, None))
        self.assertEqual(parse_tool_arguments(""), ({}, None))
        self.assertEqual(parse_tool_arguments("[1, 2]"), ({}, "[1, 2]"))
        self.assertEqual(parse_tool_arguments("{broken"), ({}, "{broken"))

    def test_tool_call_dict_round_trip_keeps_raw_arguments(self) -> None:
        call = ToolCall(name="kb_create", args={}, id="call_1", raw_arguments="{oops")
        restored = ToolCall.from_dict(call.to_dict())
        self.assertEqual(restored.id, "call_1")
        self.assertEqual(restored.raw_arguments, "{oops")
        self.assertEqual(call.arguments_json(), "{}")

    def test_message_constructors(self) -> None:
        msg = ChatMessage.tool("{}", tool_call_id="c1", tool_name="kb_read")
        self.assertEqual((msg.role, msg.tool_call_id, msg.tool_name), ("tool", "c1", "kb_read"))
        self.assertEqual(ChatMessage.assistant("x").tool_calls, [])


if __name__ == "__main__":
    unittest.main()
