from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"


@dataclass
class ToolCall:
    name: str
    args: Dict[str, Any]
    id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
    # Set when the provider sent arguments that were not a JSON object.
    raw_arguments: Optional[str] = None

    def arguments_json(self) -> str:
        return json.dumps(self.args, ensure_ascii=False, sort_keys=True)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "name": self.name, "args": self.args}
        if self.raw_arguments is not None:
            out["raw_arguments"] = self.raw_arguments
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        args = data.get("args")
        return cls(
            name=str(data.get("name") or ""),
            args=args if isinstance(args, dict) else {},
            id=str(data.get("id") or f"call_{uuid.uuid4().hex[:12]}"),
            raw_arguments=data.get("raw_arguments"),
        )


@dataclass
class ChatMessage:
    role: str
    content: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role=ROLE_SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role=ROLE_USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Optional[List[ToolCall]] = None) -> "ChatMessage":
        return cls(role=ROLE_ASSISTANT, content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, content: str, *, tool_call_id: str, tool_name: str) -> "ChatMessage":
        return cls(role=ROLE_TOOL, content=content, tool_call_id=tool_call_id, tool_name=tool_name)


def parse_tool_arguments(raw: Any) -> Tuple[Dict[str, Any], Optional[str]]:
    """
    Decode streamed tool arguments.

    Returns (args, raw_text). raw_text is set only when the input could not be
    decoded into a JSON object, so the executor can report invalid_arguments.
    """
    if isinstance(raw, dict):
        return raw, None
    if raw is None:
        return {}, None
    text = str(raw).strip()
    if not text:
        return {}, None
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        return {}, text
    if not isinstance(obj, dict):
        return {}, text
    return obj, None


@dataclass
class ToolCallParse:
    tool_call: ToolCall
    trailing_text: str


def _to_tool_call(obj: Any) -> Optional[ToolCall]:
    if not isinstance(obj, dict):
        return None
    if obj.get("type") != "tool_call":
        return None

    name = obj.get("name")
    args = obj.get("args")
    if not isinstance(name, str) or not name.strip():
        return None
    if not isinstance(args, dict):
        return None
    return ToolCall(name=name.strip(), args=args)


def _find_first_json_object_span(text: str) -> Optional[Tuple[int, int]]:
    start = -1
    depth = 0
    in_string = False
    escape = False

    for j, ch in enumerate(text):
        if start < 0:
            if ch == "{":
                start = j
                depth = 1
            continue

        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return (start, j)
    return None


def try_parse_text_tool_call(text: str) -> Optional[ToolCallParse]:
    """
    Recover a tool call that a model wrote as plain text instead of using the
    native tool-calling channel (common with small local models).

    Accepts either a response that is exactly one envelope object
    {"type":"tool_call","name":...,"args":{...}}, or one that starts with such
    an object followed by trailing text.
    """
    candidate = text.strip()
    if not candidate.startswith("{"):
        return None

    try:
        strict_obj = json.loads(candidate)
    except json.JSONDecodeError:
        strict_obj = None
    strict_call = _to_tool_call(strict_obj)
    if strict_call is not None:
        return ToolCallParse(tool_call=strict_call, trailing_text="")

    span = _find_first_json_object_span(candidate)
    if span is None:
        return None
    start_idx, end_idx = span
    try:
        prefix_obj = json.loads(candidate[start_idx : end_idx + 1])
    except json.JSONDecodeError:
        return None
    prefix_call = _to_tool_call(prefix_obj)
    if prefix_call is None:
        return None
    return ToolCallParse(tool_call=prefix_call, trailing_text=candidate[end_idx + 1 :].strip())
