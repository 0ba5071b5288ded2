from __future__ import annotations

import json
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from kbagent.protocol import ROLE_USER, ChatMessage, ToolCall


SCHEMA_VERSION = 1
ALLOWED_ROLES = {"user", "assistant", "tool", "system"}
# Guards against cycles in a corrupted folder table.
_MAX_FOLDER_DEPTH = 64


class _ClosingConnection(sqlite3.Connection):
    def __exit__(self, exc_type, exc, tb):  # type: ignore[override]
        try:
            return super().__exit__(exc_type, exc, tb)
        finally:
            self.close()


def connect_db(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), factory=_ClosingConnection, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: Path) -> None:
    with connect_db(db_path) as conn:
        row = conn.execute("PRAGMA user_version").fetchone()
        version = int(row[0]) if row is not None else 0
        if version > SCHEMA_VERSION:
            raise ValueError(
                f"Conversation DB schema version {version} is newer than supported {SCHEMA_VERSION}"
            )
        if version < 1:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS folders (
                    folder_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    parent_id INTEGER REFERENCES folders(folder_id) ON DELETE SET NULL,
                    name TEXT NOT NULL,
                    default_model_id TEXT,
                    instructions TEXT
                );

                CREATE TABLE IF NOT EXISTS conversations (
                    conversation_id TEXT PRIMARY KEY,
                    folder_id INTEGER REFERENCES folders(folder_id) ON DELETE SET NULL,
                    title TEXT NOT NULL,
                    model_override TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT NOT NULL REFERENCES conversations(conversation_id) ON DELETE CASCADE,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    tool_calls TEXT,
                    tool_call_id TEXT,
                    tool_name TEXT,
                    tool_result TEXT,
                    run_id TEXT,
                    created_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);
                CREATE INDEX IF NOT EXISTS idx_folders_parent ON folders(parent_id);
                """
            )
            conn.execute("PRAGMA user_version = 1")
            conn.execute(
                """
                INSERT INTO meta(key, value) VALUES ('schema_version', ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (str(SCHEMA_VERSION),),
            )
        conn.commit()


def create_folder(
    conn: sqlite3.Connection,
    name: str,
    *,
    parent_id: Optional[int] = None,
    default_model_id: Optional[str] = None,
    instructions: Optional[str] = None,
) -> int:
    name = name.strip()
    if not name:
        raise ValueError("folder name must be non-empty")
    cur = conn.execute(
        "INSERT INTO folders(parent_id, name, default_model_id, instructions) VALUES (?, ?, ?, ?)",
        (parent_id, name, default_model_id, instructions),
    )
    conn.commit()
    return int(cur.lastrowid)


def update_folder(
    conn: sqlite3.Connection,
    folder_id: int,
    *,
    default_model_id: Optional[str] = None,
    instructions: Optional[str] = None,
) -> None:
    cur = conn.execute(
        """
        UPDATE folders
        SET default_model_id = COALESCE(?, default_model_id),
            instructions = COALESCE(?, instructions)
        WHERE folder_id = ?
        """,
        (default_model_id, instructions, folder_id),
    )
    if cur.rowcount == 0:
        raise KeyError(f"Unknown folder: {folder_id}")
    conn.commit()


def create_conversation(
    conn: sqlite3.Connection,
    title: str = "New conversation",
    *,
    folder_id: Optional[int] = None,
    model_override: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> str:
    record_id = conversation_id or str(uuid.uuid4())
    now = time.time()
    conn.execute(
        """
        INSERT INTO conversations(conversation_id, folder_id, title, model_override, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (record_id, folder_id, title.strip() or "New conversation", model_override, now, now),
    )
    conn.commit()
    return record_id


def get_conversation(conn: sqlite3.Connection, conversation_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        "SELECT * FROM conversations WHERE conversation_id = ?",
        (conversation_id,),
    ).fetchone()
    return dict(row) if row is not None else None


def ensure_conversation(conn: sqlite3.Connection, conversation_id: str, title: str = "New conversation") -> str:
    if get_conversation(conn, conversation_id) is None:
        create_conversation(conn, title, conversation_id=conversation_id)
    return conversation_id


def set_conversation_model_override(conn: sqlite3.Connection, conversation_id: str, model_id: Optional[str]) -> None:
    conn.execute(
        "UPDATE conversations SET model_override = ?, updated_at = ? WHERE conversation_id = ?",
        (model_id, time.time(), conversation_id),
    )
    conn.commit()


def append_message(
    conn: sqlite3.Connection,
    conversation_id: str,
    message: ChatMessage,
    *,
    run_id: Optional[str] = None,
    tool_result: Optional[Dict[str, Any]] = None,
) -> int:
    if message.role not in ALLOWED_ROLES:
        raise ValueError(f"Unsupported message role: {message.role}")
    now = time.time()
    tool_calls = json.dumps([c.to_dict() for c in message.tool_calls], ensure_ascii=False) if message.tool_calls else None
    cur = conn.execute(
        """
        INSERT INTO messages(
            conversation_id, role, content, tool_calls, tool_call_id, tool_name, tool_result, run_id, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            conversation_id,
            message.role,
            message.content,
            tool_calls,
            message.tool_call_id,
            message.tool_name,
            json.dumps(tool_result, ensure_ascii=False, default=str) if tool_result is not None else None,
            run_id,
            now,
        ),
    )
    conn.execute(
        "UPDATE conversations SET updated_at = ? WHERE conversation_id = ?",
        (now, conversation_id),
    )
    conn.commit()
    return int(cur.lastrowid)


def _row_to_message(row: sqlite3.Row) -> ChatMessage:
    raw_calls = row["tool_calls"]
    calls = [ToolCall.from_dict(item) for item in json.loads(raw_calls)] if raw_calls else []
    return ChatMessage(
        role=str(row["role"]),
        content=str(row["content"]),
        tool_calls=calls,
        tool_call_id=row["tool_call_id"],
        tool_name=row["tool_name"],
    )


def load_history(conn: sqlite3.Connection, conversation_id: str) -> List[ChatMessage]:
    rows = conn.execute(
        "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id",
        (conversation_id,),
    ).fetchall()
    return [_row_to_message(row) for row in rows]


def list_message_rows(conn: sqlite3.Connection, conversation_id: str) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id",
        (conversation_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def last_user_message(conn: sqlite3.Connection, conversation_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        """
        SELECT id, content FROM messages
        WHERE conversation_id = ? AND role = ?
        ORDER BY id DESC LIMIT 1
        """,
        (conversation_id, ROLE_USER),
    ).fetchone()
    return dict(row) if row is not None else None


def truncate_messages_from(conn: sqlite3.Connection, conversation_id: str, from_message_id: int) -> int:
    """Delete the anchor message and everything after it. Returns the number of rows removed."""
    try:
        cur = conn.execute(
            "DELETE FROM messages WHERE conversation_id = ? AND id >= ?",
            (conversation_id, int(from_message_id)),
        )
        conn.execute(
            "UPDATE conversations SET updated_at = ? WHERE conversation_id = ?",
            (time.time(), conversation_id),
        )
    except BaseException:
        conn.rollback()
        raise
    conn.commit()
    return int(cur.rowcount)


def edit_user_message_and_truncate(
    conn: sqlite3.Connection,
    conversation_id: str,
    message_id: int,
    new_content: str,
) -> int:
    """Rewrite a user message and drop every later message, atomically."""
    if not new_content.strip():
        raise ValueError("edited message content must be non-empty")
    try:
        row = conn.execute(
            "SELECT role FROM messages WHERE conversation_id = ? AND id = ?",
            (conversation_id, int(message_id)),
        ).fetchone()
        if row is None:
            raise KeyError(f"Unknown message {message_id} in conversation {conversation_id}")
        if row["role"] != ROLE_USER:
            raise ValueError("only user messages can be edited")
        conn.execute("UPDATE messages SET content = ? WHERE id = ?", (new_content, int(message_id)))
        cur = conn.execute(
            "DELETE FROM messages WHERE conversation_id = ? AND id > ?",
            (conversation_id, int(message_id)),
        )
    except BaseException:
        conn.rollback()
        raise
    conn.commit()
    return int(cur.rowcount)


def _folder_chain_leaf_to_root(conn: sqlite3.Connection, folder_id: Optional[int]) -> List[sqlite3.Row]:
    chain: List[sqlite3.Row] = []
    seen: set[int] = set()
    current = folder_id
    while current is not None and current not in seen and len(chain) < _MAX_FOLDER_DEPTH:
        seen.add(current)
        row = conn.execute("SELECT * FROM folders WHERE folder_id = ?", (current,)).fetchone()
        if row is None:
            break
        chain.append(row)
        current = row["parent_id"]
    return chain


def folder_instruction_chain(conn: sqlite3.Connection, folder_id: Optional[int]) -> List[str]:
    """Folder instructions ordered root first, leaf last."""
    chain = _folder_chain_leaf_to_root(conn, folder_id)
    out: List[str] = []
    for row in reversed(chain):
        text = (row["instructions"] or "").strip()
        if text:
            out.append(text)
    return out


def resolve_conversation_model_id(
    conn: sqlite3.Connection,
    conversation_id: str,
    *,
    global_default: str,
    is_valid: Callable[[str], bool],
) -> str:
    """
    Pick the chat model for a conversation.

    A valid conversation override wins; otherwise the nearest folder with a
    valid default_model_id; otherwise the global default. Invalid ids in the
    chain are skipped rather than failing the lookup.
    """
    conv = get_conversation(conn, conversation_id)
    if conv is None:
        return global_default
    override = (conv.get("model_override") or "").strip()
    if override and is_valid(override):
        return override
    for row in _folder_chain_leaf_to_root(conn, conv.get("folder_id")):
        candidate = (row["default_model_id"] or "").strip()
        if candidate and is_valid(candidate):
            return candidate
    return global_default
