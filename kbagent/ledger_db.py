from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional


SCHEMA_VERSION = 1


class _ClosingConnection(sqlite3.Connection):
    def __exit__(self, exc_type, exc, tb):  # type: ignore[override]
        try:
            return super().__exit__(exc_type, exc, tb)
        finally:
            self.close()


class RunAlreadyFinished(RuntimeError):
    pass


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
            raise ValueError(f"Ledger DB schema version {version} is newer than supported {SCHEMA_VERSION}")
        if version < 1:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    finished_at REAL,
                    status TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    policy_version TEXT NOT NULL,
                    policy_fingerprint TEXT NOT NULL,
                    iterations INTEGER NOT NULL DEFAULT 0,
                    tool_calls INTEGER NOT NULL DEFAULT 0,
                    write_calls INTEGER NOT NULL DEFAULT 0,
                    verify_failures INTEGER NOT NULL DEFAULT 0,
                    duration_ms INTEGER,
                    token_usage TEXT,
                    error TEXT
                );

                CREATE TABLE IF NOT EXISTS run_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
                    seq INTEGER NOT NULL,
                    iteration INTEGER NOT NULL,
                    channel TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    ts REAL NOT NULL,
                    UNIQUE(run_id, seq)
                );

                CREATE INDEX IF NOT EXISTS idx_runs_conversation ON runs(conversation_id, started_at);
                CREATE INDEX IF NOT EXISTS idx_run_events_run ON run_events(run_id, seq);
                """
            )
            conn.execute("PRAGMA user_version = 1")
            set_meta(conn, "schema_version", str(SCHEMA_VERSION))
        conn.commit()


def get_meta(conn: sqlite3.Connection, key: str) -> Optional[str]:
    row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
    if row is None:
        return None
    value = row["value"]
    return str(value) if value is not None else None


def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO meta(key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )


def begin_run(
    conn: sqlite3.Connection,
    *,
    run_id: str,
    conversation_id: str,
    provider: str,
    model: str,
    policy_version: str,
    policy_fingerprint: str,
    status: str = "accepted",
    started_at: Optional[float] = None,
) -> None:
    conn.execute(
        """
        INSERT INTO runs(
            run_id, conversation_id, started_at, status, provider, model,
            policy_version, policy_fingerprint
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            run_id,
            conversation_id,
            started_at if started_at is not None else time.time(),
            status,
            provider,
            model,
            policy_version,
            policy_fingerprint,
        ),
    )
    conn.commit()


def update_run_status(conn: sqlite3.Connection, *, run_id: str, status: str) -> None:
    cur = conn.execute(
        "UPDATE runs SET status = ? WHERE run_id = ? AND finished_at IS NULL",
        (status, run_id),
    )
    if cur.rowcount == 0:
        raise RunAlreadyFinished(f"Run is unknown or already finished: {run_id}")
    conn.commit()


def append_event(
    conn: sqlite3.Connection,
    *,
    run_id: str,
    iteration: int,
    channel: str,
    event_type: str,
    payload: Dict[str, Any],
    ts: Optional[float] = None,
) -> int:
    """
    Append one ledger row and return its sequence number.

    The sequence is allocated inside an immediate transaction, so concurrent
    writers for the same run still produce 1, 2, 3, ... without gaps.
    """
    payload_json = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
    conn.execute("BEGIN IMMEDIATE")
    try:
        row = conn.execute(
            "SELECT COALESCE(MAX(seq), 0) AS last_seq FROM run_events WHERE run_id = ?",
            (run_id,),
        ).fetchone()
        seq = int(row["last_seq"]) + 1
        conn.execute(
            """
            INSERT INTO run_events(run_id, seq, iteration, channel, event_type, payload, ts)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (run_id, seq, int(iteration), channel, event_type, payload_json, ts if ts is not None else time.time()),
        )
    except BaseException:
        conn.rollback()
        raise
    conn.commit()
    return seq


def finish_run(
    conn: sqlite3.Connection,
    *,
    run_id: str,
    status: str,
    iterations: int,
    tool_calls: int,
    write_calls: int,
    verify_failures: int,
    token_usage: Dict[str, Any],
    error: Optional[str] = None,
    finished_at: Optional[float] = None,
) -> None:
    row = conn.execute("SELECT started_at, finished_at FROM runs WHERE run_id = ?", (run_id,)).fetchone()
    if row is None:
        raise KeyError(f"Unknown run: {run_id}")
    if row["finished_at"] is not None:
        raise RunAlreadyFinished(f"Run already finished: {run_id}")
    ended = finished_at if finished_at is not None else time.time()
    duration_ms = max(0, int(round((ended - float(row["started_at"])) * 1000)))
    conn.execute(
        """
        UPDATE runs
        SET finished_at = ?, status = ?, iterations = ?, tool_calls = ?, write_calls = ?,
            verify_failures = ?, duration_ms = ?, token_usage = ?, error = ?
        WHERE run_id = ?
        """,
        (
            ended,
            status,
            int(iterations),
            int(tool_calls),
            int(write_calls),
            int(verify_failures),
            duration_ms,
            json.dumps(token_usage, sort_keys=True),
            error,
            run_id,
        ),
    )
    conn.commit()


def _run_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    out = dict(row)
    raw_usage = out.get("token_usage")
    out["token_usage"] = json.loads(raw_usage) if raw_usage else {}
    return out


def get_run(conn: sqlite3.Connection, run_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
    return _run_row_to_dict(row) if row is not None else None


def list_runs(
    conn: sqlite3.Connection,
    *,
    conversation_id: Optional[str] = None,
    limit: int = 20,
) -> List[Dict[str, Any]]:
    if conversation_id:
        rows = conn.execute(
            "SELECT * FROM runs WHERE conversation_id = ? ORDER BY started_at DESC, run_id LIMIT ?",
            (conversation_id, int(limit)),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM runs ORDER BY started_at DESC, run_id LIMIT ?",
            (int(limit),),
        ).fetchall()
    return [_run_row_to_dict(row) for row in rows]


def list_run_events(conn: sqlite3.Connection, run_id: str) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT seq, iteration, channel, event_type, payload, ts
        FROM run_events
        WHERE run_id = ?
        ORDER BY seq
        """,
        (run_id,),
    ).fetchall()
    out: List[Dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        item["payload"] = json.loads(item["payload"])
        out.append(item)
    return out
