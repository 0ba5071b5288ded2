from __future__ import annotations

import hashlib
import json
import sqlite3
import time
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional


SCHEMA_VERSION = 1

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_REVERT = "revert"


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
            raise ValueError(f"Commit DB schema version {version} is newer than supported {SCHEMA_VERSION}")
        if version < 1:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS blobs (
                    hash TEXT PRIMARY KEY,
                    size INTEGER NOT NULL,
                    data BLOB NOT NULL
                );

                CREATE TABLE IF NOT EXISTS commits (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    commit_id TEXT NOT NULL UNIQUE,
                    parent_id TEXT,
                    path TEXT NOT NULL,
                    action TEXT NOT NULL,
                    before_hash TEXT REFERENCES blobs(hash),
                    after_hash TEXT REFERENCES blobs(hash),
                    diff_stats TEXT NOT NULL,
                    run_id TEXT,
                    message TEXT NOT NULL DEFAULT '',
                    reverts TEXT,
                    created_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_commits_path ON commits(path, seq);
                """
            )
            conn.execute("PRAGMA user_version = 1")
        conn.commit()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def diff_stats(before: Optional[str], after: Optional[str]) -> Dict[str, Any]:
    """Line-multiset diff: counts lines added and removed regardless of position."""
    before_lines = (before or "").splitlines()
    after_lines = (after or "").splitlines()
    before_count = Counter(before_lines)
    after_count = Counter(after_lines)
    added = sum((after_count - before_count).values())
    removed = sum((before_count - after_count).values())
    return {
        "before_lines": len(before_lines),
        "after_lines": len(after_lines),
        "added_lines": added,
        "removed_lines": removed,
        "changed": (before or "") != (after or "") or (before is None) != (after is None),
    }


def put_blob(conn: sqlite3.Connection, data: bytes) -> str:
    digest = sha256_bytes(data)
    conn.execute(
        "INSERT OR IGNORE INTO blobs(hash, size, data) VALUES (?, ?, ?)",
        (digest, len(data), sqlite3.Binary(data)),
    )
    return digest


def get_blob(conn: sqlite3.Connection, digest: Optional[str]) -> Optional[bytes]:
    if not digest:
        return None
    row = conn.execute("SELECT data FROM blobs WHERE hash = ?", (digest,)).fetchone()
    return bytes(row["data"]) if row is not None else None


def head_commit_id(conn: sqlite3.Connection) -> Optional[str]:
    row = conn.execute("SELECT commit_id FROM commits ORDER BY seq DESC LIMIT 1").fetchone()
    return str(row["commit_id"]) if row is not None else None


def record_commit(
    conn: sqlite3.Connection,
    *,
    path: str,
    action: str,
    before: Optional[bytes],
    after: Optional[bytes],
    run_id: Optional[str] = None,
    message: str = "",
    reverts: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Append one commit on top of the current head.

    Blobs and the commit row land in one transaction. The commit id hashes
    the parent, path and both content hashes, so identical history replays
    to identical ids.
    """
    created_at = time.time()
    try:
        parent_id = head_commit_id(conn)
        before_hash = put_blob(conn, before) if before is not None else None
        after_hash = put_blob(conn, after) if after is not None else None
        stats = diff_stats(
            before.decode("utf-8", errors="replace") if before is not None else None,
            after.decode("utf-8", errors="replace") if after is not None else None,
        )
        basis = "\x00".join(
            [parent_id or "", path, action, before_hash or "", after_hash or "", repr(created_at)]
        )
        commit_id = hashlib.sha256(basis.encode("utf-8")).hexdigest()[:16]
        conn.execute(
            """
            INSERT INTO commits(
                commit_id, parent_id, path, action, before_hash, after_hash,
                diff_stats, run_id, message, reverts, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                commit_id,
                parent_id,
                path,
                action,
                before_hash,
                after_hash,
                json.dumps(stats, sort_keys=True),
                run_id,
                message,
                reverts,
                created_at,
            ),
        )
    except BaseException:
        conn.rollback()
        raise
    conn.commit()
    return get_commit(conn, commit_id) or {}


def _commit_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    out = dict(row)
    out["diff_stats"] = json.loads(out["diff_stats"]) if out.get("diff_stats") else {}
    return out


def get_commit(conn: sqlite3.Connection, commit_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM commits WHERE commit_id = ?", (commit_id,)).fetchone()
    return _commit_row_to_dict(row) if row is not None else None


def list_commits(conn: sqlite3.Connection, *, path: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    if path:
        rows = conn.execute(
            "SELECT * FROM commits WHERE path = ? ORDER BY seq DESC LIMIT ?",
            (path, int(limit)),
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM commits ORDER BY seq DESC LIMIT ?", (int(limit),)).fetchall()
    return [_commit_row_to_dict(row) for row in rows]


def count_commits(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COUNT(*) FROM commits").fetchone()[0])
