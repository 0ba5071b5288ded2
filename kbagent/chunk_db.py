from __future__ import annotations

import hashlib
import re
import sqlite3
import time
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from kbagent.chunking import NoteChunk
from kbagent.vectors import pack_vector_f32_le


SCHEMA_VERSION = 2
FTS_MAX_TERMS = 12
FTS_MIN_TERM_CHARS = 2
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


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


def _apply_migration_v1(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS notes (
            path TEXT PRIMARY KEY,
            content_hash TEXT NOT NULL,
            indexed_at REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS chunks (
            chunk_key TEXT PRIMARY KEY,
            path TEXT NOT NULL REFERENCES notes(path) ON DELETE CASCADE,
            chunk_index INTEGER NOT NULL,
            heading TEXT NOT NULL DEFAULT '',
            byte_start INTEGER NOT NULL,
            byte_end INTEGER NOT NULL,
            text TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            indexed_at REAL NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path, chunk_index);

        CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
            chunk_key UNINDEXED,
            heading,
            text,
            tokenize = 'unicode61'
        );
        """
    )


def _apply_migration_v2(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS chunk_vectors (
            chunk_key TEXT NOT NULL REFERENCES chunks(chunk_key) ON DELETE CASCADE,
            model_id TEXT NOT NULL,
            dim INTEGER NOT NULL,
            content_hash TEXT NOT NULL,
            vector BLOB NOT NULL,
            embedded_at REAL NOT NULL,
            PRIMARY KEY(chunk_key, model_id)
        );

        CREATE INDEX IF NOT EXISTS idx_chunk_vectors_model ON chunk_vectors(model_id, dim);
        """
    )


def init_db(db_path: Path) -> None:
    with connect_db(db_path) as conn:
        row = conn.execute("PRAGMA user_version").fetchone()
        version = int(row[0]) if row is not None else 0
        if version > SCHEMA_VERSION:
            raise ValueError(f"Chunk DB schema version {version} is newer than supported {SCHEMA_VERSION}")
        if version < 1:
            _apply_migration_v1(conn)
            conn.execute("PRAGMA user_version = 1")
            version = 1
        if version < 2:
            _apply_migration_v2(conn)
            conn.execute("PRAGMA user_version = 2")
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


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()


def make_chunk_key(path: str, chunk: NoteChunk) -> str:
    payload = f"{path}\n{chunk.byte_start}:{chunk.byte_end}\n{chunk.text}"
    return hashlib.sha256(payload.encode("utf-8", errors="replace")).hexdigest()[:32]


def get_note_hash(conn: sqlite3.Connection, path: str) -> Optional[str]:
    row = conn.execute("SELECT content_hash FROM notes WHERE path = ?", (path,)).fetchone()
    return str(row["content_hash"]) if row is not None else None


def list_note_paths(conn: sqlite3.Connection) -> List[str]:
    return [str(row["path"]) for row in conn.execute("SELECT path FROM notes ORDER BY path")]


def _delete_note_rows(conn: sqlite3.Connection, path: str) -> None:
    conn.execute(
        "DELETE FROM chunks_fts WHERE chunk_key IN (SELECT chunk_key FROM chunks WHERE path = ?)",
        (path,),
    )
    conn.execute("DELETE FROM chunks WHERE path = ?", (path,))
    conn.execute("DELETE FROM notes WHERE path = ?", (path,))


def delete_note(conn: sqlite3.Connection, path: str) -> None:
    _delete_note_rows(conn, path)
    conn.commit()


def replace_note_chunks(
    conn: sqlite3.Connection,
    *,
    path: str,
    content_hash: str,
    chunks: Sequence[NoteChunk],
    indexed_at: Optional[float] = None,
) -> List[str]:
    """Swap a note's chunks in one transaction; vectors of removed chunks cascade away."""
    now = indexed_at if indexed_at is not None else time.time()
    keys: List[str] = []
    try:
        _delete_note_rows(conn, path)
        conn.execute(
            "INSERT INTO notes(path, content_hash, indexed_at) VALUES (?, ?, ?)",
            (path, content_hash, now),
        )
        for chunk in chunks:
            key = make_chunk_key(path, chunk)
            keys.append(key)
            conn.execute(
                """
                INSERT OR REPLACE INTO chunks(
                    chunk_key, path, chunk_index, heading, byte_start, byte_end, text, content_hash, indexed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    key,
                    path,
                    chunk.index,
                    chunk.heading,
                    chunk.byte_start,
                    chunk.byte_end,
                    chunk.text,
                    sha256_text(chunk.text),
                    now,
                ),
            )
            conn.execute(
                "INSERT INTO chunks_fts(chunk_key, heading, text) VALUES (?, ?, ?)",
                (key, chunk.heading, chunk.text),
            )
    except BaseException:
        conn.rollback()
        raise
    conn.commit()
    return keys


def upsert_vector(
    conn: sqlite3.Connection,
    *,
    chunk_key: str,
    model_id: str,
    content_hash: str,
    vector: Sequence[float],
) -> None:
    conn.execute(
        """
        INSERT INTO chunk_vectors(chunk_key, model_id, dim, content_hash, vector, embedded_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(chunk_key, model_id) DO UPDATE SET
            dim = excluded.dim,
            content_hash = excluded.content_hash,
            vector = excluded.vector,
            embedded_at = excluded.embedded_at
        """,
        (chunk_key, model_id, len(vector), content_hash, pack_vector_f32_le(vector), time.time()),
    )


def chunks_missing_vectors(conn: sqlite3.Connection, model_id: str) -> List[sqlite3.Row]:
    return conn.execute(
        """
        SELECT c.chunk_key, c.path, c.heading, c.text, c.content_hash
        FROM chunks c
        LEFT JOIN chunk_vectors v ON v.chunk_key = c.chunk_key AND v.model_id = ?
        WHERE v.chunk_key IS NULL OR v.content_hash != c.content_hash
        ORDER BY c.chunk_key
        """,
        (model_id,),
    ).fetchall()


def count_notes(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COUNT(*) FROM notes").fetchone()[0])


def count_chunks(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0])


def count_vectors(conn: sqlite3.Connection, model_id: str) -> int:
    row = conn.execute("SELECT COUNT(*) FROM chunk_vectors WHERE model_id = ?", (model_id,)).fetchone()
    return int(row[0])


def query_terms(query: str) -> List[str]:
    terms: List[str] = []
    seen: set[str] = set()
    for token in _TOKEN_RE.findall(query.lower()):
        if len(token) < FTS_MIN_TERM_CHARS or token in seen:
            continue
        seen.add(token)
        terms.append(token)
        if len(terms) >= FTS_MAX_TERMS:
            break
    return terms


def build_fts_query(query: str) -> Optional[str]:
    terms = query_terms(query)
    if not terms:
        return None
    return " OR ".join(f'"{term}"*' for term in terms)


def query_chunks_lexical(conn: sqlite3.Connection, *, query_text: str, limit: int) -> List[sqlite3.Row]:
    """Prefix-term FTS5 match ranked by bm25; chunk_key breaks ties."""
    fts_query = build_fts_query(query_text)
    if fts_query is None:
        return []
    return conn.execute(
        """
        SELECT c.chunk_key, c.path, c.heading, c.text, bm25(chunks_fts) AS rank_score
        FROM chunks_fts
        JOIN chunks c ON c.chunk_key = chunks_fts.chunk_key
        WHERE chunks_fts MATCH ?
        ORDER BY rank_score ASC, c.chunk_key ASC
        LIMIT ?
        """,
        (fts_query, max(1, int(limit))),
    ).fetchall()


def iter_current_vectors(conn: sqlite3.Connection, *, model_id: str, dim: int) -> Iterable[sqlite3.Row]:
    """Vectors whose content hash still matches their chunk; stale rows are skipped."""
    return conn.execute(
        """
        SELECT v.chunk_key, v.vector
        FROM chunk_vectors v
        JOIN chunks c ON c.chunk_key = v.chunk_key
        WHERE v.model_id = ? AND v.dim = ? AND v.content_hash = c.content_hash
        ORDER BY v.chunk_key
        """,
        (model_id, int(dim)),
    )


def fetch_chunks(conn: sqlite3.Connection, chunk_keys: Iterable[str]) -> dict[str, sqlite3.Row]:
    keys = sorted({k for k in chunk_keys if k})
    if not keys:
        return {}
    placeholders = ",".join("?" for _ in keys)
    rows = conn.execute(
        f"SELECT chunk_key, path, heading, text, byte_start, byte_end FROM chunks WHERE chunk_key IN ({placeholders})",
        keys,
    ).fetchall()
    return {str(row["chunk_key"]): row for row in rows}
