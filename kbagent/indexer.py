from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from kbagent.chunk_db import (
    chunks_missing_vectors,
    connect_db,
    count_chunks,
    count_notes,
    delete_note,
    get_meta,
    get_note_hash,
    init_db,
    list_note_paths,
    replace_note_chunks,
    set_meta,
    sha256_text,
    upsert_vector,
)
from kbagent.chunking import chunk_note
from kbagent.embedder import Embedder
from kbagent.vault import VaultStore
from kbagent.vectors import chunk_embedding_input, normalize_vector


logger = logging.getLogger("kbagent.indexer")


@dataclass
class IndexSummary:
    notes_scanned: int = 0
    notes_changed: int = 0
    notes_unchanged: int = 0
    notes_pruned: int = 0
    chunks_written: int = 0
    vectors_written: int = 0
    total_notes: int = 0
    total_chunks: int = 0
    errors: list[str] = field(default_factory=list)


def _chunker_sig(max_chars: int, overlap: int) -> str:
    return f"heading_v1:max_chars={int(max_chars)}:overlap={int(overlap)}"


def index_note_text(
    conn: sqlite3.Connection,
    *,
    path: str,
    text: str,
    max_chars: int,
    overlap: int,
    force: bool = False,
) -> Optional[list[str]]:
    """Rechunk one note. Returns the new chunk keys, or None when the hash is unchanged."""
    content_hash = sha256_text(text)
    if not force and get_note_hash(conn, path) == content_hash:
        return None
    chunks = chunk_note(text, max_chars=max_chars, overlap=overlap)
    return replace_note_chunks(conn, path=path, content_hash=content_hash, chunks=chunks)


def embed_pending_chunks(conn: sqlite3.Connection, embedder: Embedder, *, batch_size: int = 32) -> int:
    """Embed chunks that have no vector for the active model or whose vector is stale."""
    pending = chunks_missing_vectors(conn, embedder.model_id)
    written = 0
    for start in range(0, len(pending), max(1, batch_size)):
        batch = pending[start : start + batch_size]
        inputs = [
            chunk_embedding_input(path=str(row["path"]), heading=str(row["heading"]), text=str(row["text"]))
            for row in batch
        ]
        vectors = embedder.embed_texts(inputs)
        if len(vectors) != len(batch):
            raise RuntimeError(f"Embedding count mismatch: expected={len(batch)} got={len(vectors)}")
        for row, vector in zip(batch, vectors):
            upsert_vector(
                conn,
                chunk_key=str(row["chunk_key"]),
                model_id=embedder.model_id,
                content_hash=str(row["content_hash"]),
                vector=normalize_vector(vector),
            )
            written += 1
        conn.commit()
    return written


def index_vault(
    *,
    vault: VaultStore,
    db_path: Path,
    max_chars: int,
    overlap: int,
    embedder: Optional[Embedder] = None,
    batch_size: int = 32,
    rebuild: bool = False,
) -> IndexSummary:
    init_db(db_path)
    summary = IndexSummary()

    with connect_db(db_path) as conn:
        sig = _chunker_sig(max_chars, overlap)
        force = rebuild or get_meta(conn, "chunker_sig") != sig
        set_meta(conn, "chunker_sig", sig)
        conn.commit()

        seen: set[str] = set()
        for rel_path in vault.iter_note_paths():
            seen.add(rel_path)
            summary.notes_scanned += 1
            try:
                text = vault.read_text(rel_path) or ""
                keys = index_note_text(
                    conn, path=rel_path, text=text, max_chars=max_chars, overlap=overlap, force=force
                )
            except (OSError, ValueError, sqlite3.Error) as exc:
                summary.errors.append(f"{rel_path}: {exc}")
                logger.warning("indexing failed for %s: %s", rel_path, exc)
                continue
            if keys is None:
                summary.notes_unchanged += 1
            else:
                summary.notes_changed += 1
                summary.chunks_written += len(keys)

        for stale_path in list_note_paths(conn):
            if stale_path not in seen:
                delete_note(conn, stale_path)
                summary.notes_pruned += 1

        if embedder is not None:
            try:
                summary.vectors_written = embed_pending_chunks(conn, embedder, batch_size=batch_size)
            except (RuntimeError, ValueError) as exc:
                # Chunks without vectors still serve lexical search.
                summary.errors.append(f"embedding: {exc}")
                logger.warning("embedding pass failed: %s", exc)

        summary.total_notes = count_notes(conn)
        summary.total_chunks = count_chunks(conn)

    logger.info(
        "indexed vault %s: scanned=%d changed=%d pruned=%d vectors=%d",
        vault.root,
        summary.notes_scanned,
        summary.notes_changed,
        summary.notes_pruned,
        summary.vectors_written,
    )
    return summary
