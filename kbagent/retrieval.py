from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, List, Optional

import numpy as np

from kbagent.chunk_db import (
    connect_db,
    count_chunks,
    count_notes,
    fetch_chunks,
    init_db,
    iter_current_vectors,
    query_chunks_lexical,
)
from kbagent.config import RetrievalConfig
from kbagent.embedder import Embedder
from kbagent.protocol import ChatMessage
from kbagent.rerank import RERANK_REASON_DISABLED, rerank
from kbagent.vectors import blend_vectors, normalize_vector, unpack_vector_f32_le


logger = logging.getLogger("kbagent.retrieval")

HYDE_QUERY_WEIGHT = 0.65
HYDE_MAX_WORDS = 8
HYDE_MARKERS = ("how ", "why ", "what ", "strategy", "approach", "improve", "optimize", "idea", "plan")
HYDE_SYSTEM_PROMPT = (
    "Write a concise hypothetical markdown note that would answer the user's question. "
    "Return only the note text in plain markdown."
)
MAX_CANDIDATES = 200
MAX_RERANK_POOL = 50

# (query) -> hypothetical passage, or None when generation failed.
HydeGenerator = Callable[[str], Optional[str]]
# () -> context held around the index reads of one search.
ReadGate = Callable[[], ContextManager[Any]]


@dataclass(frozen=True)
class RetrievedChunk:
    chunk_key: str
    path: str
    heading: str
    text: str
    score: float
    method: str
    lexical_rank: Optional[int] = None
    vector_score: Optional[float] = None

    @property
    def source_label(self) -> str:
        return f"{self.path}#{self.heading}" if self.heading else self.path


@dataclass
class SearchResult:
    query: str
    chunks: List[RetrievedChunk]
    fusion: str
    hyde_used: bool = False
    rerank_applied: bool = False
    rerank_reason: str = ""
    candidate_count: int = 0
    vector_search_used: bool = False
    warnings: List[str] = field(default_factory=list)


def should_use_hyde(query: str) -> bool:
    trimmed = query.strip()
    if not trimmed:
        return False
    if len(trimmed.split()) <= HYDE_MAX_WORDS:
        return True
    lowered = trimmed.lower()
    return any(marker in lowered for marker in HYDE_MARKERS)


def hyde_messages(query: str) -> List[ChatMessage]:
    return [ChatMessage.system(HYDE_SYSTEM_PROMPT), ChatMessage.user(query)]


def fuse_rrf(
    lexical: List[str],
    vector: List[str],
    *,
    k: int,
    has_vector: Callable[[str], bool],
) -> Dict[str, float]:
    """
    Reciprocal-rank fusion over the two rankings.

    A chunk with no current vector is scored on its lexical rank alone, with
    that rank standing in for the missing vector rank, so it competes on equal
    footing instead of being dropped or halved.
    """
    lexical_rank = {key: i for i, key in enumerate(lexical, start=1)}
    vector_rank = {key: i for i, key in enumerate(vector, start=1)}
    scores: Dict[str, float] = {}
    for key in set(lexical_rank) | set(vector_rank):
        total = 0.0
        if key in lexical_rank:
            total += 1.0 / (k + lexical_rank[key])
        if key in vector_rank:
            total += 1.0 / (k + vector_rank[key])
        elif key in lexical_rank and not has_vector(key):
            total += 1.0 / (k + lexical_rank[key])
        scores[key] = total
    return scores


def fuse_weighted(
    lexical: List[str],
    vector_scores: Dict[str, float],
    candidates: List[str],
    *,
    lexical_weight: float,
    vector_weight: float,
) -> Dict[str, float]:
    """Weighted sum of rank-normalised lexical score and (cos+1)/2; lexical only for unvectorised chunks."""
    n = max(1, len(lexical))
    lexical_norm = {key: 1.0 - (i / n) for i, key in enumerate(lexical)}
    weight_total = lexical_weight + vector_weight
    scores: Dict[str, float] = {}
    for key in candidates:
        lex = lexical_norm.get(key, 0.0)
        cos = vector_scores.get(key)
        if cos is None or weight_total <= 0.0:
            scores[key] = lex
        else:
            scores[key] = (lexical_weight * lex + vector_weight * ((cos + 1.0) / 2.0)) / weight_total
    return scores


def render_context(chunks: List[RetrievedChunk]) -> str:
    return "\n---\n\n".join(f"[Source: {c.source_label}]\n{c.text}\n" for c in chunks)


class RetrievalEngine:
    def __init__(
        self,
        *,
        db_path: Path,
        config: RetrievalConfig,
        embedder: Optional[Embedder] = None,
        hyde_generator: Optional[HydeGenerator] = None,
    ) -> None:
        self.db_path = db_path
        self.config = config
        self.embedder = embedder
        self.hyde_generator = hyde_generator
        init_db(db_path)

    def index_counts(self) -> tuple[int, int]:
        with connect_db(self.db_path) as conn:
            return count_notes(conn), count_chunks(conn)

    def search(
        self,
        query: str,
        k: int,
        *,
        path_prefix: str = "",
        rerank_enabled: Optional[bool] = None,
        hyde_enabled: Optional[bool] = None,
        read_gate: Optional[ReadGate] = None,
    ) -> SearchResult:
        """
        Hybrid search over the chunk index.

        The query embedding and any HyDE call run before read_gate is
        entered; only the SQLite reads run inside it.
        """
        cfg = self.config
        limit = max(1, int(k))
        use_rerank = cfg.rerank_enabled if rerank_enabled is None else rerank_enabled
        top_k = min(cfg.rerank_top_k, limit)
        pool = min(max(limit, top_k) * 3, MAX_RERANK_POOL) if use_rerank else limit
        candidate_limit = min(pool * 4, MAX_CANDIDATES)
        result = SearchResult(query=query, chunks=[], fusion=cfg.fusion)
        query_vec = self._query_vector(query, result, hyde_enabled)

        gate = read_gate() if read_gate is not None else nullcontext()
        with gate, connect_db(self.db_path) as conn:
            lexical_rows = query_chunks_lexical(conn, query_text=query, limit=candidate_limit)
            lexical = [str(row["chunk_key"]) for row in lexical_rows]

            vector_scores: Dict[str, float] = {}
            if query_vec is not None and self.embedder is not None:
                vector_scores = self._score_vectors(conn, query_vec, self.embedder.model_id)
                result.vector_search_used = bool(vector_scores)
            vector = [
                key
                for key, _ in sorted(vector_scores.items(), key=lambda kv: (-kv[1], kv[0]))[:candidate_limit]
            ]

            candidates = sorted(set(lexical) | set(vector))
            if cfg.fusion == "weighted_sum":
                fused = fuse_weighted(
                    lexical,
                    vector_scores,
                    candidates,
                    lexical_weight=cfg.lexical_weight,
                    vector_weight=cfg.vector_weight,
                )
            else:
                fused = fuse_rrf(lexical, vector, k=cfg.rrf_k, has_vector=lambda key: key in vector_scores)

            rows = fetch_chunks(conn, candidates)

        lexical_rank = {key: i for i, key in enumerate(lexical, start=1)}
        ranked: List[RetrievedChunk] = []
        prefix = path_prefix.strip().strip("/")
        for key in sorted(fused, key=lambda key: (-fused[key], key)):
            row = rows.get(key)
            if row is None:
                continue
            path = str(row["path"])
            if prefix and not (path == prefix or path.startswith(prefix + "/")):
                continue
            in_lex = key in lexical_rank
            in_vec = key in vector_scores and key in vector
            ranked.append(
                RetrievedChunk(
                    chunk_key=key,
                    path=path,
                    heading=str(row["heading"] or ""),
                    text=str(row["text"]),
                    score=fused[key],
                    method="both" if in_lex and in_vec else ("lexical" if in_lex else "vector"),
                    lexical_rank=lexical_rank.get(key),
                    vector_score=vector_scores.get(key),
                )
            )
        ranked = ranked[:pool]

        if use_rerank:
            outcome = rerank(query, ranked, top_k)
            final = outcome.chunks
            result.rerank_applied = outcome.applied
            result.rerank_reason = outcome.reason
            result.candidate_count = outcome.candidate_count
        else:
            final = ranked
            result.rerank_reason = RERANK_REASON_DISABLED
            result.candidate_count = len(ranked)
        result.chunks = final[:limit]
        return result

    def _query_vector(
        self,
        query: str,
        result: SearchResult,
        hyde_enabled: Optional[bool],
    ) -> Optional[np.ndarray]:
        embedder = self.embedder
        if embedder is None:
            return None
        try:
            base = normalize_vector(embedder.embed_query(query))
        except (RuntimeError, ValueError, OSError) as exc:
            result.warnings.append(f"query embedding failed, lexical only: {exc}")
            logger.warning("query embedding failed, using lexical search only: %s", exc)
            return None

        use_hyde = self.config.hyde_enabled if hyde_enabled is None else hyde_enabled
        generator = self.hyde_generator
        if (
            use_hyde
            and generator is not None
            and should_use_hyde(query)
            and self.index_counts()[1] >= self.config.hyde_min_chunks
        ):
            passage = self._generate_hyde(generator, query)
            if passage:
                try:
                    hyde_vec = embedder.embed_query(passage)
                    base = blend_vectors(base, hyde_vec, HYDE_QUERY_WEIGHT)
                    result.hyde_used = True
                except (RuntimeError, ValueError, OSError) as exc:
                    result.warnings.append(f"hyde embedding failed: {exc}")
        return np.asarray(base, dtype=np.float32)

    def _generate_hyde(self, generator: HydeGenerator, query: str) -> Optional[str]:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kbagent-hyde")
        try:
            future = pool.submit(generator, query)
            passage = future.result(timeout=self.config.hyde_timeout_s)
        except FutureTimeout:
            logger.info("hyde generation timed out after %.1fs", self.config.hyde_timeout_s)
            return None
        except Exception as exc:  # falls back to the plain query vector
            logger.info("hyde generation failed: %s", exc)
            return None
        finally:
            pool.shutdown(wait=False)
        passage = (passage or "").strip()
        return passage or None

    def _score_vectors(self, conn, query_vec: np.ndarray, model_id: str) -> Dict[str, float]:
        keys: List[str] = []
        blobs: List[np.ndarray] = []
        for row in iter_current_vectors(conn, model_id=model_id, dim=int(query_vec.shape[0])):
            keys.append(str(row["chunk_key"]))
            blobs.append(unpack_vector_f32_le(bytes(row["vector"])))
        if not keys:
            return {}
        matrix = np.vstack(blobs).astype(np.float32)
        norms = np.linalg.norm(matrix, axis=1) * max(float(np.linalg.norm(query_vec)), 1e-12)
        raw = matrix @ query_vec
        scores = np.divide(raw, norms, out=np.zeros_like(raw), where=norms > 0)
        return {key: float(score) for key, score in zip(keys, scores) if np.isfinite(score)}

