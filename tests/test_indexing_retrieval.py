from __future__ import annotations

import hashlib
import re
import tempfile
import unittest
from pathlib import Path

from kbagent.chunk_db import build_fts_query, connect_db, count_vectors, query_terms
from kbagent.config import RetrievalConfig
from kbagent.embedder import Embedder
from kbagent.indexer import index_vault
from kbagent.rerank import (
    RERANK_REASON_APPLIED,
    RERANK_REASON_DISABLED,
    RERANK_REASON_NO_CANDIDATES,
    RERANK_REASON_NO_TOKENS,
    rerank,
)
from kbagent.retrieval import RetrievalEngine, RetrievedChunk, fuse_rrf, fuse_weighted, render_context, should_use_hyde
from kbagent.vault import VaultStore


class _HashEmbedder(Embedder):
    """Bag-of-words hashed into a small vector; deterministic and offline."""

    DIM = 32

    def __init__(self) -> None:
        self.calls = 0

    @property
    def model_id(self) -> str:
        return "test:hash-32"

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        out: list[list[float]] = []
        for text in texts:
            vec = [0.0] * self.DIM
            for token in re.findall(r"\w+", text.lower()):
                bucket = int(hashlib.sha256(token.encode("utf-8")).hexdigest(), 16) % self.DIM
                vec[bucket] += 1.0
            if not any(vec):
                vec[0] = 1.0
            out.append(vec)
        return out


class _ShortEmbedder(_HashEmbedder):
    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return super().embed_texts(texts)[:-1]


NOTES = {
    "projects/retry.md": "# Retry policy\n\nTransient provider errors are retried with backoff delays.\n",
    "projects/fallback.md": "# Fallback\n\nAfter retries are exhausted the gateway switches to the fallback model.\n",
    "journal/2024-01-01.md": "# Monday\n\nWalked the dog and read about sourdough bread.\n",
}


class IndexerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.vault = VaultStore(root / "vault")
        self.vault.root.mkdir()
        for path, text in NOTES.items():
            self.vault.write_text(path, text)
        self.db_path = root / "state" / "index.sqlite"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _index(self, **kwargs):
        return index_vault(vault=self.vault, db_path=self.db_path, max_chars=800, overlap=0, **kwargs)

    def test_index_counts_and_unchanged_rerun(self) -> None:
        embedder = _HashEmbedder()
        first = self._index(embedder=embedder)
        self.assertEqual(first.notes_scanned, 3)
        self.assertEqual(first.notes_changed, 3)
        self.assertEqual(first.total_notes, 3)
        self.assertGreaterEqual(first.total_chunks, 3)
        self.assertEqual(first.vectors_written, first.total_chunks)
        self.assertEqual(first.errors, [])

        second = self._index(embedder=embedder)
        self.assertEqual(second.notes_changed, 0)
        self.assertEqual(second.notes_unchanged, 3)
        self.assertEqual(second.vectors_written, 0)

    def test_deleted_note_is_pruned(self) -> None:
        self._index()
        self.vault.delete("journal/2024-01-01.md")
        summary = self._index()
        self.assertEqual(summary.notes_pruned, 1)
        self.assertEqual(summary.total_notes, 2)

    def test_changed_chunker_settings_force_rechunk(self) -> None:
        self._index()
        summary = index_vault(vault=self.vault, db_path=self.db_path, max_chars=400, overlap=0)
        self.assertEqual(summary.notes_changed, 3)

    def test_embedding_count_mismatch_is_reported_not_raised(self) -> None:
        summary = self._index(embedder=_ShortEmbedder())
        self.assertEqual(summary.vectors_written, 0)
        self.assertEqual(len(summary.errors), 1)
        self.assertIn("Embedding count mismatch", summary.errors[0])
        with connect_db(self.db_path) as conn:
            self.assertEqual(count_vectors(conn, "test:hash-32"), 0)


class FtsQueryTests(unittest.TestCase):
    def test_terms_are_deduplicated_and_short_tokens_dropped(self) -> None:
        self.assertEqual(query_terms("Retry a retry POLICY"), ["retry", "policy"])

    def test_punctuation_only_query_has_no_fts_query(self) -> None:
        self.assertIsNone(build_fts_query("?? !! -"))
        self.assertEqual(build_fts_query("retry policy"), '"retry"* OR "policy"*')


class FusionTests(unittest.TestCase):
    def test_rrf_scores_both_rankings(self) -> None:
        scores = fuse_rrf(["a", "b"], ["b", "c"], k=60, has_vector=lambda key: True)
        self.assertAlmostEqual(scores["a"], 1 / 61)
        self.assertAlmostEqual(scores["b"], 1 / 62 + 1 / 61)
        self.assertAlmostEqual(scores["c"], 1 / 62)

    def test_rrf_unvectorised_chunk_uses_lexical_rank_twice(self) -> None:
        scores = fuse_rrf(["a", "b"], ["b"], k=60, has_vector=lambda key: key == "b")
        self.assertAlmostEqual(scores["a"], 2 / 61)

    def test_weighted_sum(self) -> None:
        scores = fuse_weighted(
            ["a", "b"],
            {"a": 1.0, "c": -1.0},
            ["a", "b", "c"],
            lexical_weight=0.5,
            vector_weight=0.5,
        )
        self.assertAlmostEqual(scores["a"], 1.0)
        self.assertAlmostEqual(scores["b"], 0.5)
        self.assertAlmostEqual(scores["c"], 0.0)


def _chunk(key: str, text: str, score: float, heading: str = "") -> RetrievedChunk:
    return RetrievedChunk(chunk_key=key, path=f"{key}.md", heading=heading, text=text, score=score, method="lexical")


class RerankTests(unittest.TestCase):
    def test_no_candidates(self) -> None:
        outcome = rerank("retry", [], 5)
        self.assertFalse(outcome.applied)
        self.assertEqual(outcome.reason, RERANK_REASON_NO_CANDIDATES)

    def test_query_without_usable_tokens_keeps_order(self) -> None:
        chunks = [_chunk("a", "x", 0.2), _chunk("b", "y", 0.1)]
        outcome = rerank("a b", chunks, 1)
        self.assertFalse(outcome.applied)
        self.assertEqual(outcome.reason, RERANK_REASON_NO_TOKENS)
        self.assertEqual([c.chunk_key for c in outcome.chunks], ["a"])

    def test_coverage_promotes_matching_chunk(self) -> None:
        chunks = [
            _chunk("a", "unrelated text about bread", 0.02),
            _chunk("b", "the retry policy uses backoff", 0.018, heading="Retry policy"),
        ]
        outcome = rerank("retry policy", chunks, 2)
        self.assertTrue(outcome.applied)
        self.assertEqual(outcome.reason, RERANK_REASON_APPLIED)
        self.assertEqual(outcome.chunks[0].chunk_key, "b")
        self.assertEqual(outcome.candidate_count, 2)


class RetrievalEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.vault = VaultStore(root / "vault")
        self.vault.root.mkdir()
        for path, text in NOTES.items():
            self.vault.write_text(path, text)
        self.db_path = root / "index.sqlite"
        self.embedder = _HashEmbedder()
        index_vault(vault=self.vault, db_path=self.db_path, max_chars=800, overlap=0, embedder=self.embedder)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_lexical_only_search_without_embedder(self) -> None:
        engine = RetrievalEngine(db_path=self.db_path, config=RetrievalConfig(hyde_enabled=False))
        result = engine.search("fallback model", 3)
        self.assertFalse(result.vector_search_used)
        self.assertEqual(result.chunks[0].path, "projects/fallback.md")
        self.assertEqual(result.chunks[0].method, "lexical")
        self.assertIn("[Source: projects/fallback.md", render_context(result.chunks[:1]))

    def test_no_match_returns_empty(self) -> None:
        engine = RetrievalEngine(db_path=self.db_path, config=RetrievalConfig(hyde_enabled=False))
        result = engine.search("zeppelin", 5)
        self.assertEqual(result.chunks, [])
        self.assertEqual(result.rerank_reason, RERANK_REASON_NO_CANDIDATES)

    def test_hybrid_search_is_deterministic(self) -> None:
        engine = RetrievalEngine(
            db_path=self.db_path,
            config=RetrievalConfig(hyde_enabled=False),
            embedder=self.embedder,
        )
        first = engine.search("retry backoff delays", 3)
        second = engine.search("retry backoff delays", 3)
        self.assertTrue(first.vector_search_used)
        self.assertEqual(first.chunks[0].path, "projects/retry.md")
        self.assertEqual(first.chunks[0].method, "both")
        self.assertEqual([c.chunk_key for c in first.chunks], [c.chunk_key for c in second.chunks])
        self.assertEqual([c.score for c in first.chunks], [c.score for c in second.chunks])

    def test_weighted_fusion(self) -> None:
        engine = RetrievalEngine(
            db_path=self.db_path,
            config=RetrievalConfig(fusion="weighted_sum", hyde_enabled=False, rerank_enabled=False),
            embedder=self.embedder,
        )
        result = engine.search("sourdough bread", 2)
        self.assertEqual(result.fusion, "weighted_sum")
        self.assertEqual(result.rerank_reason, RERANK_REASON_DISABLED)
        self.assertEqual(result.chunks[0].path, "journal/2024-01-01.md")

    def test_path_prefix_filter(self) -> None:
        engine = RetrievalEngine(
            db_path=self.db_path,
            config=RetrievalConfig(hyde_enabled=False),
            embedder=self.embedder,
        )
        result = engine.search("retry fallback bread", 5, path_prefix="projects/")
        self.assertTrue(result.chunks)
        self.assertTrue(all(c.path.startswith("projects/") for c in result.chunks))

    def test_hyde_blends_generated_passage(self) -> None:
        seen: list[str] = []

        def generate(query: str) -> str:
            seen.append(query)
            return "Retries use exponential backoff before falling back."

        engine = RetrievalEngine(
            db_path=self.db_path,
            config=RetrievalConfig(hyde_min_chunks=0),
            embedder=self.embedder,
            hyde_generator=generate,
        )
        result = engine.search("retry policy", 2)
        self.assertTrue(result.hyde_used)
        self.assertEqual(seen, ["retry policy"])

    def test_hyde_failure_only_costs_recall(self) -> None:
        def generate(query: str) -> str:
            raise RuntimeError("model offline")

        engine = RetrievalEngine(
            db_path=self.db_path,
            config=RetrievalConfig(hyde_min_chunks=0),
            embedder=self.embedder,
            hyde_generator=generate,
        )
        result = engine.search("retry policy", 2)
        self.assertFalse(result.hyde_used)
        self.assertTrue(result.chunks)

    def test_hyde_skipped_below_min_chunks(self) -> None:
        engine = RetrievalEngine(
            db_path=self.db_path,
            config=RetrievalConfig(hyde_min_chunks=100),
            embedder=self.embedder,
            hyde_generator=lambda q: self.fail("generator should not run"),
        )
        self.assertFalse(engine.search("retry", 2).hyde_used)

    def test_should_use_hyde(self) -> None:
        self.assertTrue(should_use_hyde("retry policy"))
        self.assertFalse(should_use_hyde(""))
        long_query = "list every note that mentions the dog walking schedule in january please"
        self.assertFalse(should_use_hyde(long_query))
        self.assertTrue(should_use_hyde(long_query + " and how to plan it"))


if __name__ == "__main__":
    unittest.main()
