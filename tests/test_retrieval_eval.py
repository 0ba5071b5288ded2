from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from kbagent.config import RetrievalConfig
from kbagent.indexer import index_vault
from kbagent.retrieval import RetrievalEngine
from kbagent.retrieval_eval import (
    EvalCase,
    EvalDataset,
    evaluate,
    evaluate_predictions,
    load_dataset,
    mrr_at_k,
    predict_paths,
    recall_at_k,
)
from kbagent.vault import VaultStore


class MetricTests(unittest.TestCase):
    def test_recall_is_a_hit_or_miss(self) -> None:
        self.assertEqual(recall_at_k(["a.md"], ["b.md", "a.md"]), 1.0)
        self.assertEqual(recall_at_k(["a.md"], ["b.md"]), 0.0)
        self.assertEqual(recall_at_k([], ["a.md"]), 0.0)

    def test_mrr_uses_first_relevant_rank(self) -> None:
        self.assertEqual(mrr_at_k(["a.md"], ["a.md", "b.md"]), 1.0)
        self.assertEqual(mrr_at_k(["z.md", "b.md"], ["a.md", "b.md", "z.md"]), 0.5)
        self.assertEqual(mrr_at_k(["z.md"], []), 0.0)

    def test_report_averages_cases_and_cuts_at_k(self) -> None:
        dataset = EvalDataset(
            name="demo",
            cases=[
                EvalCase(id="c1", query="q", expected_paths=["a.md"]),
                EvalCase(id="c2", query="q", expected_paths=["z.md"]),
                EvalCase(id="c3", query="q", expected_paths=["late.md"]),
            ],
        )
        predictions = {
            "c1": ["a.md", "b.md"],
            "c2": ["x.md", "z.md"],
            "c3": ["x.md", "y.md", "late.md"],
        }
        report = evaluate_predictions(dataset, predictions, 2)
        self.assertEqual(report.cases, 3)
        self.assertEqual(report.k, 2)
        self.assertAlmostEqual(report.recall_at_k, 2 / 3)
        self.assertAlmostEqual(report.mrr_at_k, 0.5)
        self.assertEqual(report.misses, ["c3"])
        self.assertEqual(report.to_dict()["dataset"], "demo")

    def test_empty_dataset_scores_zero(self) -> None:
        report = evaluate_predictions(EvalDataset(name="empty"), {}, 0)
        self.assertEqual(report.k, 1)
        self.assertEqual(report.recall_at_k, 0.0)
        self.assertEqual(report.mrr_at_k, 0.0)


class LoadDatasetTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _write(self, text: str) -> Path:
        path = self.root / "dataset.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    def test_loads_cases(self) -> None:
        path = self._write(
            "name: kb-retrieval-core\n"
            "cases:\n"
            "  - id: c1\n"
            "    query: how do retries back off\n"
            "    expected_paths: [projects/retry.md]\n"
            "  - id: c2\n"
            "    query: bread\n"
        )
        dataset = load_dataset(path)
        self.assertEqual(dataset.name, "kb-retrieval-core")
        self.assertEqual([c.id for c in dataset.cases], ["c1", "c2"])
        self.assertEqual(dataset.cases[0].expected_paths, ["projects/retry.md"])
        self.assertEqual(dataset.cases[1].expected_paths, [])

    def test_name_defaults_to_file_stem(self) -> None:
        self.assertEqual(load_dataset(self._write("cases: []\n")).name, "dataset")

    def test_rejects_malformed_datasets(self) -> None:
        bad = [
            "- just a list\n",
            "cases: {c1: x}\n",
            "cases:\n  - id: c1\n",
            "cases:\n  - {id: c1, query: a}\n  - {id: c1, query: b}\n",
            "cases:\n  - {id: c1, query: a, expected_paths: a.md}\n",
            "cases: [\n",
        ]
        for text in bad:
            with self.subTest(text=text):
                with self.assertRaises(ValueError):
                    load_dataset(self._write(text))


class EngineEvalTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        vault = VaultStore(root / "vault")
        vault.root.mkdir()
        vault.write_text("projects/retry.md", "# Retry\n\nTransient errors retry with backoff delays.\n\n## More\n\nRetry twice.\n")
        vault.write_text("bread/sourdough.md", "# Sourdough\n\nFeed the starter every morning.\n")
        db_path = root / "index.sqlite"
        index_vault(vault=vault, db_path=db_path, max_chars=60, overlap=0)
        self.engine = RetrievalEngine(db_path=db_path, config=RetrievalConfig(hyde_enabled=False))
        self.dataset = EvalDataset(
            name="local",
            cases=[
                EvalCase(id="retry", query="retry backoff", expected_paths=["projects/retry.md"]),
                EvalCase(id="bread", query="starter morning", expected_paths=["bread/sourdough.md"]),
                EvalCase(id="none", query="zeppelin", expected_paths=["bread/sourdough.md"]),
            ],
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_predictions_are_distinct_paths(self) -> None:
        predictions = predict_paths(self.engine, self.dataset, 2, rerank_enabled=False)
        self.assertEqual(predictions["retry"][0], "projects/retry.md")
        self.assertEqual(len(predictions["retry"]), len(set(predictions["retry"])))
        self.assertEqual(predictions["none"], [])

    def test_evaluate_scores_the_engine(self) -> None:
        report = evaluate(self.engine, self.dataset, 1, rerank_enabled=False)
        self.assertEqual(report.cases, 3)
        self.assertAlmostEqual(report.recall_at_k, 2 / 3)
        self.assertAlmostEqual(report.mrr_at_k, 2 / 3)
        self.assertEqual(report.misses, ["none"])


if __name__ == "__main__":
    unittest.main()
