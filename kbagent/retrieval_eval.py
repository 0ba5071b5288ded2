from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from kbagent.retrieval import ReadGate, RetrievalEngine


logger = logging.getLogger("kbagent.retrieval_eval")

# Chunks requested per wanted path; several chunks of one note collapse to one path.
CHUNKS_PER_PATH = 3


@dataclass(frozen=True)
class EvalCase:
    id: str
    query: str
    expected_paths: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class EvalDataset:
    name: str
    cases: List[EvalCase] = field(default_factory=list)


@dataclass
class EvalReport:
    dataset: str
    cases: int
    k: int
    recall_at_k: float
    mrr_at_k: float
    misses: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset": self.dataset,
            "cases": self.cases,
            "k": self.k,
            "recall_at_k": self.recall_at_k,
            "mrr_at_k": self.mrr_at_k,
            "misses": list(self.misses),
        }


def load_dataset(path: Path) -> EvalDataset:
    """
    Read a YAML dataset of the form:

        name: kb-retrieval-core
        cases:
          - id: c1
            query: how do retries back off
            expected_paths: [projects/retry.md]
    """
    with path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"{path}: invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{path}: eval dataset must be a mapping")
    raw_cases = data.get("cases") or []
    if not isinstance(raw_cases, list):
        raise ValueError(f"{path}: cases must be a list")

    cases: List[EvalCase] = []
    seen: set[str] = set()
    for i, raw in enumerate(raw_cases):
        if not isinstance(raw, dict):
            raise ValueError(f"{path}: case #{i + 1} must be a mapping")
        case_id = str(raw.get("id") or "").strip()
        query = str(raw.get("query") or "").strip()
        if not case_id or not query:
            raise ValueError(f"{path}: case #{i + 1} needs an id and a query")
        if case_id in seen:
            raise ValueError(f"{path}: duplicate case id {case_id!r}")
        seen.add(case_id)
        expected = raw.get("expected_paths") or []
        if not isinstance(expected, list):
            raise ValueError(f"{path}: case {case_id!r} expected_paths must be a list")
        cases.append(EvalCase(id=case_id, query=query, expected_paths=[str(p) for p in expected]))
    return EvalDataset(name=str(data.get("name") or path.stem), cases=cases)


def recall_at_k(expected_paths: Sequence[str], predicted_paths: Sequence[str]) -> float:
    """1.0 when any expected path was retrieved, else 0.0; a case with no expectations scores 0."""
    if not expected_paths:
        return 0.0
    wanted = set(expected_paths)
    return 1.0 if any(p in wanted for p in predicted_paths) else 0.0


def mrr_at_k(expected_paths: Sequence[str], predicted_paths: Sequence[str]) -> float:
    wanted = set(expected_paths)
    for rank, path in enumerate(predicted_paths, start=1):
        if path in wanted:
            return 1.0 / rank
    return 0.0


def evaluate_predictions(
    dataset: EvalDataset,
    predictions: Mapping[str, Sequence[str]],
    k: int,
) -> EvalReport:
    k = max(1, int(k))
    recall_sum = 0.0
    mrr_sum = 0.0
    misses: List[str] = []
    for case in dataset.cases:
        predicted = list(predictions.get(case.id, []))[:k]
        recall = recall_at_k(case.expected_paths, predicted)
        if recall == 0.0:
            misses.append(case.id)
        recall_sum += recall
        mrr_sum += mrr_at_k(case.expected_paths, predicted)
    divisor = float(len(dataset.cases) or 1)
    return EvalReport(
        dataset=dataset.name,
        cases=len(dataset.cases),
        k=k,
        recall_at_k=recall_sum / divisor,
        mrr_at_k=mrr_sum / divisor,
        misses=misses,
    )


def predict_paths(
    engine: RetrievalEngine,
    dataset: EvalDataset,
    k: int,
    *,
    rerank_enabled: Optional[bool] = None,
    hyde_enabled: Optional[bool] = None,
    read_gate: Optional[ReadGate] = None,
) -> Dict[str, List[str]]:
    """Run every case through the engine and keep the first k distinct note paths."""
    k = max(1, int(k))
    predictions: Dict[str, List[str]] = {}
    for case in dataset.cases:
        found = engine.search(
            case.query,
            k * CHUNKS_PER_PATH,
            rerank_enabled=rerank_enabled,
            hyde_enabled=hyde_enabled,
            read_gate=read_gate,
        )
        paths: List[str] = []
        for chunk in found.chunks:
            if chunk.path not in paths:
                paths.append(chunk.path)
            if len(paths) >= k:
                break
        predictions[case.id] = paths
        logger.debug("eval case %s: %s", case.id, paths)
    return predictions


def evaluate(
    engine: RetrievalEngine,
    dataset: EvalDataset,
    k: int,
    *,
    rerank_enabled: Optional[bool] = None,
    hyde_enabled: Optional[bool] = None,
    read_gate: Optional[ReadGate] = None,
) -> EvalReport:
    predictions = predict_paths(
        engine,
        dataset,
        k,
        rerank_enabled=rerank_enabled,
        hyde_enabled=hyde_enabled,
        read_gate=read_gate,
    )
    report = evaluate_predictions(dataset, predictions, k)
    logger.info(
        "retrieval eval %s: cases=%d recall@%d=%.3f mrr@%d=%.3f",
        report.dataset,
        report.cases,
        report.k,
        report.recall_at_k,
        report.k,
        report.mrr_at_k,
    )
    return report
