from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, List

if TYPE_CHECKING:
    from kbagent.retrieval import RetrievedChunk


RERANK_REASON_APPLIED = "lexical_pairwise"
RERANK_REASON_DISABLED = "disabled_in_settings"
RERANK_REASON_NO_CANDIDATES = "no_candidates"
RERANK_REASON_NO_TOKENS = "query_has_no_usable_tokens"

_SPLIT_RE = re.compile(r"[^0-9A-Za-z]+")


@dataclass(frozen=True)
class RerankOutcome:
    chunks: List["RetrievedChunk"]
    applied: bool
    reason: str
    candidate_count: int


def rerank_tokens(text: str) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for raw in _SPLIT_RE.split(text):
        token = raw.lower()
        if len(token) < 3 or token in seen:
            continue
        seen.add(token)
        out.append(token)
    return out


def _pairwise_score(query_lc: str, tokens: List[str], chunk: "RetrievedChunk", base: float) -> float:
    content = chunk.text.lower()
    heading = chunk.heading.lower()
    coverage = sum(1 for t in tokens if t in content) / len(tokens)
    heading_coverage = sum(1 for t in tokens if heading and t in heading) / len(tokens)
    phrase_boost = 0.2 if len(query_lc) >= 8 and query_lc in content else 0.0
    return base * 0.5 + coverage * 0.35 + heading_coverage * 0.15 + phrase_boost


def rerank(query: str, candidates: List["RetrievedChunk"], top_k: int) -> RerankOutcome:
    """
    Re-score fused candidates by query-term coverage in body and heading.

    Fused scores are rescaled to [0, 1] against the best candidate before they
    are blended in, so the policy works the same for RRF and weighted fusion.
    """
    keep = max(1, int(top_k))
    count = len(candidates)
    if count == 0:
        return RerankOutcome(chunks=[], applied=False, reason=RERANK_REASON_NO_CANDIDATES, candidate_count=0)

    tokens = rerank_tokens(query)
    if not tokens:
        return RerankOutcome(
            chunks=list(candidates[:keep]),
            applied=False,
            reason=RERANK_REASON_NO_TOKENS,
            candidate_count=count,
        )

    query_lc = query.strip().lower()
    top_fused = max(c.score for c in candidates) or 1.0
    scored = [
        replace(c, score=_pairwise_score(query_lc, tokens, c, c.score / top_fused))
        for c in candidates
    ]
    scored.sort(key=lambda c: (-c.score, c.chunk_key))
    return RerankOutcome(
        chunks=scored[:keep],
        applied=True,
        reason=RERANK_REASON_APPLIED,
        candidate_count=count,
    )
