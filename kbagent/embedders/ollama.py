from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from kbagent.embedder import Embedder


logger = logging.getLogger("kbagent.embedders.ollama")


@dataclass
class _EndpointError(RuntimeError):
    endpoint: str
    status_code: int | None
    detail: str

    def __str__(self) -> str:
        status = self.status_code if self.status_code is not None else "unknown"
        return f"{self.endpoint} failed (status={status}): {self.detail}"


class OllamaEmbedder(Embedder):
    """
    Embeddings from a local Ollama server.

    Batches go to /api/embed. Older servers without that route answer 404, in
    which case each text is sent to the legacy /api/embeddings route and the
    embedder stays on the legacy route for the rest of its life.
    """

    def __init__(self, *, base_url: str, model_id: str, timeout_s: float, batch_size: int = 32) -> None:
        self.base_url = base_url.rstrip("/")
        self._model_id = model_id
        self.timeout_s = float(timeout_s)
        self.batch_size = max(1, int(batch_size))
        self._embed_dim = 0
        self._legacy_only = False

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def embed_dim(self) -> int:
        return self._embed_dim

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        out: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            out.extend(self._embed_batch(texts[start : start + self.batch_size]))
        if out:
            dim = len(out[0])
            if self._embed_dim <= 0:
                self._embed_dim = dim
            elif any(len(v) != self._embed_dim for v in out):
                raise ValueError(
                    f"Ollama model {self._model_id} changed embedding dimension (expected {self._embed_dim})"
                )
        return out

    def _embed_batch(self, batch: list[str]) -> list[list[float]]:
        if not batch:
            return []
        if not self._legacy_only:
            try:
                data = self._post_json("/api/embed", {"model": self._model_id, "input": batch})
                return _extract_many_embeddings(data, expected=len(batch))
            except _EndpointError as exc:
                if exc.status_code != 404:
                    raise RuntimeError(f"Ollama embedding request failed via /api/embed: {exc}") from exc
                logger.info("Ollama /api/embed unavailable, switching to /api/embeddings: %s", exc)
                self._legacy_only = True

        vectors: list[list[float]] = []
        for text in batch:
            try:
                data = self._post_json("/api/embeddings", {"model": self._model_id, "prompt": text})
            except _EndpointError as exc:
                raise RuntimeError(f"Ollama embedding request failed via /api/embeddings: {exc}") from exc
            vectors.append(_extract_single_embedding(data))
        return vectors

    def _post_json(self, endpoint: str, payload: dict[str, Any]) -> Any:
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.post(url, json=payload, timeout=self.timeout_s)
        except requests.RequestException as exc:
            raise _EndpointError(endpoint=endpoint, status_code=None, detail=str(exc)) from exc

        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise _EndpointError(endpoint=endpoint, status_code=response.status_code, detail=str(exc)) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise _EndpointError(endpoint=endpoint, status_code=response.status_code, detail="non-JSON response") from exc


def _coerce_vector(raw: Any) -> list[float]:
    if not isinstance(raw, list) or not raw:
        raise ValueError("Embedding vector is missing or empty")
    out: list[float] = []
    for value in raw:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("Embedding vector contains a non-numeric value")
        out.append(float(value))
    return out


def _extract_single_embedding(payload: Any) -> list[float]:
    if not isinstance(payload, dict):
        raise ValueError("Embedding payload is not a JSON object")
    if "embedding" in payload:
        return _coerce_vector(payload.get("embedding"))
    embeddings = payload.get("embeddings")
    if isinstance(embeddings, list) and embeddings:
        return _coerce_vector(embeddings[0])
    raise ValueError("Embedding payload missing 'embedding'/'embeddings'")


def _extract_many_embeddings(payload: Any, *, expected: int) -> list[list[float]]:
    if not isinstance(payload, dict):
        raise ValueError("Embedding payload is not a JSON object")
    raw_embeddings = payload.get("embeddings")
    if not isinstance(raw_embeddings, list):
        raise ValueError("Embedding payload missing 'embeddings' list")

    vectors = [_coerce_vector(item) for item in raw_embeddings]
    if len(vectors) != expected:
        raise ValueError(f"Embedding count mismatch: expected={expected} got={len(vectors)}")
    if vectors and any(len(v) != len(vectors[0]) for v in vectors):
        raise ValueError("Embedding vectors have inconsistent dimensions")
    return vectors


def create_embedder(embed_cfg: dict[str, Any]) -> Embedder:
    provider = str(embed_cfg.get("provider") or "ollama").lower()
    if provider != "ollama":
        raise ValueError(f"Unsupported embedding provider: {provider}")
    return OllamaEmbedder(
        base_url=str(embed_cfg["base_url"]),
        model_id=str(embed_cfg["model_id"]),
        timeout_s=float(embed_cfg["timeout_s"]),
        batch_size=int(embed_cfg.get("batch_size", 32)),
    )
