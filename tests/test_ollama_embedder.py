from __future__ import annotations

import unittest
from unittest.mock import patch

import requests

from kbagent.embedders.ollama import OllamaEmbedder, create_embedder


class _FakeResponse:
    def __init__(self, status_code: int, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _embedder(batch_size: int = 32) -> OllamaEmbedder:
    return OllamaEmbedder(base_url="http://127.0.0.1:11434/", model_id="m", timeout_s=2, batch_size=batch_size)


class OllamaEmbedderTests(unittest.TestCase):
    def test_batches_go_to_embed_endpoint(self) -> None:
        calls: list[list[str]] = []

        def _post(url, json, timeout):  # type: ignore[no-untyped-def]
            _ = timeout
            self.assertEqual(url, "http://127.0.0.1:11434/api/embed")
            calls.append(list(json["input"]))
            return _FakeResponse(200, {"embeddings": [[1.0, 0.0] for _ in json["input"]]})

        emb = _embedder(batch_size=2)
        with patch("kbagent.embedders.ollama.requests.post", side_effect=_post):
            out = emb.embed_texts(["a", "b", "c"])

        self.assertEqual(calls, [["a", "b"], ["c"]])
        self.assertEqual(len(out), 3)
        self.assertEqual(emb.embed_dim, 2)

    def test_legacy_route_after_404_is_sticky(self) -> None:
        calls: list[str] = []

        def _post(url, json, timeout):  # type: ignore[no-untyped-def]
            _ = timeout
            calls.append(url.rsplit("/", 1)[-1])
            if url.endswith("/api/embed"):
                return _FakeResponse(404, {"error": "not found"})
            return _FakeResponse(200, {"embedding": [1.0, 0.0] if json["prompt"] == "a" else [0.0, 1.0]})

        emb = _embedder()
        with patch("kbagent.embedders.ollama.requests.post", side_effect=_post):
            out = emb.embed_texts(["a", "b"])
            emb.embed_query("c")

        self.assertEqual(out, [[1.0, 0.0], [0.0, 1.0]])
        self.assertEqual(calls, ["embed", "embeddings", "embeddings", "embeddings"])

    def test_server_error_is_not_retried_on_legacy_route(self) -> None:
        with patch("kbagent.embedders.ollama.requests.post", return_value=_FakeResponse(500, {})):
            with self.assertRaises(RuntimeError) as ctx:
                _embedder().embed_texts(["a"])
        self.assertIn("/api/embed", str(ctx.exception))
        self.assertIn("status=500", str(ctx.exception))

    def test_connection_error_raises_runtime_error(self) -> None:
        with patch("kbagent.embedders.ollama.requests.post", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(RuntimeError) as ctx:
                _embedder().embed_query("a")
        self.assertIn("status=unknown", str(ctx.exception))

    def test_malformed_payloads(self) -> None:
        cases = [
            {"embeddings": [[1.0, 0.0]]},
            {"embeddings": [[1.0], [1.0, 2.0]]},
            {"embeddings": [["x", 1.0], [1.0, 2.0]]},
            {"nothing": True},
        ]
        for payload in cases:
            with self.subTest(payload=payload):
                with patch("kbagent.embedders.ollama.requests.post", return_value=_FakeResponse(200, payload)):
                    with self.assertRaises(ValueError):
                        _embedder().embed_texts(["a", "b"])

    def test_dimension_change_is_rejected(self) -> None:
        emb = _embedder()
        with patch("kbagent.embedders.ollama.requests.post", return_value=_FakeResponse(200, {"embeddings": [[1.0, 0.0]]})):
            emb.embed_texts(["a"])
        with patch("kbagent.embedders.ollama.requests.post", return_value=_FakeResponse(200, {"embeddings": [[1.0]]})):
            with self.assertRaises(ValueError):
                emb.embed_texts(["b"])

    def test_create_embedder(self) -> None:
        cfg = {"provider": "ollama", "base_url": "http://h:1", "model_id": "nomic", "timeout_s": 5, "batch_size": 4}
        emb = create_embedder(cfg)
        self.assertEqual(emb.model_id, "nomic")
        with self.assertRaises(ValueError):
            create_embedder(dict(cfg, provider="torch"))


if __name__ == "__main__":
    unittest.main()
