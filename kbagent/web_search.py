from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

import requests

from kbagent.config import WebSearchConfig


logger = logging.getLogger("kbagent.web_search")

BACKENDS = ("tavily", "searxng", "brave")
TAVILY_URL = "https://api.tavily.com/search"
BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"
_CONTENT_CHARS = 800


class WebSearchError(Exception):
    def __init__(self, code: str, message: str, *, retriable: bool = False) -> None:
        self.code = code
        self.retriable = retriable
        super().__init__(message)


@dataclass(frozen=True)
class WebResult:
    title: str
    url: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "url": self.url, "content": self.content}


def _clip(text: Any) -> str:
    s = str(text or "").strip()
    return s if len(s) <= _CONTENT_CHARS else s[: _CONTENT_CHARS - 3] + "..."


class WebSearchClient:
    def __init__(self, config: WebSearchConfig) -> None:
        self.config = config

    @property
    def configured(self) -> bool:
        if self.config.backend not in BACKENDS:
            return False
        if self.config.backend == "searxng":
            return bool(self.config.base_url)
        return bool(self.config.api_key)

    def search(self, query: str, max_results: int) -> List[WebResult]:
        if not self.configured:
            raise WebSearchError("not_configured", "Web search is not configured")
        limit = max(1, min(int(max_results), self.config.max_results))
        backend = self.config.backend
        try:
            if backend == "tavily":
                data = self._get_json(
                    requests.post(
                        TAVILY_URL,
                        json={"api_key": self.config.api_key, "query": query, "max_results": limit},
                        timeout=self.config.timeout_s,
                    )
                )
                raw = data.get("results") or []
                results = [WebResult(str(r.get("title") or ""), str(r.get("url") or ""), _clip(r.get("content"))) for r in raw]
            elif backend == "searxng":
                data = self._get_json(
                    requests.get(
                        f"{self.config.base_url}/search",
                        params={"q": query, "format": "json"},
                        timeout=self.config.timeout_s,
                    )
                )
                raw = data.get("results") or []
                results = [WebResult(str(r.get("title") or ""), str(r.get("url") or ""), _clip(r.get("content"))) for r in raw]
            else:
                data = self._get_json(
                    requests.get(
                        BRAVE_URL,
                        params={"q": query, "count": limit},
                        headers={"Accept": "application/json", "X-Subscription-Token": self.config.api_key},
                        timeout=self.config.timeout_s,
                    )
                )
                raw = (data.get("web") or {}).get("results") or []
                results = [
                    WebResult(str(r.get("title") or ""), str(r.get("url") or ""), _clip(r.get("description")))
                    for r in raw
                ]
        except requests.RequestException as exc:
            logger.warning("web search via %s failed: %s", backend, exc)
            raise WebSearchError("request_failed", f"{backend} request failed: {exc}", retriable=True) from exc
        return [r for r in results if r.url][:limit]

    @staticmethod
    def _get_json(response: requests.Response) -> Dict[str, Any]:
        if response.status_code >= 400:
            raise WebSearchError(
                "request_failed",
                f"HTTP {response.status_code}: {response.text[:300]}",
                retriable=response.status_code in (429, 500, 502, 503, 504),
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise WebSearchError("parse_failed", "Web search returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise WebSearchError("parse_failed", "Web search returned an unexpected payload")
        return data
