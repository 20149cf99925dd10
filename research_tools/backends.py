"""HTTP collaborators consumed by the research loop.

Every client raises :class:`UpstreamUnavailableError` when its service cannot
be used; the callers own the fallback policy (empty results, fail-open dedup,
Jaccard ranking). A 429 is retried once before giving up.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote, urlparse

import httpx

from research_tools.errors import InsufficientQuotaError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

JINA_SEARCH_URL = "https://s.jina.ai/"
JINA_READER_URL = "https://r.jina.ai/"
JINA_EMBEDDINGS_URL = "https://api.jina.ai/v1/embeddings"
JINA_RERANK_URL = "https://api.jina.ai/v1/rerank"
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"

EMBEDDING_CONFIGS: Dict[str, Dict[str, Any]] = {
    "text": {
        "model": "jina-embeddings-v3",
        "task": "text-matching",
        "dimensions": 1024,
        "embedding_type": "float",
        "late_chunking": False,
    },
    "image": {
        "model": "jina-clip-v2",
        "dimensions": 512,
        "embedding_type": "float",
    },
}


@dataclass
class SearchResult:
    title: str
    url: str
    description: str


@dataclass
class ReadResult:
    title: str
    url: str
    content: str
    tokens: int = 0


@dataclass
class RerankHit:
    index: int
    relevance_score: float


def is_valid_absolute_http_url(url: str) -> bool:
    candidate = (url or "").strip()
    if not candidate:
        return False
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"}:
        return False
    if not parsed.netloc:
        return False
    return True


class _HttpBackend:
    name = "http"

    def __init__(
        self,
        api_key: str = "",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self.retry_delay_sec = 1.0

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _send(self, client: httpx.Client, method: str, url: str, **kwargs: Any) -> httpx.Response:
        for attempt in range(2):
            rsp = client.request(method, url, **kwargs)
            if rsp.status_code == 429 and attempt == 0:
                logger.warning("%s rate limited; retrying once", self.name)
                time.sleep(self.retry_delay_sec)
                continue
            return rsp
        return rsp

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        kwargs.setdefault("headers", self._headers())
        try:
            if self._client is not None:
                rsp = self._send(self._client, method, url, **kwargs)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    rsp = self._send(client, method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(self.name, str(exc)) from exc
        self._check_status(rsp)
        try:
            data = rsp.json()
        except ValueError as exc:
            raise UpstreamUnavailableError(self.name, "invalid JSON response") from exc
        if not isinstance(data, dict):
            raise UpstreamUnavailableError(self.name, "unexpected response shape")
        return data

    def _check_status(self, rsp: httpx.Response) -> None:
        if rsp.status_code >= 400:
            raise UpstreamUnavailableError(
                self.name, f"HTTP {rsp.status_code}: {rsp.text[:200]}"
            )


class JinaSearch(_HttpBackend):
    name = "search"

    def search(self, query: str) -> tuple[List[SearchResult], int]:
        headers = self._headers()
        headers["X-Retain-Images"] = "none"
        data = self._request("GET", JINA_SEARCH_URL + quote(query, safe=""), headers=headers)
        items = data.get("data") or []
        results: List[SearchResult] = []
        tokens = 0
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            usage = item.get("usage") if isinstance(item.get("usage"), dict) else {}
            tokens += int(usage.get("tokens", 0) or 0)
            url = str(item.get("url", "")).strip()
            if not is_valid_absolute_http_url(url):
                continue
            results.append(
                SearchResult(
                    title=str(item.get("title", "") or url),
                    url=url,
                    description=str(item.get("description", "") or ""),
                )
            )
        return results, tokens


class BraveSearch(_HttpBackend):
    name = "search"

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Accept-Encoding": "gzip",
            "X-Subscription-Token": self.api_key,
        }

    def search(self, query: str) -> tuple[List[SearchResult], int]:
        data = self._request("GET", BRAVE_SEARCH_URL, params={"q": query})
        web = data.get("web") if isinstance(data.get("web"), dict) else {}
        results: List[SearchResult] = []
        for item in web.get("results", []) or []:
            if not isinstance(item, dict):
                continue
            url = str(item.get("url", "")).strip()
            if not is_valid_absolute_http_url(url):
                continue
            results.append(
                SearchResult(
                    title=str(item.get("title", "") or url),
                    url=url,
                    description=str(item.get("description", "") or ""),
                )
            )
        return results, 0


class JinaReader(_HttpBackend):
    name = "read"

    def read(self, url: str) -> ReadResult:
        if not is_valid_absolute_http_url(url):
            raise UpstreamUnavailableError(self.name, f"invalid URL: {url}")
        headers = self._headers()
        headers["Content-Type"] = "application/json"
        headers["X-Retain-Images"] = "none"
        data = self._request("POST", JINA_READER_URL, json={"url": url}, headers=headers)
        payload = data.get("data")
        if not isinstance(payload, dict):
            raise UpstreamUnavailableError(self.name, f"no content returned for {url}")
        usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
        return ReadResult(
            title=str(payload.get("title", "") or ""),
            url=str(payload.get("url", "") or url),
            content=str(payload.get("content", "") or ""),
            tokens=int(usage.get("tokens", 0) or 0),
        )


class JinaEmbeddings(_HttpBackend):
    name = "embeddings"

    def _check_status(self, rsp: httpx.Response) -> None:
        if rsp.status_code == 402:
            raise InsufficientQuotaError(self.name, "insufficient balance")
        super()._check_status(rsp)

    def embed(self, inputs: Sequence[str], kind: str = "text") -> tuple[List[List[float]], int]:
        config = EMBEDDING_CONFIGS.get(kind)
        if config is None:
            raise ValueError(f"Invalid embedding type: {kind}")
        body: Dict[str, Any] = dict(config)
        body["input"] = list(inputs) if kind == "text" else [{"image": i} for i in inputs]
        data = self._request("POST", JINA_EMBEDDINGS_URL, json=body)
        items = data.get("data")
        if not isinstance(items, list) or len(items) != len(inputs):
            raise UpstreamUnavailableError(self.name, "embedding count mismatch")
        items = sorted(items, key=lambda i: int(i.get("index", 0)))
        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        return [list(i.get("embedding") or []) for i in items], int(
            usage.get("total_tokens", 0) or 0
        )


class JinaReranker(_HttpBackend):
    name = "rerank"

    def __init__(self, *args: Any, model: str = "jina-reranker-v2-base-multilingual", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.model = model

    def rerank(
        self, query: str, documents: Sequence[str], top_n: Optional[int] = None
    ) -> tuple[List[RerankHit], int]:
        body = {
            "model": self.model,
            "query": query,
            "documents": list(documents),
            "top_n": top_n or len(documents),
        }
        data = self._request("POST", JINA_RERANK_URL, json=body)
        try:
            hits = [
                RerankHit(index=int(r["index"]), relevance_score=float(r["relevance_score"]))
                for r in data.get("results", []) or []
                if isinstance(r, dict) and "index" in r and "relevance_score" in r
            ]
        except (TypeError, ValueError) as exc:
            raise UpstreamUnavailableError(self.name, f"malformed rerank results: {exc}") from exc
        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        return hits, int(usage.get("total_tokens", 0) or 0)


def build_search_backend(provider: str = "jina") -> _HttpBackend:
    provider = (provider or "jina").strip().lower()
    if provider == "brave":
        return BraveSearch(api_key=os.getenv("BRAVE_API_KEY", ""))
    if provider != "jina":
        raise ValueError(f"Unknown search provider: {provider}")
    return JinaSearch(api_key=os.getenv("JINA_API_KEY", ""))
