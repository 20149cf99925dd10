import copy
from typing import Any, Callable, Dict, List, Optional

import pytest

from deep_research_agent import DeepResearchAgent
from research_tools.backends import ReadResult, RerankHit, SearchResult
from research_tools.build_ref import jaccard_rank
from research_tools.errors import UpstreamUnavailableError


DEFAULT_RESPONSES: Dict[str, Any] = {
    "evaluate_question": {"think": "", "needsFreshness": False, "needsPlurality": False},
    "evaluate_definitive": {"pass": True, "think": "The answer is direct."},
    "evaluate_freshness": {"pass": True, "think": "Recent enough."},
    "evaluate_plurality": {"pass": True, "think": "Enough items."},
    "evaluate_attribution": {"pass": True, "think": "Quotes match the source."},
    "error_analysis": {
        "recap": "Answered too early.",
        "blame": "No evidence was gathered.",
        "improvement": "Search before answering.",
        "questionsToAnswer": [],
    },
    "query_rewrite": {},
    "agent_final": {"action": "answer", "think": "Out of budget.", "answer": "Final best effort."},
}


class FakeLLM:
    """Stage-keyed scripted responses.

    A list is consumed in order and its last entry repeats; an exception
    instance is raised; a callable receives the user prompt.
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None) -> None:
        merged = dict(DEFAULT_RESPONSES)
        merged.update(responses or {})
        self.responses = {k: list(v) if isinstance(v, list) else v for k, v in merged.items()}
        self.calls: List[Dict[str, Any]] = []

    def json(
        self,
        system_prompt: str,
        user_prompt: str,
        stage: str = "unknown",
        schema: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        self.calls.append({"stage": stage, "prompt": user_prompt, "schema": schema})
        value = self.responses.get(stage, {})
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return value(user_prompt)
        return copy.deepcopy(value)

    def text(
        self,
        system_prompt: str,
        user_prompt: str,
        stage: str = "unknown",
        temperature: Optional[float] = None,
    ) -> str:
        """Plain-text stages echo the prompt unless a response is scripted."""
        self.calls.append({"stage": stage, "prompt": user_prompt, "schema": None})
        if stage not in self.responses:
            return user_prompt
        value = self.responses[stage]
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return value(user_prompt)
        return value

    def stages(self) -> List[str]:
        return [c["stage"] for c in self.calls]

    def count(self, stage: str) -> int:
        return self.stages().count(stage)


class FakeSearch:
    def __init__(self, results: Optional[Dict[str, List[SearchResult]]] = None, fail: bool = False) -> None:
        self.results = results or {}
        self.fail = fail
        self.queries: List[str] = []

    def search(self, query: str):
        self.queries.append(query)
        if self.fail:
            raise UpstreamUnavailableError("search", "search backend down")
        return list(self.results.get(query, [])), 10


class FakeReader:
    def __init__(self, pages: Optional[Dict[str, str]] = None) -> None:
        self.pages = pages or {}
        self.reads: List[str] = []

    def read(self, url: str) -> ReadResult:
        self.reads.append(url)
        if url not in self.pages:
            raise UpstreamUnavailableError("reader", f"cannot read {url}")
        content = self.pages[url]
        return ReadResult(title=f"Title of {url}", url=url, content=content, tokens=len(content) // 4)


class FakeEmbeddings:
    """Explicit vectors per text; unknown texts get their own one-hot axis."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, fail: bool = False, dims: int = 64) -> None:
        self.vectors = dict(vectors or {})
        self.fail = fail
        self.dims = dims
        self.calls: List[List[str]] = []
        self._next_axis = 0

    def _vector_for(self, text: str) -> List[float]:
        if text not in self.vectors:
            vec = [0.0] * self.dims
            vec[self._next_axis % self.dims] = 1.0
            self._next_axis += 1
            self.vectors[text] = vec
        return self.vectors[text]

    def embed(self, inputs, kind: str = "text"):
        self.calls.append(list(inputs))
        if self.fail:
            raise UpstreamUnavailableError("embeddings", "embeddings down")
        return [self._vector_for(t) for t in inputs], len(inputs)


class FakeReranker:
    def __init__(self, scorer: Optional[Callable[[str, str], float]] = None, fail: bool = False) -> None:
        self.scorer = scorer
        self.fail = fail
        self.batches: List[int] = []

    def rerank(self, query: str, documents: List[str], top_n: Optional[int] = None):
        self.batches.append(len(documents))
        if self.fail:
            raise UpstreamUnavailableError("reranker", "rerank down")
        if self.scorer is None:
            ranked = jaccard_rank(query, documents)
        else:
            ranked = sorted(
                ((i, self.scorer(query, d)) for i, d in enumerate(documents)),
                key=lambda x: x[1],
                reverse=True,
            )
        return [RerankHit(index=i, relevance_score=s) for i, s in ranked], len(documents)


@pytest.fixture
def make_agent():
    def _make(llm: FakeLLM, **kwargs: Any) -> DeepResearchAgent:
        params: Dict[str, Any] = {
            "search": FakeSearch(),
            "reader": FakeReader(),
            "embeddings": FakeEmbeddings(),
            "reranker": FakeReranker(),
            "step_sleep": 0,
            "verbose": False,
        }
        params.update(kwargs)
        return DeepResearchAgent(llm=llm, **params)

    return _make
