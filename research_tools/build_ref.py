"""Evidence attribution: match answer chunks to source chunks and cite them.

Answer and source text go through the same chunker. Every long-enough answer
chunk is ranked against the source chunk pool (rerank backend, Jaccard overlap
when that fails), all matches are sorted by score, and pairs are taken
greedily so no answer chunk and no source chunk is used twice. Ties keep
their discovery order (answer chunk order, then ranking order) because the
sort is stable.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from research_tools.segment import segment_text
from research_tools.usage import TokenTracker

logger = logging.getLogger(__name__)

_TOKEN_SPLIT = re.compile(r"[^0-9a-z]+")
MARKER_PATTERN = re.compile(r"\[\^\d+\]")


@dataclass
class WebContent:
    url: str
    title: str
    chunks: List[str] = field(default_factory=list)
    chunk_positions: List[Tuple[int, int]] = field(default_factory=list)

    @classmethod
    def from_text(cls, url: str, title: str, text: str, max_chunk_length: int = 500) -> "WebContent":
        chunks, positions = segment_text(text, max_chunk_length=max_chunk_length)
        return cls(url=url, title=title or url, chunks=chunks, chunk_positions=positions)


@dataclass
class Reference:
    exact_quote: str
    url: str
    title: str
    relevance_score: float
    answer_chunk: str
    answer_position: Tuple[int, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exactQuote": self.exact_quote,
            "url": self.url,
            "title": self.title,
            "relevanceScore": self.relevance_score,
            "answerChunk": self.answer_chunk,
            "answerChunkPosition": list(self.answer_position),
        }


@dataclass
class ReferenceResult:
    answer: str
    references: List[Reference]


@dataclass
class _Match:
    web_index: int
    answer_index: int
    score: float


def _tokens(text: str) -> set[str]:
    return {t for t in _TOKEN_SPLIT.split(text.lower()) if t}


def jaccard_rank(query: str, documents: Sequence[str]) -> List[Tuple[int, float]]:
    q = _tokens(query)
    scored: List[Tuple[int, float]] = []
    for i, doc in enumerate(documents):
        d = _tokens(doc)
        union = q | d
        scored.append((i, len(q & d) / len(union) if union else 0.0))
    scored.sort(key=lambda x: x[1], reverse=True)
    return scored


def strip_markers(text: str) -> str:
    return MARKER_PATTERN.sub("", text)


class ReferenceBuilder:
    def __init__(
        self,
        reranker: Any,
        usage_tracker: Optional[TokenTracker] = None,
        max_ref: int = 6,
        min_chunk_length: int = 50,
        max_chunk_length: int = 500,
        batch_size: int = 100,
        max_workers: int = 4,
    ) -> None:
        self.reranker = reranker
        self.usage_tracker = usage_tracker
        self.max_ref = max_ref
        self.min_chunk_length = min_chunk_length
        self.max_chunk_length = max_chunk_length
        self.batch_size = max(1, batch_size)
        self.max_workers = max(1, max_workers)

    def build(self, answer: str, web_contents: Dict[str, WebContent]) -> ReferenceResult:
        answer_chunks, answer_positions = segment_text(answer, self.max_chunk_length)

        web_chunks: List[str] = []
        sources: List[Tuple[str, str]] = []
        valid_web: set[int] = set()
        for url, content in web_contents.items():
            for chunk in content.chunks:
                if len(chunk) >= self.min_chunk_length:
                    valid_web.add(len(web_chunks))
                web_chunks.append(chunk)
                sources.append((url, content.title or url))
        if not web_chunks:
            return ReferenceResult(answer=answer, references=[])

        tasks = [
            i
            for i, chunk in enumerate(answer_chunks)
            if chunk.strip() and len(chunk) >= self.min_chunk_length
        ]
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            rankings = list(pool.map(lambda i: self._rank(answer_chunks[i], web_chunks), tasks))

        matches: List[_Match] = []
        for answer_index, ranked in zip(tasks, rankings):
            for web_index, score in ranked:
                if web_index in valid_web:
                    matches.append(_Match(web_index, answer_index, score))
        self._log_statistics(matches)
        matches.sort(key=lambda m: m.score, reverse=True)

        used_web: set[int] = set()
        used_answer: set[int] = set()
        selected: List[_Match] = []
        for m in matches:
            if len(selected) >= self.max_ref:
                break
            if m.web_index in used_web or m.answer_index in used_answer:
                continue
            selected.append(m)
            used_web.add(m.web_index)
            used_answer.add(m.answer_index)

        references = [
            Reference(
                exact_quote=web_chunks[m.web_index],
                url=sources[m.web_index][0],
                title=sources[m.web_index][1],
                relevance_score=m.score,
                answer_chunk=answer_chunks[m.answer_index],
                answer_position=answer_positions[m.answer_index],
            )
            for m in selected
        ]
        references.sort(key=lambda r: r.answer_position[0])
        return ReferenceResult(answer=inject_markers(answer, references), references=references)

    def _rank(self, query: str, documents: List[str]) -> List[Tuple[int, float]]:
        try:
            return self._rerank(query, documents)
        except Exception as exc:
            logger.warning("Rerank failed, falling back to Jaccard overlap: %s", exc)
            return jaccard_rank(query, documents)

    def _rerank(self, query: str, documents: List[str]) -> List[Tuple[int, float]]:
        ranked: List[Tuple[int, float]] = []
        for offset in range(0, len(documents), self.batch_size):
            batch = documents[offset : offset + self.batch_size]
            hits, tokens = self.reranker.rerank(query, batch, top_n=len(batch))
            if self.usage_tracker:
                self.usage_tracker.record("rerank", tokens)
            ranked.extend((offset + h.index, h.relevance_score) for h in hits)
        ranked.sort(key=lambda x: x[1], reverse=True)
        return ranked

    def _log_statistics(self, matches: List[_Match]) -> None:
        if not matches:
            return
        scores = [m.score for m in matches]
        logger.info(
            "Reference relevance: min=%.4f max=%.4f mean=%.4f count=%d",
            min(scores),
            max(scores),
            sum(scores) / len(scores),
            len(scores),
        )


def inject_markers(answer: str, references: List[Reference]) -> str:
    """Insert ``[^n]`` after each referenced span, numbered by position."""
    modified = answer
    offset = 0
    for i, ref in enumerate(sorted(references, key=lambda r: r.answer_position[0]), start=1):
        marker = f"[^{i}]"
        start = ref.answer_position[0] + offset
        insert_at = ref.answer_position[1] + offset
        # Attach to the sentence, not to the blank line after it.
        while insert_at > start and modified[insert_at - 1] == "\n":
            insert_at -= 1
        modified = modified[:insert_at] + marker + modified[insert_at:]
        offset += len(marker)
    return modified


def build_references(
    answer: str,
    web_contents: Dict[str, WebContent],
    reranker: Any,
    usage_tracker: Optional[TokenTracker] = None,
    max_ref: int = 6,
    min_chunk_length: int = 50,
) -> ReferenceResult:
    return ReferenceBuilder(
        reranker, usage_tracker, max_ref=max_ref, min_chunk_length=min_chunk_length
    ).build(answer, web_contents)
