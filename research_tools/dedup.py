import logging
from typing import Any, List, Optional, Sequence

import numpy as np

from research_tools.usage import TokenTracker

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.86
IMAGE_SIMILARITY_THRESHOLD = 0.86


def cosine_similarity_matrix(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    if a.size == 0 or b.size == 0:
        return np.zeros((a.shape[0], b.shape[0]))
    a_norm = np.linalg.norm(a, axis=1, keepdims=True)
    b_norm = np.linalg.norm(b, axis=1, keepdims=True)
    a_unit = np.divide(a, a_norm, out=np.zeros_like(a), where=a_norm != 0)
    b_unit = np.divide(b, b_norm, out=np.zeros_like(b), where=b_norm != 0)
    return a_unit @ b_unit.T


class SemanticDeduplicator:
    """Greedy, order-preserving near-duplicate filter over embeddings.

    ``new_items[i]`` survives only if it is below ``threshold`` against every
    existing item and every earlier survivor. Embedding failures fail open.
    """

    def __init__(
        self,
        embeddings: Any,
        usage_tracker: Optional[TokenTracker] = None,
        threshold: float = SIMILARITY_THRESHOLD,
        kind: str = "text",
    ) -> None:
        self.embeddings = embeddings
        self.usage_tracker = usage_tracker
        self.threshold = threshold
        self.kind = kind

    def filter(self, new_items: Sequence[str], existing_items: Sequence[str]) -> List[str]:
        new_items = list(new_items)
        existing_items = list(existing_items)
        if not new_items:
            return []
        if len(new_items) == 1 and not existing_items:
            return new_items
        try:
            vectors, tokens = self.embeddings.embed(new_items + existing_items, kind=self.kind)
        except Exception as exc:
            logger.warning("Dedup embedding failed, keeping all %d items: %s", len(new_items), exc)
            return new_items
        if self.usage_tracker:
            tool = "dedup" if self.kind == "text" else f"dedup_{self.kind}"
            self.usage_tracker.record(tool, tokens)
        expected = len(new_items) + len(existing_items)
        if len(vectors) != expected:
            logger.warning("Dedup got %d vectors for %d items; keeping all", len(vectors), expected)
            return new_items

        matrix = np.asarray(vectors, dtype=float)
        new_vecs = matrix[: len(new_items)]
        existing_vecs = matrix[len(new_items) :]
        against_existing = cosine_similarity_matrix(new_vecs, existing_vecs)
        among_new = cosine_similarity_matrix(new_vecs, new_vecs)

        unique: List[str] = []
        accepted: List[int] = []
        for i, item in enumerate(new_items):
            if existing_items and bool((against_existing[i] >= self.threshold).any()):
                continue
            if any(among_new[i, j] >= self.threshold for j in accepted):
                continue
            accepted.append(i)
            unique.append(item)
        logger.info("Dedup kept %d/%d %s items", len(unique), len(new_items), self.kind)
        return unique


def dedup_queries(
    new_queries: Sequence[str],
    existing_queries: Sequence[str],
    embeddings: Any,
    usage_tracker: Optional[TokenTracker] = None,
    threshold: float = SIMILARITY_THRESHOLD,
) -> List[str]:
    return SemanticDeduplicator(embeddings, usage_tracker, threshold).filter(
        new_queries, existing_queries
    )


def dedup_images(
    new_images: Sequence[str],
    existing_images: Sequence[str],
    embeddings: Any,
    usage_tracker: Optional[TokenTracker] = None,
    threshold: float = IMAGE_SIMILARITY_THRESHOLD,
) -> List[str]:
    return SemanticDeduplicator(embeddings, usage_tracker, threshold, kind="image").filter(
        new_images, existing_images
    )
