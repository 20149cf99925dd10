import json
import logging
import textwrap
from typing import Any, List

from research_tools.errors import SchemaViolationError

logger = logging.getLogger(__name__)

MAX_QUERIES = 3

SYSTEM_QUERY_REWRITE = textwrap.dedent(
    """
    You are an expert in search query optimization. Expand the user's search
    request into at most 3 short keyword queries that a BM25 / tf-idf search
    engine understands. Each query covers a different aspect; no full sentences,
    no duplicates, keep the user's language.
    Return strict JSON: {"think": "...", "queries": ["...", "..."]}
    """
).strip()


def _clean_queries(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    out: List[str] = []
    seen = set()
    for item in value:
        if not isinstance(item, str):
            continue
        q = " ".join(item.split())
        if not q or q.lower() in seen:
            continue
        seen.add(q.lower())
        out.append(q)
    return out


def rewrite_query(llm: Any, query: str) -> List[str]:
    query = " ".join(str(query or "").split())
    if not query:
        return []
    try:
        data = llm.json(
            SYSTEM_QUERY_REWRITE,
            f"Search request: {json.dumps(query, ensure_ascii=False)}",
            stage="query_rewrite",
        )
    except SchemaViolationError as exc:
        logger.warning("Query rewrite failed, using the raw query: %s", exc)
        return [query]
    queries = _clean_queries(data.get("queries"))[:MAX_QUERIES]
    return queries or [query]
