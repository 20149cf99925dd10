import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

TOKEN_CATEGORIES = ("prompt", "reasoning", "accepted", "rejected", "completion")


@dataclass(frozen=True)
class TokenUsage:
    tool: str
    tokens: int
    category: Optional[str] = None
    timestamp: str = ""


class TokenTracker:
    """Append-only token ledger for one research session.

    Recording never fails: going over ``budget`` only logs a warning, the
    orchestrator decides when to stop spending.
    """

    def __init__(self, budget: Optional[int] = None) -> None:
        self.budget = budget if budget and budget > 0 else None
        self._usages: List[TokenUsage] = []
        self._total = 0
        self._lock = threading.Lock()

    def record(self, tool: str, tokens: int, category: Optional[str] = None) -> None:
        if category is not None and category not in TOKEN_CATEGORIES:
            raise ValueError(f"Unknown token category: {category}")
        amount = max(0, int(tokens or 0))
        entry = TokenUsage(
            tool=str(tool),
            tokens=amount,
            category=category,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            new_total = self._total + amount
            if self.budget is not None and new_total > self.budget:
                logger.warning(
                    "Token budget exceeded: %d > %d (tool=%s)", new_total, self.budget, tool
                )
            self._usages.append(entry)
            self._total = new_total

    def record_usage(self, tool: str, usage: Any) -> int:
        """Record an OpenAI-style usage object, split into categories. Returns the total."""
        prompt_tokens, completion_tokens, reasoning_tokens = _extract_usage(usage)
        self.record(tool, prompt_tokens, "prompt")
        if reasoning_tokens:
            self.record(tool, reasoning_tokens, "reasoning")
        self.record(tool, max(0, completion_tokens - reasoning_tokens), "completion")
        return prompt_tokens + max(completion_tokens, reasoning_tokens)

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    @property
    def remaining(self) -> Optional[int]:
        if self.budget is None:
            return None
        return max(0, self.budget - self.total)

    @property
    def exhausted(self) -> bool:
        return self.budget is not None and self.total >= self.budget

    @property
    def usages(self) -> List[TokenUsage]:
        with self._lock:
            return list(self._usages)

    def breakdown(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for u in self.usages:
            out[u.tool] = out.get(u.tool, 0) + u.tokens
        return out

    def usage_projection(self) -> Dict[str, Any]:
        """Provider-shaped usage: completion = reasoning + accepted + rejected.

        Uncategorized and ``completion`` entries count as accepted output, so
        ``prompt_tokens + completion_tokens == total_tokens`` always holds.
        """
        buckets = {"prompt": 0, "reasoning": 0, "accepted": 0, "rejected": 0}
        for u in self.usages:
            if u.category in ("prompt", "reasoning", "rejected"):
                buckets[u.category] += u.tokens
            else:
                buckets["accepted"] += u.tokens
        completion = buckets["reasoning"] + buckets["accepted"] + buckets["rejected"]
        return {
            "prompt_tokens": buckets["prompt"],
            "completion_tokens": completion,
            "total_tokens": buckets["prompt"] + completion,
            "completion_tokens_details": {
                "reasoning_tokens": buckets["reasoning"],
                "accepted_prediction_tokens": buckets["accepted"],
                "rejected_prediction_tokens": buckets["rejected"],
            },
        }

    def to_dict(self) -> Dict[str, Any]:
        by_category: Dict[str, int] = {}
        for u in self.usages:
            key = u.category or "uncategorized"
            by_category[key] = by_category.get(key, 0) + u.tokens
        return {
            "budget": self.budget,
            "total": self.total,
            "by_tool": self.breakdown(),
            "by_category": by_category,
            "calls": len(self.usages),
            "usage": self.usage_projection(),
        }


def _extract_usage(usage: Any) -> tuple[int, int, int]:
    if usage is None:
        return 0, 0, 0

    def pick_int(obj: Any, keys: List[str]) -> int:
        for key in keys:
            if isinstance(obj, dict):
                val = obj.get(key)
            else:
                val = getattr(obj, key, None)
            if isinstance(val, int):
                return val
        return 0

    prompt_tokens = pick_int(usage, ["prompt_tokens", "input_tokens"])
    completion_tokens = pick_int(usage, ["completion_tokens", "output_tokens"])
    details = (
        usage.get("completion_tokens_details")
        if isinstance(usage, dict)
        else getattr(usage, "completion_tokens_details", None)
    )
    reasoning_tokens = pick_int(details, ["reasoning_tokens"]) if details is not None else 0
    return prompt_tokens, completion_tokens, reasoning_tokens
