import logging
import textwrap
from dataclasses import dataclass, field
from typing import Any, Dict, List

from research_tools.errors import SchemaViolationError

logger = logging.getLogger(__name__)

SYSTEM_ERROR_ANALYSIS = textwrap.dedent(
    """
    You are an expert at analyzing search and reasoning processes. Read the
    sequence of steps below, which ended in an answer that was rejected.
    1. recap: summarize the key actions chronologically.
    2. blame: name the specific steps or patterns that led to the bad answer.
    3. improvement: give actionable suggestions for the next attempt.
    4. questionsToAnswer: up to 2 questions worth answering next.
    Return strict JSON: {"recap": "...", "blame": "...", "improvement": "...",
      "questionsToAnswer": ["..."]}
    """
).strip()


@dataclass(frozen=True)
class BadAttempt:
    recap: str
    blame: str
    improvement: str
    questions_to_answer: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recap": self.recap,
            "blame": self.blame,
            "improvement": self.improvement,
            "questionsToAnswer": list(self.questions_to_answer),
        }


def analyze_steps(llm: Any, diary: List[str]) -> BadAttempt:
    steps = "\n".join(diary) if diary else "(no recorded steps)"
    try:
        data = llm.json(SYSTEM_ERROR_ANALYSIS, f"<steps>\n{steps}\n</steps>", stage="error_analysis")
    except SchemaViolationError as exc:
        logger.warning("Error analysis failed: %s", exc)
        return BadAttempt(
            recap=f"{len(diary)} steps were taken before the rejected answer.",
            blame="The answer did not pass evaluation.",
            improvement="Gather more evidence before answering.",
        )
    questions = data.get("questionsToAnswer")
    return BadAttempt(
        recap=str(data.get("recap", "") or ""),
        blame=str(data.get("blame", "") or ""),
        improvement=str(data.get("improvement", "") or ""),
        questions_to_answer=[q for q in questions if isinstance(q, str)] if isinstance(questions, list) else [],
    )
