import json
import logging
import textwrap
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from research_tools.backends import is_valid_absolute_http_url
from research_tools.errors import SchemaViolationError
from research_tools.schemas import AnswerAction

logger = logging.getLogger(__name__)

CHECK_ORDER = ("attribution", "definitive", "freshness", "plurality")

# urls -> {url: content}; unreachable URLs are simply absent.
FetchContents = Callable[[List[str]], Dict[str, str]]


@dataclass
class EvaluationResult:
    type: str
    passed: bool
    reasoning: str
    analysis: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "pass": self.passed,
            "think": self.reasoning,
            "analysis": self.analysis,
        }


SYSTEM_QUESTION_CLASSIFIER = textwrap.dedent(
    """
    You decide which quality checks an answer to a question must pass.
    - needsFreshness: the question asks about current events, recent prices,
      versions, rankings or anything whose answer changes over time.
    - needsPlurality: the question explicitly or implicitly asks for multiple
      items (a list, "top 5", "examples of", "which ones").
    Return strict JSON: {"think": "...", "needsFreshness": bool, "needsPlurality": bool}
    """
).strip()

SYSTEM_DEFINITIVE = textwrap.dedent(
    """
    You are an evaluator of answer definitiveness. Analyze if the given answer
    provides a definitive response or not.
    "I don't know", "lack of information", "doesn't exist", "not sure" or highly
    uncertain/ambiguous responses are not definitive and must fail.
    Return strict JSON: {"think": "...", "pass": bool}
    """
).strip()

SYSTEM_FRESHNESS = textwrap.dedent(
    """
    You evaluate whether an answer is likely outdated for a time-sensitive
    question, given the current date. Look for dates and versions mentioned.
    Return strict JSON: {"think": "...", "pass": bool,
      "freshness_analysis": {"likely_outdated": bool, "dates_mentioned": [str],
      "current_time": str, "max_age_days": int}}
    """
).strip()

SYSTEM_PLURALITY = textwrap.dedent(
    """
    You evaluate whether an answer provides as many items as the question asks
    for. Count the items the question expects and the items the answer gives.
    Return strict JSON: {"think": "...", "pass": bool,
      "plurality_analysis": {"expects_multiple": bool, "provides_multiple": bool,
      "count_expected": int, "count_provided": int}}
    """
).strip()

SYSTEM_ATTRIBUTION = textwrap.dedent(
    """
    You verify that an answer is supported by the source documents it cites.
    Fail the answer when its key claims are absent from, or contradicted by,
    the source content, or when quotes do not appear in the sources.
    Return strict JSON: {"think": "...", "pass": bool}
    """
).strip()


class AnswerEvaluator:
    """Ordered, short-circuiting answer checks.

    ``attribution`` runs first and only when the answer cites http(s) URLs;
    the first failing check is returned as the overall result.
    """

    def __init__(self, llm: Any, max_source_chars: int = 8000) -> None:
        self.llm = llm
        self.max_source_chars = max_source_chars

    def evaluate_question(self, question: str) -> List[str]:
        prompt = f"Question: {json.dumps(question, ensure_ascii=False)}"
        try:
            data = self.llm.json(SYSTEM_QUESTION_CLASSIFIER, prompt, stage="evaluate_question")
        except SchemaViolationError as exc:
            logger.warning("Question classification failed, using definitive only: %s", exc)
            return ["definitive"]
        criteria = ["definitive"]
        if bool(data.get("needsFreshness")):
            criteria.append("freshness")
        if bool(data.get("needsPlurality")):
            criteria.append("plurality")
        return criteria

    def evaluate_answer(
        self,
        question: str,
        action: AnswerAction,
        criteria: Sequence[str],
        visited_urls: Sequence[str] = (),
        fetch_contents: Optional[FetchContents] = None,
    ) -> EvaluationResult:
        checks = [c for c in CHECK_ORDER if c in criteria and c != "attribution"]
        if any(is_valid_absolute_http_url(r.url) for r in action.references):
            checks.insert(0, "attribution")
        result = EvaluationResult(type="definitive", passed=True, reasoning="No checks required.")
        for check in checks:
            if check == "attribution":
                result = self._check_attribution(question, action, visited_urls, fetch_contents)
            else:
                result = self._check(check, question, action.answer)
            logger.info("Evaluation %s: pass=%s", check, result.passed)
            if not result.passed:
                return result
        return result

    def _check(self, kind: str, question: str, answer: str) -> EvaluationResult:
        system = {
            "definitive": SYSTEM_DEFINITIVE,
            "freshness": SYSTEM_FRESHNESS,
            "plurality": SYSTEM_PLURALITY,
        }[kind]
        prompt = textwrap.dedent(
            f"""
            Current date: {datetime.now(timezone.utc).strftime("%Y-%m-%d")}
            Question: {json.dumps(question, ensure_ascii=False)}
            Answer: {json.dumps(answer, ensure_ascii=False)}
            """
        ).strip()
        try:
            data = self.llm.json(system, prompt, stage=f"evaluate_{kind}")
        except SchemaViolationError as exc:
            return self._unparseable(kind, exc)
        analysis_key = f"{kind}_analysis"
        analysis = data.get(analysis_key) if isinstance(data.get(analysis_key), dict) else {}
        return EvaluationResult(
            type=kind,
            passed=bool(data.get("pass", False)),
            reasoning=str(data.get("think", "") or ""),
            analysis=analysis,
        )

    def _check_attribution(
        self,
        question: str,
        action: AnswerAction,
        visited_urls: Sequence[str],
        fetch_contents: Optional[FetchContents],
    ) -> EvaluationResult:
        visited = set(visited_urls)
        targets: List[str] = []
        for ref in action.references:
            url = ref.url.strip()
            if is_valid_absolute_http_url(url) and url not in visited and url not in targets:
                targets.append(url)
        if not targets or fetch_contents is None:
            return EvaluationResult(
                type="attribution",
                passed=True,
                reasoning="All cited URLs have been visited already; nothing new to verify.",
            )
        contents = {u: c for u, c in fetch_contents(targets).items() if c and c.strip()}
        if not contents:
            return EvaluationResult(
                type="attribution",
                passed=False,
                reasoning=f"Failed to fetch any content from the cited URLs: {', '.join(targets)}",
            )
        sources = "\n\n".join(
            f"Source: {url}\n{content[: self.max_source_chars]}" for url, content in contents.items()
        )
        quotes = "\n".join(f"- {r.exact_quote} ({r.url})" for r in action.references)
        prompt = textwrap.dedent(
            """
            Question: {question}
            Answer: {answer}
            Quotes:
            {quotes}

            Source content:
            {sources}
            """
        ).strip().format(
            question=json.dumps(question, ensure_ascii=False),
            answer=json.dumps(action.answer, ensure_ascii=False),
            quotes=quotes,
            sources=sources,
        )
        try:
            data = self.llm.json(SYSTEM_ATTRIBUTION, prompt, stage="evaluate_attribution")
        except SchemaViolationError as exc:
            return self._unparseable("attribution", exc)
        return EvaluationResult(
            type="attribution",
            passed=bool(data.get("pass", False)),
            reasoning=str(data.get("think", "") or ""),
        )

    def _unparseable(self, kind: str, exc: SchemaViolationError) -> EvaluationResult:
        logger.warning("Evaluation %s output unusable, failing the check: %s", kind, exc)
        return EvaluationResult(
            type=kind,
            passed=False,
            reasoning=f"The {kind} check could not be parsed: {exc}",
        )
