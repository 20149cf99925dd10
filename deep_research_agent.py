import argparse
import json
import os
import textwrap
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from research_tools.action_tracker import TrackerContext
from research_tools.backends import (
    JinaEmbeddings,
    JinaReader,
    JinaReranker,
    ReadResult,
    SearchResult,
    build_search_backend,
    is_valid_absolute_http_url,
)
from research_tools.build_ref import Reference, ReferenceBuilder, WebContent
from research_tools.config import load_agent_config
from research_tools.dedup import SemanticDeduplicator
from research_tools.error_analyzer import BadAttempt, analyze_steps
from research_tools.errors import SchemaViolationError, UpstreamUnavailableError
from research_tools.evaluator import AnswerEvaluator
from research_tools.llm import LLM
from research_tools.md_fixer import revise_answer
from research_tools.query_rewriter import rewrite_query
from research_tools.schemas import (
    MAX_REFLECT_QUESTIONS,
    MAX_VISIT_URLS,
    Action,
    AnswerAction,
    ReflectAction,
    SearchAction,
    VisitAction,
    action_to_dict,
    allowed_actions,
    build_action_schema,
    parse_action,
)

SYSTEM_AGENT = textwrap.dedent(
    """
    You are an advanced AI research analyst specializing in multi-step reasoning.
    Using your training data and prior lessons learned, answer the user's question
    with absolute certainty. At every step choose exactly one of the permitted
    actions and respond exclusively in valid JSON matching the given schema.
    Never add unsupported keys and never write text outside the JSON object.
    """
).strip()

FALLBACK_ANSWER = "I could not find a definitive answer within the available budget."


@dataclass(frozen=True)
class KnowledgeItem:
    question: str
    answer: str


@dataclass
class ResearchSession:
    question: str
    gaps: List[str] = field(default_factory=list)
    all_questions: List[str] = field(default_factory=list)
    all_keywords: List[str] = field(default_factory=list)
    knowledge: List[KnowledgeItem] = field(default_factory=list)
    diary: List[str] = field(default_factory=list)
    bad_attempts: List[BadAttempt] = field(default_factory=list)
    bad_attempt_count: int = 0
    step: int = 0
    total_step: int = 0
    all_urls: Dict[str, str] = field(default_factory=dict)
    visited_urls: List[str] = field(default_factory=list)
    web_contents: Dict[str, WebContent] = field(default_factory=dict)
    criteria: Dict[str, List[str]] = field(default_factory=dict)
    answered: bool = False


@dataclass
class ResearchResult:
    question: str
    answer: str
    references: List[Reference]
    action: AnswerAction
    forced: bool
    total_step: int
    bad_attempts: List[BadAttempt]
    visited_urls: List[str]
    usage: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "answer": self.answer,
            "references": [r.to_dict() for r in self.references],
            "action": action_to_dict(self.action),
            "forced": self.forced,
            "totalStep": self.total_step,
            "badAttempts": [b.to_dict() for b in self.bad_attempts],
            "visitedURLs": list(self.visited_urls),
            "usage": self.usage,
        }


class DeepResearchAgent:
    def __init__(
        self,
        model: str = "gpt-4o-mini",
        token_budget: int = 1_000_000,
        max_bad_attempts: int = 3,
        max_steps: int = 60,
        step_sleep: float = 1.0,
        search_provider: str = "jina",
        max_references: int = 6,
        min_chunk_length: int = 50,
        max_chunk_length: int = 500,
        rerank_batch_size: int = 100,
        dedup_threshold: float = 0.86,
        context: Optional[TrackerContext] = None,
        llm: Any = None,
        search: Any = None,
        reader: Any = None,
        embeddings: Any = None,
        reranker: Any = None,
        max_workers: int = 4,
        verbose: bool = True,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        run_id: str = "",
    ) -> None:
        self.token_budget = max(1, int(token_budget))
        self.context = context or TrackerContext.with_budget(self.token_budget)
        tracker = self.context.token_tracker
        jina_key = os.getenv("JINA_API_KEY", "")
        self.llm = llm or LLM(model=model, usage_tracker=tracker)
        self.search = search or build_search_backend(search_provider)
        self.reader = reader or JinaReader(api_key=jina_key)
        embeddings = embeddings or JinaEmbeddings(api_key=jina_key)
        reranker = reranker or JinaReranker(api_key=jina_key)
        self.dedup = SemanticDeduplicator(embeddings, tracker, threshold=dedup_threshold)
        self.evaluator = AnswerEvaluator(self.llm)
        self.reference_builder = ReferenceBuilder(
            reranker,
            tracker,
            max_ref=max_references,
            min_chunk_length=min_chunk_length,
            max_chunk_length=max_chunk_length,
            batch_size=rerank_batch_size,
            max_workers=max_workers,
        )
        self.max_bad_attempts = max(1, int(max_bad_attempts))
        self.max_steps = max(1, int(max_steps))
        self.step_sleep = max(0.0, float(step_sleep))
        self.max_chunk_length = max_chunk_length
        self.max_workers = max(1, int(max_workers))
        self.verbose = verbose
        self.event_callback = event_callback
        self.run_id = run_id
        self.session: Optional[ResearchSession] = None

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None, **overrides: Any) -> "DeepResearchAgent":
        settings = dict(config or load_agent_config())
        settings.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**settings)

    def run(self, question: str) -> ResearchResult:
        question = " ".join(str(question or "").split())
        if not question:
            raise ValueError("Question must not be empty.")
        session = ResearchSession(question=question, gaps=[question], all_questions=[question])
        self.session = session
        tracker = self.context.token_tracker
        self._log(f"Starting research: {question}")
        self._emit("run_started", {"question": question, "budget": self.token_budget})

        while session.gaps or not session.answered:
            if tracker.total >= self.token_budget:
                self._log(f"Token budget exhausted ({tracker.total}/{self.token_budget}).")
                break
            if session.total_step >= self.max_steps:
                self._log(f"Step ceiling reached ({self.max_steps}).")
                break
            current = session.gaps.pop(0) if session.gaps else question
            if self.step_sleep:
                time.sleep(self.step_sleep)
            session.step += 1
            session.total_step += 1
            actions = allowed_actions(
                allow_reflect=len(session.gaps) <= 1,
                allow_read=bool(session.all_urls),
            )
            self._track(session)
            self._log(
                f"Step {session.total_step}: {len(session.gaps)} pending questions, "
                f"budget used {tracker.total}/{self.token_budget}"
            )
            action = self._decide(session, current, actions)
            if action is None:
                if current != question:
                    session.gaps.insert(0, current)
                continue
            self.context.action_tracker.track_action(this_step=action_to_dict(action))
            self._emit(
                "action_chosen",
                {"step": session.total_step, "question": current, "action": action.action, "think": action.think},
            )
            result = self._execute(session, current, action)
            if result is not None:
                return result

        return self._final_answer(session)

    def _decide(self, session: ResearchSession, current: str, actions: List[str]) -> Optional[Action]:
        prompt = self._build_prompt(session, current, actions)
        try:
            data = self.llm.json(
                SYSTEM_AGENT,
                prompt,
                stage="agent",
                schema=build_action_schema(actions),
                temperature=0.7,
            )
            return parse_action(data, actions)
        except SchemaViolationError as exc:
            self._log(f"Discarding unusable action: {exc}")
            session.diary.append(
                textwrap.dedent(
                    f"""
                    At step {session.step}, you tried to act on "{current}" but your decision was not usable:
                    {exc}
                    Only these actions are permitted right now: {", ".join(actions)}.
                    """
                ).strip()
            )
            return None

    def _execute(self, session: ResearchSession, current: str, action: Action) -> Optional[ResearchResult]:
        try:
            if isinstance(action, AnswerAction):
                return self._handle_answer(session, current, action)
            if isinstance(action, ReflectAction):
                self._handle_reflect(session, current, action)
            elif isinstance(action, SearchAction):
                self._handle_search(session, current, action)
            elif isinstance(action, VisitAction):
                self._handle_visit(session, current, action)
        except UpstreamUnavailableError as exc:
            self._log(f"{action.action} step degraded: {exc}")
            session.diary.append(
                f"At step {session.step}, you took the **{action.action}** action but the "
                f"{exc.collaborator} service was unavailable. Nothing was learned from this step."
            )
        except SchemaViolationError as exc:
            self._log(f"{action.action} step produced unusable output: {exc}")
            session.diary.append(
                f"At step {session.step}, you took the **{action.action}** action but a model "
                f"response along the way could not be parsed ({exc}). Nothing was learned from this step."
            )
        return None

    def _handle_answer(
        self, session: ResearchSession, current: str, action: AnswerAction
    ) -> Optional[ResearchResult]:
        is_original = current == session.question
        if is_original and session.bad_attempt_count >= self.max_bad_attempts:
            session.diary.append(
                textwrap.dedent(
                    f"""
                    At step {session.step} and {session.bad_attempt_count} attempts, you took **answer** action and found an answer, not a perfect one but good enough to answer the original question:

                    Original question:
                    {current}

                    Your answer:
                    {action.answer}

                    Your journey ends here.
                    """
                ).strip()
            )
            return self._finalize(session, action, forced=True)

        evaluation = self.evaluator.evaluate_answer(
            current,
            action,
            self._criteria_for(session, current),
            visited_urls=session.visited_urls,
            fetch_contents=lambda urls: self._read_urls(session, urls),
        )
        self._emit(
            "answer_evaluated",
            {"step": session.total_step, "question": current, **evaluation.to_dict()},
        )

        if not is_original:
            if evaluation.passed:
                session.knowledge.append(KnowledgeItem(question=current, answer=action.answer))
                session.diary.append(
                    textwrap.dedent(
                        f"""
                        At step {session.step}, you took **answer** action. You found a good answer to the sub-question:

                        Sub-question:
                        {current}

                        Your answer:
                        {action.answer}

                        The evaluator thinks your answer is good because:
                        {evaluation.reasoning}

                        Although you solved a sub-question, you still need to find the answer to the original question. You need to keep going.
                        """
                    ).strip()
                )
            return None

        if evaluation.passed:
            if action.references or not session.all_urls:
                session.diary.append(
                    textwrap.dedent(
                        f"""
                        At step {session.step}, you took **answer** action and finally found the answer to the original question:

                        Original question:
                        {current}

                        Your answer:
                        {action.answer}

                        The evaluator thinks your answer is good because:
                        {evaluation.reasoning}

                        Your journey ends here. You have successfully answered the original question.
                        """
                    ).strip()
                )
                return self._finalize(session, action, forced=False)
            session.diary.append(
                textwrap.dedent(
                    f"""
                    At step {session.step}, you took **answer** action and found an answer to the original question:

                    Original question:
                    {current}

                    Your answer:
                    {action.answer}

                    Unfortunately, you did not provide any references to support your answer.
                    You need to find more URL references to support your answer.
                    """
                ).strip()
            )
            return None

        session.diary.append(
            textwrap.dedent(
                f"""
                At step {session.step}, you took **answer** action but evaluator thinks it is not a good answer:

                Original question:
                {current}

                Your answer:
                {action.answer}

                The evaluator thinks your answer is bad because:
                {evaluation.reasoning}
                """
            ).strip()
        )
        bad_attempt = analyze_steps(self.llm, session.diary)
        session.bad_attempts.append(bad_attempt)
        session.bad_attempt_count += 1
        session.diary = []
        session.step = 0
        self._track(session)
        self._log(f"Bad attempt {session.bad_attempt_count}: {bad_attempt.blame}")
        return None

    def _handle_reflect(self, session: ResearchSession, current: str, action: ReflectAction) -> None:
        proposed = [q.strip() for q in action.questions_to_answer if q.strip()][:MAX_REFLECT_QUESTIONS]
        new_questions = self.dedup.filter(proposed, session.all_questions)
        if new_questions:
            listed = "\n".join(f"- {q}" for q in new_questions)
            session.diary.append(
                f"At step {session.step}, you took **reflect** and think about the knowledge gaps. "
                f'You found some sub-questions are important to the question: "{current}"\n'
                f"You realize you need to know the answers to the following sub-questions:\n{listed}\n\n"
                "You will now figure out the answers to these sub-questions and see if they can help "
                "you find the answer to the original question."
            )
            session.gaps.extend(new_questions)
            session.all_questions.extend(new_questions)
            session.gaps.append(session.question)
        else:
            session.diary.append(
                f"At step {session.step}, you took **reflect** and think about the knowledge gaps. "
                f'You tried to break down the question "{current}" into gap-questions like this: '
                f"{', '.join(proposed)}\n"
                "But then you realized you have asked them before. You decided to think out of the box "
                "or cut from a completely different angle."
            )
        self._track(session)

    def _handle_search(self, session: ResearchSession, current: str, action: SearchAction) -> None:
        proposed = rewrite_query(self.llm, action.search_query)
        keywords = self.dedup.filter(proposed, session.all_keywords)
        if not keywords:
            session.diary.append(
                f'At step {session.step}, you took the **search** action and look for external information for the question: "{current}".\n'
                f"In particular, you tried to search for the following keywords: {', '.join(proposed)}.\n"
                "But then you realized you have already searched for these keywords before.\n"
                "You decided to think out of the box or cut from a completely different angle."
            )
            return

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            batches = list(pool.map(self._search_one, keywords))
        found = 0
        for hits in batches:
            for hit in hits:
                if hit.url in session.visited_urls:
                    continue
                session.all_urls.setdefault(hit.url, hit.title)
                found += 1
        session.all_keywords.extend(keywords)
        self._emit("search_completed", {"step": session.total_step, "queries": keywords, "results": found})
        session.diary.append(
            f'At step {session.step}, you took the **search** action and look for external information for the question: "{current}".\n'
            f"In particular, you tried to search for the following keywords: \"{', '.join(keywords)}\".\n"
            f"You found {found} results and added them to your URL list to **visit** later when needed."
        )

    def _handle_visit(self, session: ResearchSession, current: str, action: VisitAction) -> None:
        targets: List[str] = []
        for raw in action.url_targets[:MAX_VISIT_URLS]:
            url = raw.strip()
            if not is_valid_absolute_http_url(url):
                session.all_urls.pop(url, None)
                continue
            if url in session.visited_urls or url in targets:
                continue
            targets.append(url)
        if not targets:
            session.diary.append(
                f"At step {session.step}, you took the **visit** action but every target URL was "
                "invalid or already visited. Choose URLs you have not read yet."
            )
            return

        contents = self._read_urls(session, targets)
        for url in targets:
            content = contents.get(url)
            if content:
                session.knowledge.append(
                    KnowledgeItem(question=f"What is in {url}?", answer=" ".join(content.split()))
                )
        failed = [u for u in targets if u not in contents]
        note = (
            f"At step {session.step}, you took the **visit** action and deep dive into the following URLs:\n"
            + "\n".join(targets)
            + "\nYou found some useful information on the web and add them to your knowledge for future reference."
        )
        if failed:
            note += "\nThese URLs could not be read and were dropped: " + ", ".join(failed)
        session.diary.append(note)
        self._emit("visit_completed", {"step": session.total_step, "urls": targets, "failed": failed})

    def _final_answer(self, session: ResearchSession) -> ResearchResult:
        self._log("Research loop ended without an accepted answer; requesting a final answer.")
        actions = ["answer"]
        try:
            data = self.llm.json(
                SYSTEM_AGENT,
                self._build_prompt(session, session.question, actions, final=True),
                stage="agent_final",
                schema=build_action_schema(actions),
                temperature=0.7,
            )
            action = parse_action(data, actions)
        except SchemaViolationError as exc:
            self._log(f"Final answer unusable: {exc}")
            action = AnswerAction(action="answer", answer=FALLBACK_ANSWER)
        return self._finalize(session, action, forced=True)

    def _finalize(self, session: ResearchSession, action: AnswerAction, forced: bool) -> ResearchResult:
        session.answered = True
        revised = revise_answer(self.llm, action.answer, session.knowledge)
        built = self.reference_builder.build(revised, session.web_contents)
        result = ResearchResult(
            question=session.question,
            answer=built.answer,
            references=built.references,
            action=action,
            forced=forced,
            total_step=session.total_step,
            bad_attempts=list(session.bad_attempts),
            visited_urls=list(session.visited_urls),
            usage=self.context.token_tracker.to_dict(),
        )
        self._track(session)
        self._log(
            f"Final answer after {session.total_step} steps "
            f"({len(built.references)} references, forced={forced})."
        )
        self._emit(
            "run_completed",
            {"forced": forced, "references": len(built.references), "total_step": session.total_step},
        )
        return result

    def _criteria_for(self, session: ResearchSession, question: str) -> List[str]:
        if question != session.question:
            return ["definitive"]
        if question not in session.criteria:
            session.criteria[question] = self.evaluator.evaluate_question(question)
            self._log(f"Evaluation criteria: {', '.join(session.criteria[question])}")
        return session.criteria[question]

    def _read_urls(self, session: ResearchSession, urls: List[str]) -> Dict[str, str]:
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            reads = list(pool.map(self._read_one, urls))
        contents: Dict[str, str] = {}
        for url, read in zip(urls, reads):
            # A URL is read at most once, whether or not the read worked.
            session.all_urls.pop(url, None)
            if url not in session.visited_urls:
                session.visited_urls.append(url)
            if read is None or not read.content.strip():
                continue
            session.web_contents[url] = WebContent.from_text(
                url, read.title, read.content, self.max_chunk_length
            )
            contents[url] = read.content
        return contents

    def _read_one(self, url: str) -> Optional[ReadResult]:
        try:
            read = self.reader.read(url)
        except UpstreamUnavailableError as exc:
            self._log(f"Read failed for {url}: {exc}")
            return None
        self.context.token_tracker.record("read", read.tokens)
        return read

    def _search_one(self, query: str) -> List[SearchResult]:
        self._log(f"Search query: {query}")
        try:
            hits, tokens = self.search.search(query)
        except UpstreamUnavailableError as exc:
            self._log(f"Search failed for '{query}': {exc}")
            return []
        self.context.token_tracker.record("search", tokens)
        return hits

    def _build_prompt(
        self, session: ResearchSession, question: str, actions: List[str], final: bool = False
    ) -> str:
        sections = [f"Current date: {datetime.now(timezone.utc).strftime('%a, %d %b %Y %H:%M:%S GMT')}"]
        sections.append(f"## Question\n{question}")
        if question != session.question:
            sections.append(f"## Original question\n{session.question}")
        if session.diary:
            sections.append("## Context\nYou have conducted the following actions:\n\n" + "\n\n".join(session.diary))
        if session.knowledge:
            items = [
                f"### Knowledge {i}: {k.question}\n{self._trim_text(k.answer, 4000)}"
                for i, k in enumerate(session.knowledge, start=1)
            ]
            sections.append(
                "## Knowledge\nYou have successfully gathered some knowledge which might be useful "
                "for answering the original question:\n\n" + "\n\n".join(items)
            )
        if session.bad_attempts:
            attempts = [
                f"### Attempt {i}\n- Recap: {b.recap}\n- Blame: {b.blame}\n- Improvement: {b.improvement}"
                for i, b in enumerate(session.bad_attempts, start=1)
            ]
            sections.append(
                "## Unsuccessful Attempts\nYou have tried the following actions but failed to find "
                "the answer to the question.\n\n" + "\n\n".join(attempts)
            )
        sections.append(self._describe_actions(session, actions, final))
        sections.append(
            "Respond exclusively in valid JSON format matching the exact JSON schema.\n"
            "- Include ONLY ONE action type\n- Never add unsupported keys\n"
            "- Exclude all non-JSON text, markdown, or explanations"
        )
        return "\n\n".join(sections)

    def _describe_actions(self, session: ResearchSession, actions: List[str], final: bool) -> str:
        lines = ["## Actions"]
        if final:
            lines.append(
                "You have run out of research budget. You must now give your best final **answer** "
                "based on everything you know; partial answers are acceptable."
            )
        if "visit" in actions:
            urls = "\n".join(f'  + "{u}": "{t}"' for u, t in session.all_urls.items())
            lines.append(
                "**visit**:\n- Visit any URLs from below to gather external knowledge, choose the "
                f"most relevant URLs that might contain the answer\n{urls}"
            )
        if "search" in actions:
            lines.append(
                "**search**:\n- Query external sources using a public search engine\n"
                "- Focus on solving one specific aspect of the question\n"
                "- Only give keywords search query, not full sentences"
            )
        if "answer" in actions:
            answer_rules = (
                "**answer**:\n- Provide final response only when 100% certain\n"
                "- Responses must be definitive (no ambiguity, uncertainty, or disclaimers)\n"
                "- Cite the URLs and exact quotes that support the answer in references"
            )
            if "reflect" in actions:
                answer_rules += '\n- If doubts remain, use "reflect" instead'
            lines.append(answer_rules)
        if "reflect" in actions:
            asked = "\n".join(f"- {q}" for q in session.all_questions)
            lines.append(
                "**reflect**:\n- Identify knowledge gaps and formulate essential clarifying questions\n"
                "- Questions must be original (not variations of existing questions), focused on "
                "single concepts, under 20 words, non-compound\n"
                f"- Questions asked so far:\n{asked}"
            )
        return "\n\n".join(lines)

    def _track(self, session: ResearchSession) -> None:
        self.context.action_tracker.track_action(
            gaps=list(session.gaps),
            bad_attempts=session.bad_attempt_count,
            total_step=session.total_step,
        )

    def _trim_text(self, text: str, max_len: int) -> str:
        if len(text) <= max_len:
            return text
        return text[: max_len - 3].rstrip() + "..."

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[progress] {message}")

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.event_callback:
            return
        event = {
            "run_id": self.run_id,
            "timestamp": self._now_iso(),
            "event_type": event_type,
            "payload": payload,
        }
        try:
            self.event_callback(event)
        except Exception as exc:
            # Observability must not break core execution flow.
            self._log(f"Event callback failed for {event_type}: {exc}")


def format_result_text(result: ResearchResult) -> str:
    lines = [result.answer]
    if result.references:
        lines.append("")
        for i, ref in enumerate(result.references, start=1):
            lines.append(f"[^{i}]: {ref.title} {ref.url}")
    return "\n".join(lines)


def main() -> None:
    parser = argparse.ArgumentParser(description="Deep research agent")
    parser.add_argument("question", help="Question to research")
    parser.add_argument("--model", default=None, help="Decision/evaluation model")
    parser.add_argument("--budget", type=int, default=None, help="Token budget for the session")
    parser.add_argument(
        "--max-bad-attempts",
        type=int,
        default=None,
        help="Rejected answers to the original question before the next answer is accepted",
    )
    parser.add_argument("--max-steps", type=int, default=None, help="Total step ceiling")
    parser.add_argument("--config", default="", help="Optional agent config JSON path")
    parser.add_argument("--result-file", default="", help="Optional path for the result JSON")
    parser.add_argument("--quiet", action="store_true", help="Disable progress updates")
    args = parser.parse_args()

    agent = DeepResearchAgent.from_config(
        load_agent_config(args.config or None),
        model=args.model,
        token_budget=args.budget,
        max_bad_attempts=args.max_bad_attempts,
        max_steps=args.max_steps,
        verbose=not args.quiet,
    )
    result = agent.run(args.question)
    if args.result_file:
        path = Path(args.result_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(result.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        print(f"[result] saved: {path}")
    usage = result.usage
    print(format_result_text(result))
    print(f"[usage] total={usage.get('total', 0)} by_tool={json.dumps(usage.get('by_tool', {}))}")


if __name__ == "__main__":
    main()
