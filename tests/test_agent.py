import pytest

from deep_research_agent import KnowledgeItem
from research_tools.action_tracker import TrackerContext
from research_tools.backends import SearchResult
from research_tools.errors import SchemaViolationError
from tests.conftest import FakeLLM, FakeReader, FakeSearch


QUESTION = "What is the boiling point of water at sea level?"
WIKI = "https://en.wikipedia.org/wiki/Water"
PAGE = (
    "Water boils at 100 degrees Celsius at standard sea level atmospheric pressure.\n"
    "Ice melts at zero degrees Celsius under normal everyday conditions on Earth."
)
ANSWER = "Water boils at 100 degrees Celsius at sea level under standard atmospheric pressure."


def _search(query):
    return {"action": "search", "think": "I need sources.", "searchQuery": query}


def _answer(text, refs=None):
    return {"action": "answer", "think": "I know this.", "answer": text, "references": refs or []}


def _agent_schemas(llm):
    return [c["schema"] for c in llm.calls if c["stage"] == "agent"]


def test_answer_without_references_is_not_accepted_while_urls_remain(make_agent):
    llm = FakeLLM({"agent": [_search("boiling point water sea level"), _answer("100°C")]})
    search = FakeSearch(
        {"boiling point water sea level": [SearchResult("Water - Wikipedia", WIKI, "Water facts")]}
    )
    agent = make_agent(llm, search=search, max_steps=2)

    result = agent.run(QUESTION)

    assert result.forced is True
    assert result.total_step == 2
    assert result.answer == "Final best effort."
    assert any("find more URL references" in note for note in agent.session.diary)
    assert WIKI in agent.session.all_urls
    assert llm.count("error_analysis") == 0
    # Visit became legal once the pool had a URL.
    assert "visit" in _agent_schemas(llm)[1]["properties"]["action"]["enum"]
    assert "visit" not in _agent_schemas(llm)[0]["properties"]["action"]["enum"]


def test_bad_attempts_force_acceptance_after_ceiling(make_agent):
    llm = FakeLLM(
        {
            "agent": [_answer("I am not sure.")],
            "evaluate_definitive": {"pass": False, "think": "The answer hedges."},
        }
    )
    agent = make_agent(llm, max_bad_attempts=3)

    result = agent.run(QUESTION)

    assert result.forced is True
    assert result.answer == "I am not sure."
    assert result.total_step == 4
    assert len(result.bad_attempts) == 3
    assert llm.count("evaluate_definitive") == 3
    assert llm.count("error_analysis") == 3
    assert llm.count("evaluate_question") == 1
    # Diary was reset after the third rejection; only the forced acceptance remains.
    assert len(agent.session.diary) == 1
    assert agent.session.step == 1
    assert agent.session.bad_attempt_count == 3


def test_visit_then_answer_produces_references(make_agent):
    llm = FakeLLM(
        {
            "agent": [
                _search("boiling point water"),
                {"action": "visit", "think": "Read it.", "URLTargets": [WIKI]},
                _answer(ANSWER, [{"exactQuote": "Water boils at 100 degrees Celsius", "url": WIKI}]),
            ]
        }
    )
    search = FakeSearch({"boiling point water": [SearchResult("Water", WIKI, "")]})
    reader = FakeReader({WIKI: PAGE})
    agent = make_agent(llm, search=search, reader=reader)

    result = agent.run(QUESTION)

    assert result.forced is False
    assert result.total_step == 3
    assert reader.reads == [WIKI]
    assert WIKI not in agent.session.all_urls
    assert agent.session.visited_urls == [WIKI]
    assert any(k.question == f"What is in {WIKI}?" for k in agent.session.knowledge)
    # The cited URL was already read, so attribution had nothing new to check.
    assert llm.count("evaluate_attribution") == 0
    assert len(result.references) == 1
    assert result.references[0].url == WIKI
    assert result.references[0].exact_quote.startswith("Water boils at 100 degrees Celsius")
    assert result.answer == ANSWER + "[^1]"


def test_failed_read_still_marks_url_visited(make_agent):
    llm = FakeLLM(
        {
            "agent": [
                _search("boiling point water"),
                {"action": "visit", "think": "", "URLTargets": [WIKI]},
            ]
        }
    )
    search = FakeSearch({"boiling point water": [SearchResult("Water", WIKI, "")]})
    agent = make_agent(llm, search=search, reader=FakeReader(), max_steps=2)

    agent.run(QUESTION)

    assert agent.session.all_urls == {}
    assert agent.session.visited_urls == [WIKI]
    assert agent.session.web_contents == {}
    assert "could not be read" in agent.session.diary[-1]


def test_attribution_failure_counts_as_bad_attempt(make_agent):
    cited = "https://example.com/unreachable"
    llm = FakeLLM({"agent": [_answer(ANSWER, [{"exactQuote": "boils at 100", "url": cited}])]})
    agent = make_agent(llm, max_steps=1)

    agent.run(QUESTION)

    assert agent.session.bad_attempt_count == 1
    assert cited in agent.session.visited_urls
    assert llm.count("evaluate_definitive") == 0


def test_reflect_enqueues_sub_questions_then_original(make_agent):
    q1 = "At what pressure is sea level defined?"
    q2 = "Does altitude change boiling temperature?"
    llm = FakeLLM(
        {
            "agent": [
                {"action": "reflect", "think": "Gaps.", "questionsToAnswer": [q1, q2]},
                _answer("101.325 kPa."),
            ]
        }
    )
    agent = make_agent(llm, max_steps=2)

    agent.run(QUESTION)

    assert agent.session.all_questions == [QUESTION, q1, q2]
    assert agent.session.gaps == [q2, QUESTION]
    assert KnowledgeItem(question=q1, answer="101.325 kPa.") in agent.session.knowledge
    # Sub-questions are only checked for definitiveness.
    assert llm.count("evaluate_question") == 0
    assert llm.count("evaluate_definitive") == 1
    # Two questions were still pending, so reflect was not offered on step two.
    assert "reflect" not in _agent_schemas(llm)[1]["properties"]["action"]["enum"]


def test_failed_sub_question_answer_is_discarded(make_agent):
    q1 = "Is sea level pressure constant?"
    llm = FakeLLM(
        {
            "agent": [
                {"action": "reflect", "think": "", "questionsToAnswer": [q1]},
                _answer("Maybe."),
            ],
            "evaluate_definitive": {"pass": False, "think": "Hedged."},
        }
    )
    agent = make_agent(llm, max_steps=2)

    agent.run(QUESTION)

    assert agent.session.knowledge == []
    assert agent.session.bad_attempt_count == 0
    assert llm.count("error_analysis") == 0


def test_reflect_with_only_repeated_questions_is_a_dead_end(make_agent):
    llm = FakeLLM({"agent": [{"action": "reflect", "think": "", "questionsToAnswer": [QUESTION]}]})
    agent = make_agent(llm, max_steps=1)

    agent.run(QUESTION)

    assert agent.session.all_questions == [QUESTION]
    assert agent.session.gaps == []
    assert "asked them before" in agent.session.diary[-1]


def test_illegal_action_is_a_no_op_step(make_agent):
    llm = FakeLLM({"agent": [{"action": "visit", "think": "", "URLTargets": [WIKI]}]})
    agent = make_agent(llm, max_steps=1)

    result = agent.run(QUESTION)

    assert result.forced is True
    assert agent.session.visited_urls == []
    assert "not usable" in agent.session.diary[-1]


def test_budget_exhaustion_ends_loop_with_forced_answer(make_agent):
    llm = FakeLLM({"agent": [_search("boiling point water")]})
    context = TrackerContext.with_budget(5)
    agent = make_agent(llm, context=context, token_budget=5)

    result = agent.run(QUESTION)

    assert result.forced is True
    assert result.total_step == 1
    assert context.token_tracker.breakdown()["search"] == 10
    assert llm.stages()[-2:] == ["agent_final", "md_fixer"]


def test_search_outage_degrades_to_empty_results(make_agent):
    llm = FakeLLM({"agent": [_search("boiling point water")]})
    agent = make_agent(llm, search=FakeSearch(fail=True), max_steps=1)

    agent.run(QUESTION)

    assert agent.session.all_urls == {}
    assert agent.session.all_keywords == ["boiling point water"]
    assert "found 0 results" in agent.session.diary[-1]


def test_repeated_search_keywords_are_skipped(make_agent):
    llm = FakeLLM({"agent": [_search("boiling point water"), _search("boiling point water")]})
    search = FakeSearch()
    agent = make_agent(llm, search=search, max_steps=2)

    agent.run(QUESTION)

    assert search.queries == ["boiling point water"]
    assert "already searched" in agent.session.diary[-1]


def test_events_and_tracker_updates_are_reported(make_agent):
    events = []
    snapshots = []
    llm = FakeLLM({"agent": [_answer("Water boils at 100 degrees Celsius.")]})
    context = TrackerContext.with_budget(1_000_000)
    context.action_tracker.subscribe(snapshots.append)
    agent = make_agent(llm, context=context, event_callback=events.append, run_id="run-1")

    result = agent.run(QUESTION)

    assert result.forced is False
    assert events[0]["event_type"] == "run_started"
    assert events[-1]["event_type"] == "run_completed"
    assert all(e["run_id"] == "run-1" for e in events)
    assert snapshots[-1]["total_step"] == 1
    assert snapshots[-1]["this_step"]["answer"] == "Water boils at 100 degrees Celsius."


def test_empty_question_is_rejected(make_agent):
    with pytest.raises(ValueError):
        make_agent(FakeLLM()).run("   ")


def test_unparseable_evaluation_counts_as_failed_answer(make_agent):
    events = []
    llm = FakeLLM(
        {
            "agent": [_answer("Water boils at 100 degrees Celsius.")],
            "evaluate_definitive": SchemaViolationError("Model output contains no JSON object."),
        }
    )
    agent = make_agent(llm, max_bad_attempts=1, event_callback=events.append)

    result = agent.run(QUESTION)

    assert result.forced is True
    assert result.answer == "Water boils at 100 degrees Celsius."
    assert len(result.bad_attempts) == 1
    evaluated = [e["payload"] for e in events if e["event_type"] == "answer_evaluated"]
    assert evaluated[0]["pass"] is False
    assert "could not be parsed" in evaluated[0]["think"]


def test_final_answer_is_revised_before_attribution(make_agent):
    revised = "Water boils at 100 degrees Celsius at sea level, under one standard atmosphere."
    llm = FakeLLM({"agent": [_answer("Water boils at 100 degrees Celsius.")], "md_fixer": revised})
    agent = make_agent(llm)

    result = agent.run(QUESTION)

    assert result.answer == revised
    assert result.action.answer == "Water boils at 100 degrees Celsius."
    assert llm.stages()[-1] == "md_fixer"
