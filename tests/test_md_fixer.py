from deep_research_agent import KnowledgeItem
from research_tools.errors import UpstreamUnavailableError
from research_tools.md_fixer import revise_answer
from tests.conftest import FakeLLM


DRAFT = "Water boils at 100 degrees Celsius at sea level.\n\n| a | b |\n|---|---|\n| 1 | 2 |"


def test_revision_is_accepted_when_it_keeps_the_content():
    revised = DRAFT.replace("| a | b |\n|---|---|\n| 1 | 2 |", "<table><tr><td>1</td><td>2</td></tr></table>")
    llm = FakeLLM({"md_fixer": revised})

    out = revise_answer(llm, DRAFT, [KnowledgeItem("What is in x?", "Boiling point facts.")])

    assert out == revised
    assert llm.stages() == ["md_fixer"]


def test_knowledge_is_given_to_the_reviser():
    prompts = []

    class RecordingLLM(FakeLLM):
        def text(self, system_prompt, user_prompt, stage="unknown", temperature=None):
            prompts.append(system_prompt)
            return user_prompt

    revise_answer(RecordingLLM(), DRAFT, [KnowledgeItem("What is in x?", "Boiling point facts.")])

    assert "Boiling point facts." in prompts[0]
    assert "{knowledge}" not in prompts[0]


def test_much_shorter_revision_keeps_the_draft():
    llm = FakeLLM({"md_fixer": "Water boils."})
    assert revise_answer(llm, DRAFT) == DRAFT


def test_failed_revision_keeps_the_draft():
    llm = FakeLLM({"md_fixer": UpstreamUnavailableError("llm", "timeout")})
    assert revise_answer(llm, DRAFT) == DRAFT


def test_empty_draft_is_not_sent():
    llm = FakeLLM()
    assert revise_answer(llm, "  ") == "  "
    assert llm.calls == []
