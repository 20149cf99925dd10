import logging
import textwrap
from typing import Any, Sequence

from openai import OpenAIError

from research_tools.errors import ResearchError

logger = logging.getLogger(__name__)

# A revision shorter than this share of the draft is treated as lossy.
MIN_LENGTH_RATIO = 0.85

SYSTEM_MD_FIXER = textwrap.dedent(
    """
    You are a senior editor. Turn the draft answer below into publication-ready
    markdown without losing any facts from it.

    Rules:
    1. Keep every claim of the draft; use the knowledge items to fill in missing
       details, never to contradict the draft.
    2. Fix broken tables, lists, code blocks, footnotes and other formatting.
    3. Indent nested lists correctly; fence code blocks with triple backticks.
    4. Write tables as plain HTML <table> markup, never as markdown tables and
       never fenced.
    5. Prefer natural paragraphs over deeply nested bullet points.
    6. Answer in the same language as the draft.

    Knowledge items (some may be unrelated to the draft):
    {knowledge}

    Output only the revised content. No explanation, no summary.
    """
).strip()


def _knowledge_text(knowledge: Sequence[Any], max_chars: int) -> str:
    items = []
    for i, item in enumerate(knowledge, start=1):
        answer = str(getattr(item, "answer", "") or "")
        if len(answer) > max_chars:
            answer = answer[: max_chars - 3].rstrip() + "..."
        items.append(f"<knowledge-{i}>\n{getattr(item, 'question', '')}\n{answer}\n</knowledge-{i}>")
    return "\n\n".join(items) or "(none)"


def revise_answer(llm: Any, md_content: str, knowledge: Sequence[Any] = (), max_item_chars: int = 4000) -> str:
    """Polish the final markdown answer.

    The draft is returned unchanged when the call fails or the revision comes
    back shorter than ``MIN_LENGTH_RATIO`` of it.
    """
    if not md_content.strip():
        return md_content
    system = SYSTEM_MD_FIXER.replace("{knowledge}", _knowledge_text(knowledge, max_item_chars))
    try:
        revised = llm.text(system, md_content, stage="md_fixer")
    except (ResearchError, OpenAIError) as exc:
        logger.warning("Answer revision failed, keeping the draft: %s", exc)
        return md_content
    revised = revised or ""
    logger.info("Answer revision length before/after: %d/%d", len(md_content), len(revised))
    if len(revised) < len(md_content) * MIN_LENGTH_RATIO:
        logger.warning(
            "Revised answer is much shorter than the draft (%d < %d); keeping the draft",
            len(revised),
            len(md_content),
        )
        return md_content
    return revised
