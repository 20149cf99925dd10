from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from research_tools.errors import SchemaViolationError

MAX_REFLECT_QUESTIONS = 2
MAX_VISIT_URLS = 2


class _ActionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    think: str = ""


class QuotedReference(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    exact_quote: str = Field(default="", alias="exactQuote")
    url: str = ""


class SearchAction(_ActionBase):
    action: Literal["search"]
    search_query: str = Field(alias="searchQuery", min_length=1)


class AnswerAction(_ActionBase):
    action: Literal["answer"]
    answer: str
    references: List[QuotedReference] = Field(default_factory=list)


class ReflectAction(_ActionBase):
    action: Literal["reflect"]
    questions_to_answer: List[str] = Field(alias="questionsToAnswer", min_length=1)


class VisitAction(_ActionBase):
    action: Literal["visit"]
    url_targets: List[str] = Field(alias="URLTargets", min_length=1)


Action = Union[SearchAction, AnswerAction, ReflectAction, VisitAction]

_VARIANTS: Dict[str, type] = {
    "search": SearchAction,
    "answer": AnswerAction,
    "reflect": ReflectAction,
    "visit": VisitAction,
}


def allowed_actions(
    allow_reflect: bool, allow_read: bool, allow_search: bool = True
) -> List[str]:
    actions: List[str] = []
    if allow_search:
        actions.append("search")
    actions.append("answer")
    if allow_reflect:
        actions.append("reflect")
    if allow_read:
        actions.append("visit")
    return actions


def build_action_schema(actions: List[str]) -> Dict[str, Any]:
    """JSON schema handed to the decision backend; only legal variants appear."""
    properties: Dict[str, Any] = {
        "action": {
            "type": "string",
            "enum": list(actions),
            "description": "Must match exactly one action type",
        },
        "think": {
            "type": "string",
            "description": "Explain why you choose this action, in first person.",
        },
    }
    if "search" in actions:
        properties["searchQuery"] = {
            "type": "string",
            "description": "Only required when choosing 'search' action, must be a short, "
            "keyword-based query that BM25, tf-idf based search engines can understand.",
        }
    properties["answer"] = {
        "type": "string",
        "description": "Only required when choosing 'answer' action, must be the final answer "
        "in natural language",
    }
    properties["references"] = {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {
                "exactQuote": {
                    "type": "string",
                    "description": "Exact relevant quote from the document",
                },
                "url": {
                    "type": "string",
                    "description": "URL of the document; must be directly from the context",
                },
            },
            "required": ["exactQuote", "url"],
        },
        "description": "Only required when choosing 'answer' action, must be an array of references",
    }
    if "reflect" in actions:
        properties["questionsToAnswer"] = {
            "type": "array",
            "items": {
                "type": "string",
                "description": "each question must be a single line, concise and clear. "
                "not composite or compound, less than 20 words.",
            },
            "maxItems": MAX_REFLECT_QUESTIONS,
            "description": "Only required when choosing 'reflect' action, list of most important "
            "questions to fill the knowledge gaps.",
        }
    if "visit" in actions:
        properties["URLTargets"] = {
            "type": "array",
            "items": {"type": "string"},
            "maxItems": MAX_VISIT_URLS,
            "description": "Only required when choosing 'visit' action, must be an array of URLs, "
            "choose up the most relevant URLs to deep dive into",
        }
    return {
        "type": "object",
        "properties": properties,
        "required": ["action", "think"],
    }


def parse_action(data: Any, actions: List[str]) -> Action:
    """Validate decision output against the variants that are legal this step."""
    if not isinstance(data, dict):
        raise SchemaViolationError(f"Action must be a JSON object, got {type(data).__name__}")
    name = data.get("action")
    if name not in actions:
        raise SchemaViolationError(
            f"Action '{name}' is not permitted here; allowed: {', '.join(actions)}"
        )
    variants = tuple(_VARIANTS[a] for a in actions)
    if len(variants) == 1:
        adapter: TypeAdapter = TypeAdapter(variants[0])
    else:
        adapter = TypeAdapter(Annotated[Union[variants], Field(discriminator="action")])
    try:
        return adapter.validate_python(data)
    except ValidationError as exc:
        raise SchemaViolationError(f"Invalid '{name}' action: {exc.error_count()} error(s)") from exc


def action_to_dict(action: Action) -> Dict[str, Any]:
    return action.model_dump(by_alias=True)
