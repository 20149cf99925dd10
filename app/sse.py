import json
from typing import Any, Dict


def format_sse(event: Dict) -> str:
    event_type = event.get("type") or event.get("event_type", "message")
    payload = json.dumps(event, ensure_ascii=False)
    return f"event: {event_type}\ndata: {payload}\n\n"


def format_data(payload: Any) -> str:
    """A bare ``data:`` line, as OpenAI-compatible chunk streams expect."""
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"
