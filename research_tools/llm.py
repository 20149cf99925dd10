import json
import logging
import time
from typing import Any, Dict, List, Optional

import httpx
from openai import OpenAI, RateLimitError

from research_tools.errors import SchemaViolationError
from research_tools.usage import TokenTracker

logger = logging.getLogger(__name__)


def parse_json_object(text: str) -> Dict[str, Any]:
    """Parse model output, salvaging the outermost ``{...}`` span when needed."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            raise SchemaViolationError("Model output contains no JSON object.", raw=text)
        try:
            data = json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            raise SchemaViolationError(f"Unrecoverable JSON output: {exc}", raw=text) from exc
    if not isinstance(data, dict):
        raise SchemaViolationError("Model output is not a JSON object.", raw=text)
    return data


class LLM:
    def __init__(
        self,
        model: str,
        usage_tracker: TokenTracker | None = None,
        temperature: float = 0.0,
        client: Any = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        # The SDK's own retries are off; _chat_completion owns the retry policy.
        self.client = client or OpenAI(max_retries=0, http_client=http_client)
        self.model = model
        self.temperature = temperature
        # One retry on rate limits, then the error propagates.
        self.max_retries = 2
        self.backoff_sec = 1.0
        self.usage_tracker = usage_tracker

    def json(
        self,
        system_prompt: str,
        user_prompt: str,
        stage: str = "unknown",
        schema: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        if schema is not None:
            response_format: Dict[str, Any] = {
                "type": "json_schema",
                "json_schema": {"name": stage.replace("-", "_"), "schema": schema},
            }
        else:
            response_format = {"type": "json_object"}
        rsp = self._chat_completion(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            stage=stage,
            response_format=response_format,
            temperature=self.temperature if temperature is None else temperature,
        )
        text = rsp.choices[0].message.content or "{}"
        return parse_json_object(text)

    def text(
        self,
        system_prompt: str,
        user_prompt: str,
        stage: str = "unknown",
        temperature: Optional[float] = None,
    ) -> str:
        rsp = self._chat_completion(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            stage=stage,
            temperature=self.temperature if temperature is None else temperature,
        )
        return rsp.choices[0].message.content or ""

    def _chat_completion(
        self,
        messages: List[Dict[str, str]],
        stage: str,
        **kwargs: Any,
    ) -> Any:
        for attempt in range(self.max_retries):
            try:
                rsp = self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    **kwargs,
                )
            except RateLimitError:
                if attempt < self.max_retries - 1:
                    delay = self.backoff_sec * (2**attempt)
                    logger.warning("Rate limited at stage=%s; retrying in %.1fs", stage, delay)
                    time.sleep(delay)
                    continue
                raise
            if self.usage_tracker:
                self.usage_tracker.record_usage(stage, getattr(rsp, "usage", None))
            return rsp
        raise RuntimeError("Unexpected failure in chat completion.")
