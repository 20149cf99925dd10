import logging
import time
import uuid
from queue import Empty, Queue
from typing import Any, Dict, Iterator, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.requests import Request

from app.auth import AuthConfig, AuthService, require_bearer
from app.models import (
    ChatCompletionChoice,
    ChatCompletionChunk,
    ChatCompletionChunkChoice,
    ChatCompletionMessage,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChunkDelta,
    QueryRequest,
    QueryResponse,
)
from app.run_manager import TERMINAL_TYPES, RunManager
from app.sse import format_data, format_sse

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

SYSTEM_FINGERPRINT = "fp_deepsearch"
KEEPALIVE_SEC = 15

auth = AuthService(AuthConfig())
run_manager = RunManager()

app = FastAPI(title="DeepSearch")


@app.exception_handler(HTTPException)
def http_error(_request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


def _last_user_question(req: ChatCompletionRequest) -> str:
    if not req.messages:
        raise HTTPException(status_code=400, detail="Messages array is required and must not be empty")
    last = req.messages[-1]
    if last.role != "user":
        raise HTTPException(status_code=400, detail="Last message must be from user")
    return last.content


def _chunk(
    request_id: str, created: int, model: str, delta: ChunkDelta, finish: Optional[str] = None
) -> Dict[str, Any]:
    return ChatCompletionChunk(
        id=request_id,
        created=created,
        model=model,
        system_fingerprint=SYSTEM_FINGERPRINT,
        choices=[ChatCompletionChunkChoice(delta=delta, finish_reason=finish)],
    ).model_dump(exclude_none=True)


def _render_answer(result: Dict[str, Any]) -> str:
    lines = [str(result.get("answer", ""))]
    refs = result.get("references") or []
    if refs:
        lines.append("")
        for i, ref in enumerate(refs, start=1):
            lines.append(f"[^{i}]: [{ref.get('title') or ref.get('url')}]({ref.get('url')})")
    return "\n".join(lines)


def _usage_for(result: Dict[str, Any]) -> Dict[str, Any]:
    usage = result.get("usage") or {}
    return usage.get("usage", {}) if isinstance(usage, dict) else {}


def _chat_stream(run_id: str, q: Queue, model: str) -> Iterator[str]:
    created = int(time.time())
    last_think = ""
    try:
        yield format_data(_chunk(run_id, created, model, ChunkDelta(role="assistant")))
        yield format_data(_chunk(run_id, created, model, ChunkDelta(content="<think>")))
        while True:
            try:
                message = q.get(timeout=KEEPALIVE_SEC)
            except Empty:
                yield ": keep-alive\n\n"
                continue
            kind = message.get("type")
            if kind == "progress":
                think = str(message.get("data", "") or "").strip()
                if think and think != last_think:
                    last_think = think
                    yield format_data(_chunk(run_id, created, model, ChunkDelta(content=f"{think}\n")))
                continue
            yield format_data(_chunk(run_id, created, model, ChunkDelta(content="</think>\n\n")))
            if kind == "answer":
                content = _render_answer(message.get("data") or {})
            else:
                content = f"Research failed: {message.get('data', 'unknown error')}"
            yield format_data(_chunk(run_id, created, model, ChunkDelta(content=content)))
            yield format_data(_chunk(run_id, created, model, ChunkDelta(), finish="stop"))
            yield format_data("[DONE]")
            return
    finally:
        run_manager.unsubscribe(run_id, q)


@app.post("/v1/chat/completions")
def chat_completions(req: ChatCompletionRequest, request: Request):
    require_bearer(request, auth)
    question = _last_user_question(req)
    model = req.model or "deepsearch"

    if req.stream:
        run_id = run_manager.create_run(
            question=question,
            budget=req.budget_tokens,
            max_bad_attempts=req.max_bad_attempts,
        )
        q = run_manager.subscribe(run_id)
        if q is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return StreamingResponse(
            _chat_stream(run_id, q, model),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    result = run_manager.run_sync(
        question,
        budget=req.budget_tokens,
        max_bad_attempts=req.max_bad_attempts,
    ).to_dict()
    response = ChatCompletionResponse(
        id=str(uuid.uuid4()),
        created=int(time.time()),
        model=model,
        system_fingerprint=SYSTEM_FINGERPRINT,
        choices=[ChatCompletionChoice(message=ChatCompletionMessage(content=_render_answer(result)))],
        usage=_usage_for(result),
    )
    return response.model_dump()


@app.post("/api/v1/query", response_model=QueryResponse)
def create_query(req: QueryRequest, request: Request) -> QueryResponse:
    require_bearer(request, auth)
    run_id = run_manager.create_run(
        question=req.q,
        budget=req.budget,
        max_bad_attempts=req.max_bad_attempt,
    )
    return QueryResponse(request_id=run_id)


def _event_stream(run_id: str, q: Queue) -> Iterator[str]:
    try:
        while True:
            try:
                message = q.get(timeout=KEEPALIVE_SEC)
            except Empty:
                yield ": keep-alive\n\n"
                continue
            yield format_sse(message)
            if message.get("type") in TERMINAL_TYPES:
                return
    finally:
        run_manager.unsubscribe(run_id, q)


@app.get("/api/v1/stream/{request_id}")
def stream_events(request_id: str, request: Request) -> StreamingResponse:
    require_bearer(request, auth)
    q = run_manager.subscribe(request_id)
    if q is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return StreamingResponse(
        _event_stream(request_id, q),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/api/v1/task/{request_id}")
def get_task(request_id: str, request: Request) -> Dict[str, Any]:
    require_bearer(request, auth)
    stored = run_manager.load_task_result(request_id)
    if stored is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return stored
