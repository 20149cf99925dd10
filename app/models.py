from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


RunStatus = Literal["queued", "running", "completed", "failed"]


class ChatMessage(BaseModel):
    role: str = "user"
    content: str = ""


class ChatCompletionRequest(BaseModel):
    model: str = ""
    messages: List[ChatMessage] = Field(default_factory=list)
    stream: bool = False
    budget_tokens: Optional[int] = Field(default=None, ge=1)
    max_bad_attempts: Optional[int] = Field(default=None, ge=1)


class QueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    q: str = Field(min_length=1)
    budget: Optional[int] = Field(default=None, ge=1)
    max_bad_attempt: Optional[int] = Field(default=None, ge=1, alias="maxBadAttempt")


class QueryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId")


class ChatCompletionMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str = ""


class ChatCompletionChoice(BaseModel):
    index: int = 0
    message: ChatCompletionMessage
    logprobs: Optional[Any] = None
    finish_reason: str = "stop"


class ChatCompletionResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    system_fingerprint: str
    choices: List[ChatCompletionChoice]
    usage: Dict[str, Any] = Field(default_factory=dict)


class ChunkDelta(BaseModel):
    role: Optional[str] = None
    content: Optional[str] = None


class ChatCompletionChunkChoice(BaseModel):
    index: int = 0
    delta: ChunkDelta
    logprobs: Optional[Any] = None
    finish_reason: Optional[str] = None


class ChatCompletionChunk(BaseModel):
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    system_fingerprint: str
    choices: List[ChatCompletionChunkChoice]


class RunState(BaseModel):
    run_id: str
    status: RunStatus
    question: str
    created_at: datetime
    updated_at: datetime
    budget: int
    max_bad_attempts: int
    events: List[Dict[str, Any]] = Field(default_factory=list)
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    token_usage: Optional[Dict[str, Any]] = None
    state_file_path: Optional[str] = None
