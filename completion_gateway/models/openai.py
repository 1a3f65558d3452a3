from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

FinishReason = Literal["stop", "length", "content_filter"]
FINISH_REASONS: frozenset[str] = frozenset({"stop", "length", "content_filter"})


def normalize_finish_reason(value: object) -> FinishReason | None:
    """Map an upstream finish reason onto the supported set."""
    if value is None or value == "":
        return None
    if isinstance(value, str) and value in FINISH_REASONS:
        return value  # type: ignore[return-value]
    return "stop"


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str = Field(min_length=1)
    name: str | None = None


class CompletionRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
    model: str | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0, le=2)
    top_p: float | None = Field(default=None, ge=0, le=1)
    stop: str | list[str] | None = None
    stream: bool = False
    thread_ref: str | None = Field(
        default=None, validation_alias=AliasChoices("thread_ref", "thread_id")
    )
    user: str | None = None

    def last_user_message(self) -> ChatMessage | None:
        return next((m for m in reversed(self.messages) if m.role == "user"), None)

    @property
    def stop_list(self) -> list[str] | None:
        if self.stop is None:
            return None
        if isinstance(self.stop, str):
            return [self.stop]
        return list(self.stop)


class Usage(BaseModel):
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    def recomputed(self) -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            total_tokens=self.prompt_tokens + self.completion_tokens,
        )


class ChoiceMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str = ""

    @field_validator("content", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return "" if value is None else value


class CompletionChoice(BaseModel):
    index: int = 0
    message: ChoiceMessage
    finish_reason: FinishReason | None = "stop"

    @field_validator("finish_reason", mode="before")
    @classmethod
    def _normalize_finish_reason(cls, value: object) -> object:
        return normalize_finish_reason(value)


class CompletionResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: list[CompletionChoice]
    usage: Usage = Field(default_factory=Usage)

    @property
    def content(self) -> str:
        return self.choices[0].message.content if self.choices else ""

    @property
    def finish_reason(self) -> FinishReason | None:
        return self.choices[0].finish_reason if self.choices else None


class ChunkDelta(BaseModel):
    content: str | None = None


class StreamChunk(BaseModel):
    """Provider-neutral unit of a streamed completion."""

    id: str
    created: int
    model: str
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: FinishReason | None = None

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason is not None

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "delta": self.delta.model_dump(exclude_none=True),
                    "finish_reason": self.finish_reason,
                }
            ],
        }


class CompletionRecord(BaseModel):
    id: str | None = None
    request_id: str
    user_id: str
    thread_ref: str | None = None
    message_id: str | None = None
    model: str
    provider: str
    messages: list[ChatMessage]
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop: list[str] | None = None
    stream: bool = False
    response: dict[str, Any]
    usage: Usage | None = None
    finish_reason: str | None = None
    error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.completed_at is not None


class ModelCard(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int = 0
    owned_by: str
    context_length: int
    supports_streaming: bool


class ModelList(BaseModel):
    object: Literal["list"] = "list"
    data: list[ModelCard]
