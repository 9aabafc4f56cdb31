from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    reference: str
    url: str = ""


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(_WireModel):
    message: str
    history: list[ChatMessage] = Field(default_factory=list)
    thinking_mode: bool = Field(default=False, alias="thinkingMode")
    target_language: str = Field(default="en", alias="targetLanguage")
    include_confederation: bool = Field(default=False, alias="includeConfederation")


QueryIntent = Literal[
    "quote-search", "conceptual", "practical", "personal", "comparative", "meta", "off-topic"
]

SSEEventType = Literal["session", "meta", "chunk", "suggestions", "done", "error"]


class SessionEventData(_WireModel):
    response_id: str = Field(alias="responseId")


class MetaEventData(_WireModel):
    quotes: list[Quote] = Field(default_factory=list)
    mode: Literal["quote-search", "standard"] | None = None
    intent: QueryIntent | None = None


class TextChunkData(_WireModel):
    type: Literal["text"] = "text"
    content: str


class QuoteChunkData(_WireModel):
    type: Literal["quote"] = "quote"
    text: str
    reference: str
    url: str = ""


ChunkEventData = Union[TextChunkData, QuoteChunkData]


class SuggestionsEventData(_WireModel):
    items: list[str] = Field(default_factory=list)


class DoneEventData(_WireModel):
    pass


class ErrorEventData(_WireModel):
    code: str
    message: str
    retryable: bool = False


class CachedEvent(BaseModel):
    """One recorded SSE event, as stored in the response cache."""

    event: str
    data: dict[str, Any] = Field(default_factory=dict)


class RecoveryResponse(BaseModel):
    events: list[CachedEvent] = Field(default_factory=list)
    complete: bool = False

    def has_content(self) -> bool:
        return any(e.event == "chunk" for e in self.events)

    def has_suggestions(self) -> bool:
        return any(e.event == "suggestions" for e in self.events)


class ErrorResponse(_WireModel):
    error: str
    retry_after: int | None = Field(default=None, alias="retryAfter")

    def wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)
