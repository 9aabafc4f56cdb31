"""Typed errors for the chat pipeline and their SSE ``error`` payloads."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from quotecast.schemas.chat import ErrorEventData


class ChatErrorCode(str, Enum):
    EMBEDDING_FAILED = "EMBEDDING_FAILED"
    SEARCH_FAILED = "SEARCH_FAILED"
    STREAM_FAILED = "STREAM_FAILED"
    QUOTE_PROCESSING_FAILED = "QUOTE_PROCESSING_FAILED"
    SUGGESTIONS_FAILED = "SUGGESTIONS_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class _Template:
    user_message: str
    retryable: bool


_TEMPLATES: dict[ChatErrorCode, _Template] = {
    ChatErrorCode.EMBEDDING_FAILED: _Template(
        "I couldn't process your message. Please try again.", True
    ),
    ChatErrorCode.SEARCH_FAILED: _Template(
        "I couldn't search the source material. Please try again in a moment.", True
    ),
    ChatErrorCode.STREAM_FAILED: _Template(
        "I encountered an error generating my response. Please try again.", True
    ),
    ChatErrorCode.QUOTE_PROCESSING_FAILED: _Template(
        "I had trouble formatting a quote. The response may be incomplete.", False
    ),
    # suggestions are optional, so this one stays silent
    ChatErrorCode.SUGGESTIONS_FAILED: _Template("", False),
    ChatErrorCode.RATE_LIMITED: _Template(
        "Too many requests. Please wait before trying again.", True
    ),
    ChatErrorCode.VALIDATION_ERROR: _Template(
        "Invalid request. Please check your message and try again.", False
    ),
    ChatErrorCode.UNKNOWN_ERROR: _Template("Something went wrong. Please try again.", True),
}


class ChatError(Exception):
    def __init__(self, code: ChatErrorCode, cause: Optional[BaseException] = None):
        template = _TEMPLATES[code]
        self.code = code
        self.user_message = template.user_message
        self.retryable = template.retryable
        self.cause = cause
        super().__init__(f"{code.value}: {cause}" if cause is not None else code.value)


def create_chat_error(code: ChatErrorCode, cause: Optional[BaseException] = None) -> ChatError:
    return ChatError(code, cause)


def to_chat_error(error: BaseException) -> ChatError:
    if isinstance(error, ChatError):
        return error
    return ChatError(ChatErrorCode.UNKNOWN_ERROR, error)


def to_error_event_data(error: BaseException) -> ErrorEventData:
    chat_error = to_chat_error(error)
    return ErrorEventData(
        code=chat_error.code.value,
        message=chat_error.user_message,
        retryable=chat_error.retryable,
    )
