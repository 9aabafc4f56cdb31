"""Chat request validation with user-facing 400 messages."""

from __future__ import annotations

from typing import Any

from quotecast.core.config import ValidationLimits
from quotecast.schemas.chat import ChatMessage, ChatRequest


class RequestValidationError(Exception):
    """Invalid request body; ``message`` is returned to the caller as ``{error}``."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def validate_message(message: Any, limits: ValidationLimits) -> str:
    if not isinstance(message, str):
        raise RequestValidationError("Message is required and must be a string")
    if len(message) == 0:
        raise RequestValidationError("Message cannot be empty")
    if len(message) > limits.max_message_length:
        raise RequestValidationError(
            f"Message too long. Maximum {limits.max_message_length} characters."
        )
    return message


def validate_history(history: Any, limits: ValidationLimits) -> list[ChatMessage]:
    if not isinstance(history, list):
        raise RequestValidationError("History must be an array")
    if len(history) > limits.max_history_length:
        raise RequestValidationError(
            f"History too long. Maximum {limits.max_history_length} messages."
        )

    messages: list[ChatMessage] = []
    for item in history:
        if not isinstance(item, dict):
            raise RequestValidationError("Invalid history format")
        role = item.get("role")
        if role not in ("user", "assistant"):
            raise RequestValidationError("Invalid message role in history")
        content = item.get("content")
        if not isinstance(content, str) or not content:
            raise RequestValidationError("Invalid message content in history")
        if len(content) > limits.max_history_message_length:
            raise RequestValidationError("Message in history too long")
        messages.append(ChatMessage(role=role, content=content))
    return messages


def parse_chat_request(body: Any, limits: ValidationLimits) -> ChatRequest:
    if not isinstance(body, dict):
        raise RequestValidationError("Message is required and must be a string")

    message = validate_message(body.get("message"), limits)
    history = validate_history(body.get("history", []), limits)

    target_language = body.get("targetLanguage")
    if not isinstance(target_language, str) or not target_language.strip():
        target_language = "en"

    return ChatRequest(
        message=message,
        history=history,
        thinking_mode=body.get("thinkingMode") is True,
        target_language=target_language.strip().lower(),
        include_confederation=body.get("includeConfederation") is True,
    )
