"""Intent classification of the user's message, from the model's JSON reply."""

from __future__ import annotations

import json
from typing import cast, get_args

from quotecast.core.logger import get_logger
from quotecast.schemas.chat import QueryIntent
from quotecast.services.suggestions import strip_code_fence

logger = get_logger("quotecast.intent")

VALID_INTENTS: tuple[str, ...] = get_args(QueryIntent)
DEFAULT_INTENT: QueryIntent = "conceptual"


def parse_intent(content: str) -> QueryIntent:
    """
    Read ``{"intent": "..."}`` from model output.

    Anything unparseable or outside the known intents maps to ``conceptual``,
    so a confused classifier never blocks an answer.
    """
    try:
        parsed = json.loads(strip_code_fence(content))
    except ValueError:
        logger.debug("intent reply is not JSON: %r", content[:200])
        return DEFAULT_INTENT

    intent = parsed.get("intent") if isinstance(parsed, dict) else None
    if intent not in VALID_INTENTS:
        logger.debug("unknown intent %r, using %s", intent, DEFAULT_INTENT)
        return DEFAULT_INTENT
    return cast(QueryIntent, intent)
