"""Follow-up suggestion prompt context, parsing and fallbacks."""

from __future__ import annotations

import json
import re

from quotecast.core.logger import get_logger

logger = get_logger("quotecast.suggestions")

MAX_SUGGESTIONS = 3
MAX_SUGGESTION_LENGTH = 100

FALLBACK_SUGGESTIONS: dict[str, list[str]] = {
    "quote-search": [
        "Show me the full passage",
        "What else does Ra say about this?",
        "Which session is this from?",
    ],
    "conceptual": [
        "How does this connect to other concepts?",
        "Can you explain this further?",
        "What's the context for this teaching?",
    ],
    "practical": [
        "What's the first step?",
        "Are there other approaches?",
        "How do I know if it's working?",
    ],
    "personal": [
        "What does Ra say about this?",
        "Is there more to explore here?",
        "I'd like to discuss something else",
    ],
    "comparative": [
        "What are the key differences?",
        "Are there other parallels?",
        "How is Ra's view unique?",
    ],
    "meta": [
        "What topics can I explore?",
        "What is the Law of One?",
        "How do I search for quotes?",
    ],
    "off-topic": [
        "What is the Law of One?",
        "Tell me about densities",
        "What topics can I explore?",
    ],
}

_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")
# suggestions offered to someone in distress should not push exercises
_PRACTICE_WORDS = re.compile(r"\b(meditat|journal|practice|routine|daily|exercise|try this)", re.IGNORECASE)


def strip_code_fence(content: str) -> str:
    """Model JSON sometimes arrives wrapped in a ```json fence."""
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.startswith("json"):
            text = text[4:]
    return text.strip()


def fallback_suggestions(intent: str, existing: list[str] | None = None) -> list[str]:
    existing = existing or []
    fallbacks = FALLBACK_SUGGESTIONS.get(intent, FALLBACK_SUGGESTIONS["conceptual"])
    return [f for f in fallbacks if f not in existing]


def extract_questions(response: str) -> list[str]:
    """Last few questions the assistant itself asked, so they are not echoed back."""
    sentences = _SENTENCE_BREAK.split(response)
    return [s.strip() for s in sentences if s.strip().endswith("?")][-3:]


def build_suggestion_context(
    user_message: str, assistant_response: str, intent: str, turn_count: int
) -> str:
    if len(assistant_response) > 1200:
        response_for_context = (
            f"[Response summary - about {round(len(assistant_response) / 4)} words on the topic]"
            f"\n\n...{assistant_response[-700:]}"
        )
    else:
        response_for_context = assistant_response

    if turn_count >= 5:
        depth_note = " (deep conversation - consider offering a breadth option)"
    elif turn_count >= 3:
        depth_note = " (established conversation)"
    else:
        depth_note = ""

    personal_note = " (emotional/vulnerable - be gentle with suggestions)" if intent == "personal" else ""

    questions = extract_questions(assistant_response)
    questions_block = ""
    if questions:
        listed = "\n".join(f'- "{q}"' for q in questions)
        questions_block = f"\n\nAI QUESTIONS (do not echo these):\n{listed}"

    return "\n".join(
        [
            f"DETECTED INTENT: {intent}{personal_note}",
            f"CONVERSATION DEPTH: Turn {turn_count}{depth_note}",
            "",
            f"USER'S MESSAGE: {user_message}",
            "",
            "ASSISTANT'S RESPONSE:",
            response_for_context,
            questions_block,
        ]
    )


def parse_suggestions(content: str, intent: str) -> list[str]:
    """
    Parse ``{"suggestions": [...]}`` model output.

    Keeps at most three non-empty entries of at most 100 characters and pads
    with fallbacks for ``intent`` when fewer survive.

    Raises:
        ValueError: the content is not JSON of the expected shape
    """
    parsed = json.loads(strip_code_fence(content))
    if not isinstance(parsed, dict) or not isinstance(parsed.get("suggestions"), list):
        raise ValueError("suggestion response did not match the expected schema")

    raw = [s.strip() for s in parsed["suggestions"] if isinstance(s, str)]
    valid = [s for s in raw if 0 < len(s) <= MAX_SUGGESTION_LENGTH]
    if intent == "personal":
        valid = [s for s in valid if not _PRACTICE_WORDS.search(s)]
    valid = valid[:MAX_SUGGESTIONS]
    if len(raw) > len(valid):
        logger.debug("filtered suggestions: raw=%s valid=%s", raw, valid)

    if len(valid) < MAX_SUGGESTIONS:
        valid = (valid + fallback_suggestions(intent, valid))[:MAX_SUGGESTIONS]
    return valid
