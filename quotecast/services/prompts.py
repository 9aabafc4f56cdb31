"""Prompt text and message builders for the chat pipeline."""

from __future__ import annotations

from typing import Sequence

from quotecast.schemas.chat import ChatMessage, Quote
from quotecast.services.quote_format import count_sentences

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
}

ROLE_PREAMBLE = """You are a knowledgeable, warm guide to the Ra Material (the Law of One). \
You explain its teachings clearly and ground what you say in the source text."""

QUOTE_FORMAT_RULES = """QUOTE FORMAT:
- Insert a quote by writing {{QUOTE:N}} on its own line, where N is the passage number.
- To show only part of a passage write {{QUOTE:N:sX:sY}} for sentences X through Y (1-based, inclusive).
- Never copy passage text yourself and never invent passage numbers."""

INITIAL_RESPONSE_PROMPT = f"""{ROLE_PREAMBLE}

Write ONE short opening paragraph (2-3 sentences) that directly addresses the user's question. \
Do not include quotes, markers, headings or lists. The answer will be continued afterwards \
with supporting passages."""

CONTINUATION_PROMPT = f"""{ROLE_PREAMBLE}

You already wrote the opening paragraph shown as your previous turn. Continue the answer from \
there without repeating it: 1-2 further paragraphs, weaving in 1-2 of the provided passages.

{QUOTE_FORMAT_RULES}"""

QUOTE_SEARCH_PROMPT = f"""{ROLE_PREAMBLE}

The user is looking for specific passages. Lead with the best matching quotes and add brief \
context. Length: 1-2 short paragraphs, 1-3 quotes. If nothing matches exactly, say so honestly \
and show the closest passage.

{QUOTE_FORMAT_RULES}"""

SUGGESTION_PROMPT = """Generate EXACTLY 3 short follow-up questions the user might ask next.
Use the specific terms just discussed, keep each under 100 characters, and do not repeat \
questions the assistant already asked.
Respond with JSON only: {"suggestions": ["...", "...", "..."]}"""

INTENT_PROMPT = """Classify the user's message for a Ra Material (Law of One) study assistant.

Return JSON only: {"intent": "<intent>"}

Intents, checked in order (first match wins):
1. "personal" - emotional state, vulnerability, or skepticism ("I feel", "I'm struggling", "Ra is fake")
2. "off-topic" - clearly unrelated to the Ra Material, spirituality or consciousness (recipes, sports, \
coding help, math problems, news, weather)
3. "quote-search" - explicitly asks for Ra's exact words or a passage
4. "practical" - wants actionable guidance ("how do I", "steps to", "practice")
5. "comparative" - relates Ra to other traditions or teachers
6. "meta" - asks about this assistant or what can be explored
7. "conceptual" - anything else about the teachings"""

OFF_TOPIC_MESSAGE = (
    "That's outside my focus on the Ra Material, but I'd be happy to explore any Law of One "
    "topics with you. Is there something about consciousness, spiritual evolution, or Ra's "
    "teachings you're curious about?"
)


def language_instruction(target_language: str) -> str:
    """Respond-in-language block, empty for English or unsupported codes."""

    code = (target_language or "en").lower()
    if code == "en" or code not in LANGUAGE_NAMES:
        return ""
    name = LANGUAGE_NAMES[code]
    return (
        f"\n\nIMPORTANT: Respond in {name}. Write your explanations and connecting text in "
        f"{name}. Quote content will be provided in the appropriate language."
    )


def build_context_from_quotes(quotes: Sequence[Quote]) -> str:
    return "\n\n".join(
        f'[{i}] "{q.text}" - {q.reference} ({count_sentences(q.text)} sentences)'
        for i, q in enumerate(quotes, start=1)
    )


def _history_messages(history: Sequence[ChatMessage]) -> list[dict[str, str]]:
    return [{"role": m.role, "content": m.content} for m in history]


def build_initial_messages(
    message: str, recent_history: Sequence[ChatMessage], target_language: str
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": INITIAL_RESPONSE_PROMPT + language_instruction(target_language)},
        *_history_messages(recent_history),
        {"role": "user", "content": message},
    ]


def build_continuation_messages(
    message: str,
    recent_history: Sequence[ChatMessage],
    initial_paragraph: str,
    quotes: Sequence[Quote],
    target_language: str,
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": CONTINUATION_PROMPT + language_instruction(target_language)},
        *_history_messages(recent_history),
        {"role": "user", "content": message},
        {"role": "assistant", "content": initial_paragraph},
        {
            "role": "user",
            "content": (
                f"Here are relevant passages:\n\n{build_context_from_quotes(quotes)}\n\n"
                "Continue your answer, using {{QUOTE:N}} format to include quotes."
            ),
        },
    ]


def build_quote_search_messages(
    message: str,
    recent_history: Sequence[ChatMessage],
    quotes: Sequence[Quote],
    target_language: str,
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": QUOTE_SEARCH_PROMPT + language_instruction(target_language)},
        *_history_messages(recent_history),
        {
            "role": "user",
            "content": (
                f"{message}\n\nHere are relevant passages:\n\n{build_context_from_quotes(quotes)}"
                "\n\nRespond to the user, using {{QUOTE:N}} format to include quotes."
            ),
        },
    ]


def build_intent_messages(
    message: str, recent_history: Sequence[ChatMessage]
) -> list[dict[str, str]]:
    recent_topics = [m.content[:80] for m in recent_history if m.role == "user"][-2:]
    context = ""
    if recent_topics:
        context = "RECENT TOPICS: " + " | ".join(recent_topics) + "\n\n"
    return [
        {"role": "system", "content": INTENT_PROMPT},
        {"role": "user", "content": f"{context}MESSAGE: {message}"},
    ]
