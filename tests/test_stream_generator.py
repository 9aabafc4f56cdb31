"""
Tests for server-side answer generation.

The model and the search index are replaced by in-memory fakes; every event
sent to the live reader must also be in the response cache, in order.
"""

import asyncio
from typing import Optional

from quotecast.core.config import RetryPolicies, Settings
from quotecast.core.retry import CircuitBreakerRegistry, RetryConfig
from quotecast.schemas.chat import ChatMessage, ChatRequest, Quote
from quotecast.services.prompts import INTENT_PROMPT, OFF_TOPIC_MESSAGE, SUGGESTION_PROMPT
from quotecast.services.response_cache import MemoryResponseCache
from quotecast.services.stream_generator import (
    ChatStreamGenerator,
    EventSink,
    detect_mode,
    quoted_text,
)
from quotecast.services.suggestions import FALLBACK_SUGGESTIONS

FAST_RETRY = RetryConfig(max_retries=1, initial_delay=0.0, jitter=0.0, timeout=5.0)
SETTINGS = Settings(
    retry=RetryPolicies(
        embedding=FAST_RETRY,
        search=FAST_RETRY,
        completion=FAST_RETRY,
        suggestions=FAST_RETRY,
        intent=FAST_RETRY,
    )
)

QUOTES = [
    Quote(text="All is one. Love is the way.", reference="Ra 1.7", url="https://example.org/1/7"),
    Quote(text="Questioner: What is love? Ra: I am Ra. Love is all.", reference="Ra 2.1"),
]


class FakeLLM:
    def __init__(
        self,
        deltas: list[str],
        initial: str = "Love is the key.",
        suggestions: str = '{"suggestions": ["What is harvest?", "Who is Ra?", "Why love?"]}',
        embed_error: Optional[Exception] = None,
        stream_error: Optional[Exception] = None,
        suggestion_error: Optional[Exception] = None,
        intent_reply: str = '{"intent": "conceptual"}',
        intent_error: Optional[Exception] = None,
    ):
        self.deltas = deltas
        self.initial = initial
        self.suggestions = suggestions
        self.embed_error = embed_error
        self.stream_error = stream_error
        self.suggestion_error = suggestion_error
        self.intent_reply = intent_reply
        self.intent_error = intent_error
        self.intent_calls = 0
        self.embedded: list[str] = []
        self.stream_messages: list[list[dict]] = []

    async def complete(self, messages, *, model=None, reasoning_effort=None) -> str:
        if messages[0]["content"] == INTENT_PROMPT:
            self.intent_calls += 1
            if self.intent_error is not None:
                raise self.intent_error
            return self.intent_reply
        if messages[0]["content"] == SUGGESTION_PROMPT:
            if self.suggestion_error is not None:
                raise self.suggestion_error
            return self.suggestions
        return self.initial

    async def stream(self, messages, *, model=None, reasoning_effort=None):
        self.stream_messages.append(list(messages))
        for delta in self.deltas:
            yield delta
        if self.stream_error is not None:
            raise self.stream_error

    async def embed(self, text: str) -> list[float]:
        self.embedded.append(text)
        if self.embed_error is not None:
            raise self.embed_error
        return [0.1, 0.2, 0.3]


class FakeSearch:
    def __init__(self, quotes: list[Quote], confederation_error: Optional[Exception] = None):
        self.quotes = quotes
        self.confederation_error = confederation_error
        self.calls: list[tuple[int, Optional[str]]] = []

    async def search(self, vector, top_k, namespace=None) -> list[Quote]:
        self.calls.append((top_k, namespace))
        if namespace and self.confederation_error is not None:
            raise self.confederation_error
        return list(self.quotes)


def _run(llm: FakeLLM, search: FakeSearch, request: ChatRequest, response_id: str = "r-1"):
    cache = MemoryResponseCache()
    generator = ChatStreamGenerator(llm, search, cache, CircuitBreakerRegistry(), SETTINGS)
    sink = EventSink(response_id, cache)
    asyncio.run(generator.generate(request, response_id, sink))
    return sink.events, cache


def _kinds(events) -> list[str]:
    return [e.event for e in events]


class TestModeDetection:
    """Test detect_mode / quoted_text."""

    def test_double_quotes(self) -> None:
        assert quoted_text('Where does Ra say "all is one"?') == "all is one"
        assert detect_mode('Where does Ra say "all is one"?') == "quote-search"

    def test_single_quotes_need_word_boundaries(self) -> None:
        """Apostrophes are not quotes."""
        assert detect_mode("What's the harvest? It's confusing") == "standard"
        assert quoted_text("Find 'the one infinite creator' please") == "the one infinite creator"

    def test_quote_keyword(self) -> None:
        assert detect_mode("Give me a quote about love") == "quote-search"
        assert detect_mode("What is love?") == "standard"


class TestGeneration:
    """Test event sequences produced by ChatStreamGenerator.generate."""

    def test_quote_search_sequence(self) -> None:
        """session, meta, chunks, suggestions, done; search uses the quoted text."""
        llm = FakeLLM(["Here it is: ", "{{QUO", "TE:1}}", " Enjoy."])
        search = FakeSearch(QUOTES)
        request = ChatRequest(message='Find "all is one"')

        events, cache = _run(llm, search, request)

        assert _kinds(events) == ["session", "meta", "chunk", "chunk", "chunk", "suggestions", "done"]
        assert events[0].data == {"responseId": "r-1"}
        assert events[1].data["mode"] == "quote-search"
        assert [q["reference"] for q in events[1].data["quotes"]] == ["Ra 1.7", "Ra 2.1"]
        assert events[2].data == {"type": "text", "content": "Here it is: "}
        assert events[3].data["type"] == "quote"
        assert events[3].data["reference"] == "Ra 1.7"
        assert events[4].data == {"type": "text", "content": " Enjoy."}
        assert events[5].data == {"items": ["What is harvest?", "Who is Ra?", "Why love?"]}
        assert llm.embedded == ["all is one"]

    def test_standard_sequence(self) -> None:
        """The opening paragraph is sent before search, and search uses it."""
        llm = FakeLLM(["More detail {{QUOTE:2:s2:s3}}"])
        search = FakeSearch(QUOTES)
        request = ChatRequest(message="What is love?")

        events, _ = _run(llm, search, request)

        assert _kinds(events) == ["session", "chunk", "meta", "chunk", "chunk", "suggestions", "done"]
        assert events[1].data == {"type": "text", "content": "Love is the key.\n\n"}
        assert events[2].data["mode"] == "standard"
        assert events[4].data["text"] == "...\n\nRa: I am Ra. Love is all."
        assert llm.embedded == ["Love is the key."]

    def test_cache_matches_live_events(self) -> None:
        """The recoverable record is exactly what was streamed."""
        events, cache = _run(FakeLLM(["A {{QUOTE:1}} B"]), FakeSearch(QUOTES), ChatRequest(message="Why?"))

        cached = cache.get("r-1")
        assert cached is not None
        assert cached.complete is True
        assert [(c.event, c.data) for c in cached.events] == [(e.event, e.data) for e in events]

    def test_embedding_failure_sends_error_event(self) -> None:
        llm = FakeLLM([], embed_error=ValueError("bad input"))
        events, cache = _run(llm, FakeSearch(QUOTES), ChatRequest(message='Find "x"'))

        assert _kinds(events) == ["session", "error"]
        assert events[-1].data == {
            "code": "EMBEDDING_FAILED",
            "message": "I couldn't process your message. Please try again.",
            "retryable": True,
        }
        cached = cache.get("r-1")
        assert cached.complete is False
        assert cached.events[-1].event == "error"

    def test_stream_failure_after_partial_output(self) -> None:
        """Chunks already sent stay in the record, followed by the error."""
        llm = FakeLLM(["Partial answer "], stream_error=ConnectionResetError("reset"))
        events, _ = _run(llm, FakeSearch(QUOTES), ChatRequest(message='Find "x"'))

        assert _kinds(events) == ["session", "meta", "chunk", "error"]
        assert events[-1].data["code"] == "STREAM_FAILED"

    def test_stream_is_not_retried(self) -> None:
        llm = FakeLLM(["x"], stream_error=ConnectionResetError("reset"))
        _run(llm, FakeSearch(QUOTES), ChatRequest(message='Find "x"'))

        assert len(llm.stream_messages) == 1

    def test_suggestion_failure_uses_fallbacks(self) -> None:
        llm = FakeLLM(["Answer."], suggestion_error=ValueError("no json"))
        events, _ = _run(llm, FakeSearch(QUOTES), ChatRequest(message="What is love?"))

        assert _kinds(events)[-2:] == ["suggestions", "done"]
        assert events[-2].data["items"] == FALLBACK_SUGGESTIONS["conceptual"]

    def test_malformed_suggestions_padded(self) -> None:
        llm = FakeLLM(["Answer."], suggestions='{"suggestions": ["Only one?"]}')
        events, _ = _run(llm, FakeSearch(QUOTES), ChatRequest(message='Find "x"'))

        items = events[-2].data["items"]
        assert items[0] == "Only one?"
        assert len(items) == 3

    def test_confederation_failure_is_ignored(self) -> None:
        search = FakeSearch(QUOTES, confederation_error=ValueError("namespace missing"))
        request = ChatRequest(message='Find "x"', include_confederation=True)

        events, _ = _run(FakeLLM(["ok"]), search, request)

        assert _kinds(events)[-1] == "done"
        assert (SETTINGS.search.confederation_top_k, "confederation") in search.calls

    def test_history_is_forwarded(self) -> None:
        """Only the most recent history turns reach the model."""
        history = [
            ChatMessage(role="user" if i % 2 == 0 else "assistant", content=f"turn {i}") for i in range(10)
        ]
        llm = FakeLLM(["ok"])
        _run(llm, FakeSearch(QUOTES), ChatRequest(message='Find "x"', history=history))

        contents = [m["content"] for m in llm.stream_messages[0]]
        assert "turn 9" in contents
        assert "turn 3" not in contents


class TestIntentRouting:
    """Test intent classification and the off-topic redirect."""

    def test_off_topic_redirect(self) -> None:
        """No search, no streaming: one fixed chunk, fixed suggestions, done."""
        llm = FakeLLM(["never streamed"], intent_reply='{"intent": "off-topic"}')
        search = FakeSearch(QUOTES)

        events, cache = _run(llm, search, ChatRequest(message="Best chocolate cake recipe?"))

        assert _kinds(events) == ["session", "meta", "chunk", "suggestions", "done"]
        assert events[1].data["quotes"] == []
        assert events[1].data["intent"] == "off-topic"
        assert events[2].data == {"type": "text", "content": OFF_TOPIC_MESSAGE}
        assert events[3].data["items"] == FALLBACK_SUGGESTIONS["off-topic"]
        assert llm.embedded == []
        assert llm.stream_messages == []
        assert search.calls == []
        assert cache.get("r-1").complete is True

    def test_classified_intent_reaches_meta_and_fallbacks(self) -> None:
        llm = FakeLLM(
            ["Try this."],
            intent_reply='```json\n{"intent": "practical"}\n```',
            suggestion_error=ValueError("no json"),
        )

        events, _ = _run(llm, FakeSearch(QUOTES), ChatRequest(message="How do I start?"))

        meta = next(e for e in events if e.event == "meta")
        assert meta.data["mode"] == "standard"
        assert meta.data["intent"] == "practical"
        assert events[-2].data["items"] == FALLBACK_SUGGESTIONS["practical"]

    def test_classifier_failure_falls_back_to_conceptual(self) -> None:
        llm = FakeLLM(["Answer."], intent_error=ConnectionResetError("reset"))

        events, _ = _run(llm, FakeSearch(QUOTES), ChatRequest(message="What is love?"))

        assert _kinds(events)[-1] == "done"
        meta = next(e for e in events if e.event == "meta")
        assert meta.data["intent"] == "conceptual"
        assert llm.intent_calls == 2

    def test_unknown_intent_is_conceptual(self) -> None:
        llm = FakeLLM(["Answer."], intent_reply='{"intent": "weather"}')

        events, _ = _run(llm, FakeSearch(QUOTES), ChatRequest(message="What is love?"))

        assert next(e for e in events if e.event == "meta").data["intent"] == "conceptual"

    def test_classified_quote_search_uses_quote_search_flow(self) -> None:
        llm = FakeLLM(["{{QUOTE:1}}"], intent_reply='{"intent": "quote-search"}')

        events, _ = _run(llm, FakeSearch(QUOTES), ChatRequest(message="Where does Ra talk about love?"))

        assert _kinds(events)[:2] == ["session", "meta"]
        assert events[1].data["mode"] == "quote-search"
        assert llm.embedded == ["Where does Ra talk about love?"]

    def test_quoted_message_skips_classification(self) -> None:
        llm = FakeLLM(["ok"])

        _run(llm, FakeSearch(QUOTES), ChatRequest(message='Find "all is one"'))

        assert llm.intent_calls == 0


class TestBackgroundTask:
    def test_generation_finishes_without_a_reader(self) -> None:
        """Nobody drains the queue, yet the response completes and is cached."""
        cache = MemoryResponseCache()
        generator = ChatStreamGenerator(
            FakeLLM(["A {{QUOTE:1}}"]), FakeSearch(QUOTES), cache, CircuitBreakerRegistry(), SETTINGS
        )

        async def scenario() -> asyncio.Queue:
            queue = generator.start(ChatRequest(message='Find "x"'), "r-bg")
            for _ in range(200):
                if generator.active_tasks == 0:
                    break
                await asyncio.sleep(0)
            return queue

        queue = asyncio.run(scenario())

        assert generator.active_tasks == 0
        assert cache.get("r-bg").complete is True
        drained = []
        while not queue.empty():
            drained.append(queue.get_nowait())
        assert drained[-1] is None
        assert [e.event for e in drained[:-1]] == [e.event for e in cache.get("r-bg").events]

    def test_shutdown_cancels_in_flight(self) -> None:
        class Hanging(FakeLLM):
            async def embed(self, text: str) -> list[float]:
                await asyncio.Event().wait()
                return []

        cache = MemoryResponseCache()
        generator = ChatStreamGenerator(
            Hanging([]), FakeSearch(QUOTES), cache, CircuitBreakerRegistry(), SETTINGS
        )

        async def scenario() -> None:
            generator.start(ChatRequest(message='Find "x"'), "r-hang")
            await asyncio.sleep(0)
            assert generator.active_tasks == 1
            await generator.shutdown()

        asyncio.run(scenario())
        assert generator.active_tasks == 0

