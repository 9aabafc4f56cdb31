"""
Server-side answer generation.

Each request runs as its own asyncio task. Events go to two places at once:
the per-response cache (so the answer can be recovered later) and a queue
drained by the HTTP response. The task does not depend on anyone reading the
queue, so a disconnected client does not stop generation or cache writes.

Event order for one response::

    session, [chunk (opening paragraph)], meta, chunk*, [suggestions], done
    session, meta, chunk, suggestions, done      (off-topic redirect)
    session, ..., error          (on failure)
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Any, Awaitable, Callable, Iterable, Literal, Mapping, Optional, TypeVar

from pydantic import BaseModel

from quotecast.core.config import Settings
from quotecast.core.logger import get_logger
from quotecast.core.retry import CircuitBreakerRegistry, RetryConfig, with_retry
from quotecast.schemas.chat import (
    ChatMessage,
    ChatRequest,
    DoneEventData,
    MetaEventData,
    Quote,
    QueryIntent,
    SessionEventData,
    SuggestionsEventData,
    TextChunkData,
)
from quotecast.services import prompts
from quotecast.services.errors import ChatError, ChatErrorCode, create_chat_error, to_error_event_data
from quotecast.services.intent import DEFAULT_INTENT, parse_intent
from quotecast.services.llm import ChatModel
from quotecast.services.quote_markers import MarkerExtractor, Segment
from quotecast.services.response_cache import ResponseCache
from quotecast.services.search import CONFEDERATION_NAMESPACE, PassageSearch
from quotecast.services.sse import SSEEvent
from quotecast.services.suggestions import (
    FALLBACK_SUGGESTIONS,
    build_suggestion_context,
    fallback_suggestions,
    parse_suggestions,
)

logger = get_logger("quotecast.stream_generator")

T = TypeVar("T")

Mode = Literal["quote-search", "standard"]

_DOUBLE_QUOTED = re.compile(r"[\"“]([^\"“”]+)[\"”]")
_SINGLE_QUOTED = re.compile(r"(?<!\w)['‘]([^'‘’]+)['’](?!\w)")
_QUOTE_WORD = re.compile(r"\bquote", re.IGNORECASE)

BREAKER_EMBEDDING = "llm-embedding"
BREAKER_SEARCH = "passage-search"
BREAKER_COMPLETION = "llm-completion"
BREAKER_STREAM = "llm-stream"
BREAKER_SUGGESTIONS = "llm-suggestions"
BREAKER_INTENT = "llm-intent"


def quoted_text(message: str) -> Optional[str]:
    """First quoted span of ``message``, if any."""
    for pattern in (_DOUBLE_QUOTED, _SINGLE_QUOTED):
        match = pattern.search(message)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def detect_mode(message: str) -> Mode:
    if quoted_text(message) is not None or _QUOTE_WORD.search(message):
        return "quote-search"
    return "standard"


class EventSink:
    """Records every event in the cache, then hands it to the live reader."""

    def __init__(
        self,
        response_id: str,
        cache: ResponseCache,
        queue: Optional[asyncio.Queue[Optional[SSEEvent]]] = None,
    ):
        self.response_id = response_id
        self.cache = cache
        self.queue = queue
        self.events: list[SSEEvent] = []
        self._cache_error_logged = False

    def send(self, event: str, data: BaseModel | Mapping[str, Any]) -> None:
        if isinstance(data, BaseModel):
            payload = data.model_dump(by_alias=True, mode="json")
        else:
            payload = dict(data)

        try:
            self.cache.append(self.response_id, event, payload)
        except Exception as exc:
            if not self._cache_error_logged:
                self._cache_error_logged = True
                logger.error("cache append failed for %s: %s", self.response_id, exc)

        record = SSEEvent(event, payload)
        self.events.append(record)
        if self.queue is not None:
            self.queue.put_nowait(record)

    def close(self) -> None:
        if self.queue is not None:
            self.queue.put_nowait(None)


class ChatStreamGenerator:
    def __init__(
        self,
        llm: ChatModel,
        search: PassageSearch,
        cache: ResponseCache,
        breakers: CircuitBreakerRegistry,
        settings: Settings,
    ):
        self.llm = llm
        self.search = search
        self.cache = cache
        self.breakers = breakers
        self.settings = settings
        self._tasks: set[asyncio.Task[None]] = set()

    def start(
        self, request: ChatRequest, response_id: str
    ) -> asyncio.Queue[Optional[SSEEvent]]:
        """Start generation in the background; the queue ends with ``None``."""

        queue: asyncio.Queue[Optional[SSEEvent]] = asyncio.Queue()
        sink = EventSink(response_id, self.cache, queue)
        task = asyncio.create_task(self.generate(request, response_id, sink))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return queue

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def generate(self, request: ChatRequest, response_id: str, sink: EventSink) -> None:
        started = time.monotonic()
        sink.send("session", SessionEventData(response_id=response_id))
        try:
            history = request.history
            recent = history[-self.settings.conversation.recent_history_count :]
            turn_count = sum(1 for m in history if m.role == "user") + 1
            intent: QueryIntent = "quote-search"
            if detect_mode(request.message) == "standard":
                intent = await self._classify(request.message, recent)
            logger.info("response %s: intent=%s turn=%s", response_id, intent, turn_count)

            if intent == "off-topic":
                self._off_topic(sink)
                return

            if intent == "quote-search":
                answer = await self._quote_search(request, recent, sink)
            else:
                answer = await self._standard(request, recent, intent, sink)

            items = await self._suggestions(request.message, answer, intent, turn_count)
            if items:
                sink.send("suggestions", SuggestionsEventData(items=items))

            sink.send("done", DoneEventData())
            logger.info(
                "response %s complete in %.2fs (%s events)",
                response_id,
                time.monotonic() - started,
                len(sink.events),
            )
        except Exception as exc:
            logger.exception("chat pipeline failed for %s", response_id)
            sink.send("error", to_error_event_data(exc))
        finally:
            sink.close()

    def _reasoning_effort(self, request: ChatRequest) -> str:
        model = self.settings.model
        return model.thinking_reasoning_effort if request.thinking_mode else model.chat_reasoning_effort

    async def _guarded(
        self, key: str, fn: Callable[[], Awaitable[T]], retry_config: RetryConfig
    ) -> T:
        return await self.breakers.call(
            key, lambda: with_retry(fn, retry_config, operation=key)
        )

    async def _classify(self, message: str, recent: list[ChatMessage]) -> QueryIntent:
        """One cheap model call; any failure means ``conceptual``."""
        model = self.settings.model
        messages = prompts.build_intent_messages(message, recent)
        try:
            content = await self._guarded(
                BREAKER_INTENT,
                lambda: self.llm.complete(
                    messages,
                    model=model.utility_model,
                    reasoning_effort=model.utility_reasoning_effort,
                ),
                self.settings.retry.intent,
            )
        except Exception as exc:
            logger.warning("intent classification failed, using %s: %s", DEFAULT_INTENT, exc)
            return DEFAULT_INTENT
        return parse_intent(content)

    def _off_topic(self, sink: EventSink) -> None:
        sink.send("meta", MetaEventData(quotes=[], intent="off-topic"))
        sink.send("chunk", TextChunkData(content=prompts.OFF_TOPIC_MESSAGE))
        sink.send("suggestions", SuggestionsEventData(items=list(FALLBACK_SUGGESTIONS["off-topic"])))
        sink.send("done", DoneEventData())
        logger.info("response %s redirected as off-topic", sink.response_id)

    async def _find_passages(
        self, text: str, include_confederation: bool
    ) -> list[Quote]:
        retry = self.settings.retry
        search_config = self.settings.search

        try:
            vector = await self._guarded(BREAKER_EMBEDDING, lambda: self.llm.embed(text), retry.embedding)
        except Exception as exc:
            raise create_chat_error(ChatErrorCode.EMBEDDING_FAILED, exc) from exc

        try:
            quotes = await self._guarded(
                BREAKER_SEARCH,
                lambda: self.search.search(vector, search_config.default_top_k),
                retry.search,
            )
        except Exception as exc:
            raise create_chat_error(ChatErrorCode.SEARCH_FAILED, exc) from exc

        if include_confederation:
            try:
                extra = await self._guarded(
                    BREAKER_SEARCH,
                    lambda: self.search.search(
                        vector, search_config.confederation_top_k, CONFEDERATION_NAMESPACE
                    ),
                    retry.search,
                )
            except Exception as exc:
                logger.warning("confederation search failed, continuing without it: %s", exc)
            else:
                seen = {q.reference for q in quotes}
                quotes = quotes + [q for q in extra if q.reference not in seen]

        return quotes

    async def _quote_search(
        self, request: ChatRequest, recent: list[ChatMessage], sink: EventSink
    ) -> str:
        search_text = quoted_text(request.message) or request.message
        quotes = await self._find_passages(search_text, request.include_confederation)
        sink.send("meta", MetaEventData(quotes=quotes, mode="quote-search", intent="quote-search"))

        messages = prompts.build_quote_search_messages(
            request.message, recent, quotes, request.target_language
        )
        return await self._stream_answer(messages, quotes, sink, self._reasoning_effort(request))

    async def _standard(
        self,
        request: ChatRequest,
        recent: list[ChatMessage],
        intent: QueryIntent,
        sink: EventSink,
    ) -> str:
        model = self.settings.model
        messages = prompts.build_initial_messages(request.message, recent, request.target_language)
        try:
            initial = await self._guarded(
                BREAKER_COMPLETION,
                lambda: self.llm.complete(
                    messages,
                    model=model.utility_model,
                    reasoning_effort=model.utility_reasoning_effort,
                ),
                self.settings.retry.completion,
            )
        except Exception as exc:
            raise create_chat_error(ChatErrorCode.STREAM_FAILED, exc) from exc

        if initial:
            sink.send("chunk", TextChunkData(content=f"{initial}\n\n"))
        logger.info("initial paragraph ready (%s chars)", len(initial))

        quotes = await self._find_passages(initial or request.message, request.include_confederation)
        sink.send("meta", MetaEventData(quotes=quotes, mode="standard", intent=intent))

        continuation = prompts.build_continuation_messages(
            request.message, recent, initial, quotes, request.target_language
        )
        rest = await self._stream_answer(continuation, quotes, sink, self._reasoning_effort(request))
        return f"{initial}\n\n{rest}" if initial else rest

    def _emit_segments(self, segments: Iterable[Segment], sink: EventSink) -> None:
        for segment in segments:
            sink.send("chunk", segment.to_chunk())

    async def _stream_answer(
        self,
        messages: list[dict[str, str]],
        quotes: list[Quote],
        sink: EventSink,
        reasoning_effort: str,
    ) -> str:
        extractor = MarkerExtractor(quotes)

        async def consume() -> None:
            async for delta in self.llm.stream(messages, reasoning_effort=reasoning_effort):
                try:
                    segments = extractor.feed(delta)
                except Exception as exc:
                    raise create_chat_error(ChatErrorCode.QUOTE_PROCESSING_FAILED, exc) from exc
                self._emit_segments(segments, sink)

        # never retried: chunks may already be on the wire
        try:
            await self.breakers.call(BREAKER_STREAM, consume)
        except ChatError:
            raise
        except Exception as exc:
            raise create_chat_error(ChatErrorCode.STREAM_FAILED, exc) from exc

        self._emit_segments(extractor.finish(), sink)
        if extractor.markers_dropped:
            logger.info("dropped %s out-of-range markers", extractor.markers_dropped)
        return extractor.full_output

    async def _suggestions(
        self, user_message: str, answer: str, intent: str, turn_count: int
    ) -> list[str]:
        model = self.settings.model
        messages = [
            {"role": "system", "content": prompts.SUGGESTION_PROMPT},
            {
                "role": "user",
                "content": build_suggestion_context(user_message, answer, intent, turn_count),
            },
        ]
        try:
            content = await self._guarded(
                BREAKER_SUGGESTIONS,
                lambda: self.llm.complete(
                    messages,
                    model=model.utility_model,
                    reasoning_effort=model.utility_reasoning_effort,
                ),
                self.settings.retry.suggestions,
            )
            return parse_suggestions(content, intent)
        except Exception as exc:
            error = create_chat_error(ChatErrorCode.SUGGESTIONS_FAILED, exc)
            logger.warning("%s, using fallbacks (intent=%s)", error, intent)
            return fallback_suggestions(intent)
