"""
Client-side consumer of the chat event stream.

State machine::

    IDLE -> STREAMING -> DONE
                      -> ERRORED            (non-2xx, or nothing to show)
                      -> RECOVERING -> DONE | ERRORED

A failed stream (network error, stale cancellation, or an ``error`` event)
gets exactly one recovery attempt against the server cache. Recovery counts
only if the cache holds at least one ``chunk``; the display is then reset and
every cached event is replayed through the same path as live events. If
recovery is not possible, content already shown is kept with a short
"may be incomplete" notice, and only a response with no content at all ends
in a visible error.

Cancellations the user caused (``cancel()``, ``reset()``, a newer ``send()``)
are silent.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Literal, Optional

from pydantic import ValidationError as PydanticValidationError

from quotecast.cli.cancellation import CancellationToken, CancelReason
from quotecast.cli.client import AsyncAPIClient, HTTPStatusError, NetworkError, StreamError
from quotecast.cli.visibility import VisibilityMonitor
from quotecast.core.config import ConversationConfig, StreamRecoveryConfig
from quotecast.core.logger import get_logger
from quotecast.schemas.chat import (
    CachedEvent,
    ChatMessage,
    ErrorEventData,
    MetaEventData,
    Quote,
    QuoteChunkData,
    SuggestionsEventData,
    TextChunkData,
)
from quotecast.services.sse import SSEEvent, SSEParser

logger = get_logger("quotecast.cli.stream_consumer")

GENERIC_ERROR_MESSAGE = "I apologize, but I encountered an error. Please try again."
INCOMPLETE_NOTICE = "\n\n(This response may be incomplete. The connection was interrupted.)"
HISTORY_SEND_LIMIT = 20


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    RECOVERING = "recovering"
    DONE = "done"
    ERRORED = "errored"


@dataclass(frozen=True)
class AnimationChunk:
    id: str
    type: Literal["text", "quote"]
    content: str = ""
    quote: Optional[Quote] = None


ChunkCallback = Callable[[AnimationChunk], None]


class ChatStreamConsumer:
    def __init__(
        self,
        client: AsyncAPIClient,
        monitor: Optional[VisibilityMonitor] = None,
        recovery: Optional[StreamRecoveryConfig] = None,
        conversation: Optional[ConversationConfig] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.client = client
        self.recovery = recovery or StreamRecoveryConfig()
        self.monitor = monitor or VisibilityMonitor(self.recovery)
        self.conversation = conversation or ConversationConfig()
        self._sleep = sleep

        self.state = StreamState.IDLE
        self.messages: list[ChatMessage] = []
        self.suggestions: list[str] = []
        self.error_message: Optional[str] = None

        self._token: Optional[CancellationToken] = None
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._reset_response_state()
        self.response_id: Optional[str] = None

    # ------------------------------------------------------------------
    # per-response state

    def _reset_response_state(self) -> None:
        self.quotes: list[Quote] = []
        self.chunks: list[AnimationChunk] = []
        self.quote_count = 0
        self.response_length = 0
        self._chunk_counter = 0
        self._done_seen = False

    @property
    def response_text(self) -> str:
        return "".join(c.content for c in self.chunks if c.type == "text")

    def _append_message(self, message: ChatMessage) -> None:
        self.messages.append(message)
        limit = self.conversation.max_conversation_history
        if len(self.messages) > limit:
            self.messages = self.messages[-limit:]

    def _emit(self, chunk: AnimationChunk, on_chunk: Optional[ChunkCallback]) -> None:
        self.chunks.append(chunk)
        if on_chunk is not None:
            on_chunk(chunk)

    # ------------------------------------------------------------------
    # event handling, shared by live reads and replays

    def handle_event(
        self, event: SSEEvent, on_chunk: Optional[ChunkCallback] = None, *, replay: bool = False
    ) -> None:
        """Apply one event. Raises StreamError for a live ``error`` event."""

        kind = event.event
        data = event.data

        if kind == "session":
            response_id = data.get("responseId")
            if isinstance(response_id, str) and response_id:
                self.response_id = response_id
        elif kind == "meta":
            try:
                self.quotes = list(MetaEventData.model_validate(data).quotes)
            except PydanticValidationError:
                logger.debug("invalid meta data: %s", data)
        elif kind == "chunk":
            self._handle_chunk(data, on_chunk)
        elif kind == "suggestions":
            self._apply_suggestions(data)
        elif kind == "done":
            self._done_seen = True
        elif kind == "error":
            if replay:
                return
            try:
                error = ErrorEventData.model_validate(data)
            except PydanticValidationError:
                raise StreamError("An error occurred") from None
            raise StreamError(error.message or "An error occurred", error.code, error.retryable)
        else:
            logger.debug("ignoring unknown event %s", kind)

    def _handle_chunk(self, data: dict[str, Any], on_chunk: Optional[ChunkCallback]) -> None:
        chunk_type = data.get("type")
        try:
            if chunk_type == "text":
                text = TextChunkData.model_validate(data)
                self._chunk_counter += 1
                self.response_length += len(text.content)
                self._emit(
                    AnimationChunk(id=f"chunk-{self._chunk_counter}", type="text", content=text.content),
                    on_chunk,
                )
            elif chunk_type == "quote":
                quoted = QuoteChunkData.model_validate(data)
                self._chunk_counter += 1
                self.quote_count += 1
                quote = Quote(text=quoted.text, reference=quoted.reference, url=quoted.url)
                self._emit(
                    AnimationChunk(id=f"chunk-{self._chunk_counter}", type="quote", quote=quote),
                    on_chunk,
                )
            else:
                logger.debug("invalid chunk data: %s", data)
        except PydanticValidationError:
            logger.debug("invalid chunk data: %s", data)

    def _apply_suggestions(self, data: dict[str, Any]) -> None:
        try:
            self.suggestions = list(SuggestionsEventData.model_validate(data).items)
        except PydanticValidationError:
            logger.debug("invalid suggestions data: %s", data)

    def replay(
        self,
        events: Iterable[CachedEvent],
        on_chunk: Optional[ChunkCallback] = None,
        on_reset: Optional[Callable[[], None]] = None,
    ) -> None:
        """Reset the display state and re-apply cached events."""
        self._reset_response_state()
        if on_reset is not None:
            on_reset()
        for cached in events:
            self.handle_event(SSEEvent(cached.event, dict(cached.data)), on_chunk, replay=True)

    # ------------------------------------------------------------------
    # sending

    def _build_payload(
        self, content: str, thinking_mode: bool, target_language: str, include_confederation: bool
    ) -> dict[str, Any]:
        history = [m.model_dump() for m in self.messages[-HISTORY_SEND_LIMIT:]]
        return {
            "message": content,
            "history": history,
            "thinkingMode": thinking_mode,
            "targetLanguage": target_language,
            "includeConfederation": include_confederation,
        }

    async def _read_stream(self, payload: dict[str, Any], on_chunk: Optional[ChunkCallback]) -> None:
        async with self.client.stream_chat(payload) as response:
            parser = SSEParser()
            async for text in response.aiter_text():
                self.monitor.notify_progress()
                for event in parser.feed(text):
                    self.handle_event(event, on_chunk)
                    if self._done_seen:
                        return
        raise NetworkError("stream ended before completion")

    async def send(
        self,
        content: str,
        on_chunk: Optional[ChunkCallback] = None,
        on_reset: Optional[Callable[[], None]] = None,
        *,
        thinking_mode: bool = False,
        target_language: str = "en",
        include_confederation: bool = False,
    ) -> StreamState:
        """Send ``content`` and consume the answer; returns the final state."""

        if self._token is not None:
            self._token.cancel(CancelReason.SUPERSEDED)
        self._cancel_poll()

        token = CancellationToken()
        self._token = token
        payload = self._build_payload(content, thinking_mode, target_language, include_confederation)

        self._append_message(ChatMessage(role="user", content=content))
        self._reset_response_state()
        self.response_id = None
        self.suggestions = []
        self.error_message = None
        self.state = StreamState.STREAMING
        self.monitor.register(token)
        self.monitor.clear_backgrounded()

        read = asyncio.create_task(self._read_stream(payload, on_chunk))
        token.add_callback(lambda reason: read.cancel())
        try:
            await asyncio.wait({read})
        except asyncio.CancelledError:
            token.cancel(CancelReason.USER)
            read.cancel()
            raise

        if self._token is not token:
            # superseded: the newer send owns the state now
            return self.state

        failure: Optional[BaseException]
        if read.cancelled():
            if token.reason is None or token.reason.is_silent:
                self.monitor.register(None)
                self.state = StreamState.IDLE
                return self.state
            failure = NetworkError("stream stalled after resume")
        else:
            failure = read.exception()

        if failure is None:
            self.monitor.register(None)
            self._finalize()
            self.state = StreamState.DONE
            return self.state

        self.monitor.register(None)
        if isinstance(failure, HTTPStatusError):
            logger.warning("chat request rejected: %s", failure.message)
            return self._fail(failure.user_friendly_message())
        if not isinstance(failure, (NetworkError, StreamError)):
            logger.error("unexpected stream failure: %r", failure)

        return await self._handle_failure(failure, token, on_chunk, on_reset)

    async def _handle_failure(
        self,
        failure: BaseException,
        token: CancellationToken,
        on_chunk: Optional[ChunkCallback],
        on_reset: Optional[Callable[[], None]],
    ) -> StreamState:
        logger.info("stream failed (%s), attempting recovery", failure)
        self.state = StreamState.RECOVERING

        response_id = self.response_id
        cached = await self.client.fetch_recovery(response_id) if response_id else None
        if self._token is not token:
            return self.state
        if token.cancelled:
            self.state = StreamState.IDLE
            return self.state

        if cached is not None and cached.has_content():
            self.replay(cached.events, on_chunk, on_reset)
            self._finalize()
            self.state = StreamState.DONE
            logger.info("recovered %s cached events for %s", len(cached.events), response_id)
            if not cached.has_suggestions() and not cached.complete:
                self._poll_task = asyncio.create_task(self._poll_suggestions(response_id, token))
            return self.state

        if self.chunks:
            self._emit(
                AnimationChunk(
                    id=f"chunk-{self._chunk_counter + 1}", type="text", content=INCOMPLETE_NOTICE
                ),
                on_chunk,
            )
            self._chunk_counter += 1
            self._finalize()
            self.state = StreamState.DONE
            return self.state

        if isinstance(failure, StreamError) and failure.message:
            return self._fail(failure.message)
        return self._fail(GENERIC_ERROR_MESSAGE)

    def _fail(self, message: str) -> StreamState:
        self.error_message = message
        self._append_message(ChatMessage(role="assistant", content=message))
        self.state = StreamState.ERRORED
        return self.state

    def _finalize(self) -> None:
        self._append_message(ChatMessage(role="assistant", content=self.response_text))

    async def _poll_suggestions(self, response_id: Optional[str], token: CancellationToken) -> None:
        if not response_id:
            return
        for attempt in range(1, self.recovery.suggestion_retry_max_attempts + 1):
            await self._sleep(self.recovery.suggestion_retry_delay)
            if self._token is not token or self.response_id != response_id:
                return
            cached = await self.client.fetch_recovery(response_id)
            if cached is None:
                continue
            for event in cached.events:
                if event.event == "suggestions":
                    self._apply_suggestions(event.data)
                    logger.debug("suggestions arrived on poll %s", attempt)
                    return
            if cached.complete:
                return

    def _cancel_poll(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None

    # ------------------------------------------------------------------
    # user actions

    def cancel(self) -> None:
        """Stop the in-flight request silently."""
        if self._token is not None:
            self._token.cancel(CancelReason.USER)

    def reset(self) -> None:
        """Start a new conversation."""
        self.cancel()
        self._cancel_poll()
        self.monitor.register(None)
        self.messages = []
        self.suggestions = []
        self.response_id = None
        self.error_message = None
        self._reset_response_state()
        self.state = StreamState.IDLE

    async def aclose(self) -> None:
        self.cancel()
        task = self._poll_task
        self._cancel_poll()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        self.monitor.register(None)
