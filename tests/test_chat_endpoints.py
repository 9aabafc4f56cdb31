"""
API tests for /api/chat and /api/chat/recover.

The app is built around a container of in-memory fakes, so no model or search
provider is contacted.
"""

import asyncio
import re
import uuid

import pytest
from fastapi.testclient import TestClient

from quotecast.api.routes_chat import _event_stream
from quotecast.core.config import RateLimitConfig, Settings
from quotecast.main import create_app
from quotecast.schemas.chat import Quote
from quotecast.services.container import build_container
from quotecast.services.prompts import SUGGESTION_PROMPT
from quotecast.services.response_cache import MemoryResponseCache
from quotecast.services.sse import KEEP_ALIVE, SSEEvent, parse_sse

QUOTES = [Quote(text="All is one.", reference="Ra 1.7", url="https://example.org/1/7")]


class ScriptedLLM:
    def __init__(self, deltas=("Here: ", "{{QUOTE:1}}", " done.")):
        self.deltas = list(deltas)

    async def complete(self, messages, *, model=None, reasoning_effort=None) -> str:
        if messages[0]["content"] == SUGGESTION_PROMPT:
            return '{"suggestions": ["One?", "Two?", "Three?"]}'
        return "Opening paragraph."

    async def stream(self, messages, *, model=None, reasoning_effort=None):
        for delta in self.deltas:
            yield delta

    async def embed(self, text: str) -> list[float]:
        return [0.0, 1.0]


class StaticSearch:
    async def search(self, vector, top_k, namespace=None) -> list[Quote]:
        return list(QUOTES)


def _client(settings: Settings = None) -> TestClient:
    container = build_container(
        settings or Settings(),
        llm=ScriptedLLM(),
        search=StaticSearch(),
        cache=MemoryResponseCache(),
    )
    return TestClient(create_app(container))


def _events(raw: str):
    events, rest = parse_sse(raw)
    assert rest == ""
    return events


class TestChatStream:
    """Test POST /api/chat success path."""

    def test_streams_events_with_sse_headers(self) -> None:
        client = _client()
        resp = client.post("/api/chat", json={"message": 'Find "all is one"'})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        assert resp.headers["x-accel-buffering"] == "no"

        events = _events(resp.text)
        assert [e.event for e in events] == [
            "session",
            "meta",
            "chunk",
            "chunk",
            "chunk",
            "suggestions",
            "done",
        ]
        response_id = events[0].data["responseId"]
        assert uuid.UUID(response_id).version == 4
        assert events[3].data == {
            "type": "quote",
            "text": "All is one.",
            "reference": "Ra 1.7",
            "url": "https://example.org/1/7",
        }

    def test_recover_returns_streamed_events(self) -> None:
        """Everything sent live can be fetched again by responseId."""
        client = _client()
        live = _events(client.post("/api/chat", json={"message": "What is love?"}).text)
        response_id = live[0].data["responseId"]

        resp = client.get("/api/chat/recover", params={"id": response_id})

        assert resp.status_code == 200
        body = resp.json()
        assert body["complete"] is True
        assert [(e["event"], e["data"]) for e in body["events"]] == [(e.event, e.data) for e in live]

    def test_optional_fields_accepted(self) -> None:
        client = _client()
        resp = client.post(
            "/api/chat",
            json={
                "message": "What is love?",
                "history": [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
                "thinkingMode": True,
                "targetLanguage": "ES",
                "includeConfederation": True,
            },
        )

        assert resp.status_code == 200
        assert _events(resp.text)[-1].event == "done"


class TestChatValidation:
    """Test 400 responses and their messages."""

    @pytest.mark.parametrize(
        "body, message",
        [
            ({}, "Message is required and must be a string"),
            ({"message": 42}, "Message is required and must be a string"),
            ({"message": ""}, "Message cannot be empty"),
            ({"message": "x" * 5001}, "Message too long. Maximum 5000 characters."),
            ({"message": "hi", "history": "nope"}, "History must be an array"),
            (
                {"message": "hi", "history": [{"role": "user", "content": "a"}] * 21},
                "History too long. Maximum 20 messages.",
            ),
            ({"message": "hi", "history": ["text"]}, "Invalid history format"),
            ({"message": "hi", "history": [{"role": "system", "content": "a"}]}, "Invalid message role in history"),
            ({"message": "hi", "history": [{"role": "user", "content": ""}]}, "Invalid message content in history"),
            (
                {"message": "hi", "history": [{"role": "user", "content": "y" * 10001}]},
                "Message in history too long",
            ),
        ],
    )
    def test_invalid_bodies(self, body, message: str) -> None:
        resp = _client().post("/api/chat", json=body)

        assert resp.status_code == 400
        assert resp.json() == {"error": message}

    def test_non_json_body(self) -> None:
        resp = _client().post(
            "/api/chat", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert resp.status_code == 400
        assert "error" in resp.json()


class TestChatRateLimit:
    """Test 429 responses and rate limit headers."""

    SETTINGS = Settings(
        rate_limit=RateLimitConfig(max_requests=2, window_seconds=60),
        recovery_rate_limit=RateLimitConfig(max_requests=1, window_seconds=60),
    )

    def test_third_request_is_rejected(self) -> None:
        client = _client(self.SETTINGS)
        for _ in range(2):
            assert client.post("/api/chat", json={"message": "hi"}).status_code == 200

        resp = client.post("/api/chat", json={"message": "hi"})

        assert resp.status_code == 429
        body = resp.json()
        assert body["error"] == "Too many requests. Please wait before trying again."
        assert 1 <= body["retryAfter"] <= 60
        assert resp.headers["X-RateLimit-Limit"] == "2"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert resp.headers["Retry-After"] == str(body["retryAfter"])
        assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$", resp.headers["X-RateLimit-Reset"])

    def test_limit_is_per_client_ip(self) -> None:
        client = _client(self.SETTINGS)
        for _ in range(2):
            client.post("/api/chat", json={"message": "hi"}, headers={"X-Forwarded-For": "10.0.0.1"})

        blocked = client.post("/api/chat", json={"message": "hi"}, headers={"X-Forwarded-For": "10.0.0.1"})
        other = client.post(
            "/api/chat", json={"message": "hi"}, headers={"X-Forwarded-For": "10.0.0.2, 172.16.0.1"}
        )

        assert blocked.status_code == 429
        assert other.status_code == 200

    def test_rate_limit_checked_before_validation(self) -> None:
        client = _client(self.SETTINGS)
        client.post("/api/chat", json={})
        client.post("/api/chat", json={})

        assert client.post("/api/chat", json={}).status_code == 429

    def test_recover_has_its_own_limit(self) -> None:
        client = _client(self.SETTINGS)
        client.get("/api/chat/recover", params={"id": str(uuid.uuid4())})

        resp = client.get("/api/chat/recover", params={"id": str(uuid.uuid4())})

        assert resp.status_code == 429
        assert resp.json()["error"] == "Too many requests"
        assert "Retry-After" in resp.headers


class TestRecoverEndpoint:
    """Test GET /api/chat/recover error cases."""

    def test_missing_id(self) -> None:
        resp = _client().get("/api/chat/recover")

        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid or missing id parameter"}

    def test_malformed_id(self) -> None:
        resp = _client().get("/api/chat/recover", params={"id": "../../etc/passwd"})

        assert resp.status_code == 400

    def test_unknown_id(self) -> None:
        resp = _client().get("/api/chat/recover", params={"id": str(uuid.uuid4())})

        assert resp.status_code == 404
        assert resp.json() == {"error": "Response not found"}


class TestServiceContainer:
    """Test build_container keeps injected collaborators."""

    def test_empty_injected_cache_is_kept(self, tmp_path) -> None:
        """An empty cache is falsy but must still be the one used."""
        cache = MemoryResponseCache()
        settings = Settings(cache_backend="sqlite", cache_db_path=str(tmp_path / "unused.db"))

        container = build_container(settings, llm=ScriptedLLM(), search=StaticSearch(), cache=cache)

        assert container.cache is cache
        assert container.generator.cache is cache
        assert not (tmp_path / "unused.db").exists()

    def test_streamed_events_land_in_injected_cache(self) -> None:
        cache = MemoryResponseCache()
        container = build_container(Settings(), llm=ScriptedLLM(), search=StaticSearch(), cache=cache)

        resp = TestClient(create_app(container)).post("/api/chat", json={"message": "What is love?"})
        response_id = _events(resp.text)[0].data["responseId"]

        cached = cache.get(response_id)
        assert cached is not None
        assert cached.complete is True


class TestEventStream:
    """Test the queue drain behind the SSE response."""

    def test_heartbeats_do_not_lose_events(self) -> None:
        """Events arriving around heartbeat timeouts are all delivered, in order."""

        async def scenario() -> list[str]:
            queue: asyncio.Queue = asyncio.Queue()

            async def produce() -> None:
                await asyncio.sleep(0.05)
                for i in range(5):
                    await asyncio.sleep(0.012)
                    queue.put_nowait(SSEEvent("chunk", {"type": "text", "content": str(i)}))
                queue.put_nowait(None)

            producer = asyncio.create_task(produce())
            out = [frame async for frame in _event_stream(queue, heartbeat_interval=0.01)]
            await producer
            return out

        frames = asyncio.run(scenario())
        events, rest = parse_sse("".join(f for f in frames if f != KEEP_ALIVE))

        assert rest == ""
        assert [e.data["content"] for e in events] == ["0", "1", "2", "3", "4"]
        assert KEEP_ALIVE in frames

    def test_closing_early_cancels_pending_get(self) -> None:
        async def scenario() -> asyncio.Queue:
            queue: asyncio.Queue = asyncio.Queue()
            stream = _event_stream(queue, heartbeat_interval=0.01)
            assert await stream.__anext__() == KEEP_ALIVE
            await stream.aclose()
            queue.put_nowait(SSEEvent("done", {}))
            await asyncio.sleep(0)
            return queue

        queue = asyncio.run(scenario())

        assert queue.qsize() == 1


def test_health() -> None:
    resp = _client().get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
