"""
Unit tests for the CLI HTTP client error handling.

Tests AsyncAPIClient in quotecast/cli/client.py against httpx.MockTransport:
status classification, transport failures, and the single-shot recovery fetch.
"""

import asyncio

import httpx
import pytest

from quotecast.cli.client import (
    AsyncAPIClient,
    HTTPStatusError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    UpstreamError,
    ValidationError,
    classify_status_error,
)


def _client(handler) -> AsyncAPIClient:
    return AsyncAPIClient("http://test", timeout=5, transport=httpx.MockTransport(handler))


async def _open_stream(client: AsyncAPIClient) -> str:
    try:
        async with client.stream_chat({"message": "hi"}) as response:
            return "".join([text async for text in response.aiter_text()])
    finally:
        await client.close()


class TestHTTPClientInitialization:
    def test_client_initialization_defaults(self) -> None:
        """Test client initializes with default values."""
        client = AsyncAPIClient()

        assert client.base_url == "http://127.0.0.1:8000"
        assert client.timeout == 30.0
        asyncio.run(client.close())

    def test_client_context_manager(self) -> None:
        async def scenario() -> None:
            async with AsyncAPIClient("http://example.com:9000", timeout=60.0) as client:
                assert client.base_url == "http://example.com:9000"

        asyncio.run(scenario())


class TestStatusClassification:
    """Test classify_status_error."""

    def test_400_is_validation_error(self) -> None:
        error = classify_status_error(400, '{"error": "History must be an array"}')

        assert isinstance(error, ValidationError)
        assert error.message == "History must be an array"
        assert error.status_code == 400

    def test_429_with_retry_after(self) -> None:
        error = classify_status_error(429, '{"error": "Too many requests.", "retryAfter": 17}')

        assert isinstance(error, RateLimitError)
        assert error.retry_after == 17
        assert error.message == "Too many requests. Please wait 17 seconds."

    def test_429_without_retry_after(self) -> None:
        error = classify_status_error(429, '{"error": "Too many requests"}')

        assert isinstance(error, RateLimitError)
        assert error.retry_after is None
        assert error.message == "Too many requests"

    def test_other_status_is_upstream(self) -> None:
        error = classify_status_error(503, "<html>Service Unavailable</html>")

        assert isinstance(error, UpstreamError)
        assert error.status_code == 503
        assert error.message == "Failed to get response"


class TestStreamChat:
    """Test stream_chat error mapping."""

    def test_success_yields_body(self) -> None:
        body = b"event: done\ndata: {}\n\n"
        client = _client(lambda r: httpx.Response(200, content=body))

        assert asyncio.run(_open_stream(client)) == body.decode()

    def test_status_error_raised_before_body(self) -> None:
        client = _client(lambda r: httpx.Response(400, json={"error": "Message cannot be empty"}))

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(_open_stream(client))

        assert isinstance(exc_info.value, HTTPStatusError)
        assert exc_info.value.user_friendly_message() == "Message cannot be empty"

    def test_connect_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused")

        with pytest.raises(NetworkError) as exc_info:
            asyncio.run(_open_stream(_client(handler)))

        assert "Unable to reach the server" in exc_info.value.user_friendly_message()

    def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out")

        with pytest.raises(RequestTimeoutError):
            asyncio.run(_open_stream(_client(handler)))

    def test_read_error_during_body(self) -> None:
        async def body():
            yield b"event: session\n"
            raise httpx.ReadError("connection reset")

        client = _client(lambda r: httpx.Response(200, content=body()))

        with pytest.raises(NetworkError):
            asyncio.run(_open_stream(client))


class TestFetchRecovery:
    """Test fetch_recovery (single shot, None on any failure)."""

    def _fetch(self, handler):
        client = _client(handler)

        async def scenario():
            try:
                return await client.fetch_recovery("abc")
            finally:
                await client.close()

        return asyncio.run(scenario())

    def test_success(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(
                200,
                json={"events": [{"event": "chunk", "data": {"type": "text", "content": "x"}}], "complete": False},
            )

        cached = self._fetch(handler)

        assert cached is not None
        assert cached.has_content() is True
        assert cached.complete is False
        assert calls[0].url.params["id"] == "abc"

    def test_not_found(self) -> None:
        assert self._fetch(lambda r: httpx.Response(404, json={"error": "Response not found"})) is None

    def test_invalid_body(self) -> None:
        assert self._fetch(lambda r: httpx.Response(200, content=b"not json")) is None
        assert self._fetch(lambda r: httpx.Response(200, json={"events": "nope"})) is None

    def test_transport_error_is_not_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("down")

        assert self._fetch(handler) is None
        assert len(calls) == 1
