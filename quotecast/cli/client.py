"""
HTTP Client for the QuoteCast CLI
Wraps httpx.AsyncClient with unified error handling for the chat stream and
the recovery endpoint.
"""

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from quotecast.core.logger import get_logger
from quotecast.schemas.chat import RecoveryResponse

logger = get_logger("quotecast.cli.client")

_SENSITIVE_HEADERS = ("authorization", "x-api-key")


# ============================================================================
# Error Classes
# ============================================================================


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_text: str = ""):
        self.message = message
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(self.message)

    def user_friendly_message(self) -> str:
        """Returns a user-friendly error message."""
        return self.message


class NetworkError(APIError):
    """The stream itself failed: connection refused, reset, or ended early."""

    def user_friendly_message(self) -> str:
        return (
            f"[ERROR] Unable to reach the server\n\n"
            f"Error: {self.message}\n\n"
            f"Suggestions:\n"
            f"  1. Check that the server is running (quotecast serve)\n"
            f"  2. Check the --api-base option"
        )


class RequestTimeoutError(NetworkError):
    """Request timeout errors."""

    def user_friendly_message(self) -> str:
        return (
            f"[TIMEOUT] Request timed out\n\n"
            f"Error: {self.message}\n\n"
            f"Suggestions:\n"
            f"  1. Check the network connection\n"
            f"  2. Try a larger --timeout"
        )


class HTTPStatusError(APIError):
    """Non-2xx HTTP status."""

    def user_friendly_message(self) -> str:
        return self.message


class ValidationError(HTTPStatusError):
    """400: the request has to change before it can succeed."""


class RateLimitError(HTTPStatusError):
    """429: retry after ``retry_after`` seconds."""

    def __init__(self, message: str, retry_after: Optional[int] = None, response_text: str = ""):
        self.retry_after = retry_after
        super().__init__(message, status_code=429, response_text=response_text)


class UpstreamError(HTTPStatusError):
    """Any other non-2xx status."""


class StreamError(APIError):
    """An ``error`` event received on the stream."""

    def __init__(self, message: str, code: Optional[str] = None, retryable: bool = True):
        self.code = code
        self.retryable = retryable
        super().__init__(message)


def classify_status_error(status_code: int, response_text: str) -> HTTPStatusError:
    """Map a non-2xx chat response to ValidationError / RateLimitError / UpstreamError."""

    error_message = "Failed to get response"
    retry_after: Optional[int] = None
    try:
        body = json.loads(response_text) if response_text else {}
    except (json.JSONDecodeError, ValueError):
        body = {}
    if isinstance(body, dict):
        if isinstance(body.get("error"), str) and body["error"]:
            error_message = body["error"]
        raw_retry = body.get("retryAfter")
        if isinstance(raw_retry, (int, float)) and not isinstance(raw_retry, bool):
            retry_after = int(raw_retry)

    if status_code == 400:
        return ValidationError(error_message, status_code=400, response_text=response_text)
    if status_code == 429:
        if retry_after is not None:
            error_message = f"{error_message} Please wait {retry_after} seconds."
        return RateLimitError(error_message, retry_after=retry_after, response_text=response_text)
    return UpstreamError(error_message, status_code=status_code, response_text=response_text)


# ============================================================================
# HTTP Client
# ============================================================================


class AsyncAPIClient:
    """
    Async HTTP Client wrapper around httpx.AsyncClient with unified error handling.

    Features:
    - POST /api/chat as a stream, classifying non-2xx responses before any
      body is read as SSE
    - single-shot GET /api/chat/recover (no internal retry)
    - Sensitive header masking in logs
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize async API client.

        Args:
            base_url: Base URL for API server
            timeout: Connect/write timeout in seconds; stream reads never time out
            transport: Optional transport (tests pass httpx.MockTransport)
        """
        self.base_url = base_url
        self.timeout = timeout

        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
            trust_env=False,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the underlying httpx client."""
        await self._client.aclose()

    def _log_request(self, method: str, path: str, headers: Optional[Dict[str, str]] = None):
        headers = headers or {}
        safe_headers = {
            k: ("***" if k.lower() in _SENSITIVE_HEADERS else v) for k, v in headers.items()
        }
        logger.debug("%s %s | headers: %s", method, path, safe_headers)

    @asynccontextmanager
    async def stream_chat(self, payload: Dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """
        POST /api/chat and yield the streaming response.

        Usage:
            async with client.stream_chat(payload) as response:
                async for text in response.aiter_text():
                    ...

        Raises:
            ValidationError / RateLimitError / UpstreamError: non-2xx status
            RequestTimeoutError: connect or write timeout
            NetworkError: connection failure, including while reading the body
        """
        self._log_request("POST", "/api/chat")
        # sparse events and heartbeats: no read timeout on the stream
        stream_timeout = httpx.Timeout(
            connect=self.timeout, read=None, write=self.timeout, pool=self.timeout
        )
        try:
            async with self._client.stream(
                "POST", "/api/chat", json=payload, timeout=stream_timeout
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise classify_status_error(response.status_code, response.text)
                yield response
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Stream request timeout: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(str(e) or type(e).__name__) from e

    async def fetch_recovery(self, response_id: str) -> Optional[RecoveryResponse]:
        """
        GET /api/chat/recover once.

        Returns:
            The cached record, or None for any non-2xx status, transport
            failure, or malformed body.
        """
        self._log_request("GET", "/api/chat/recover")
        try:
            response = await self._client.get("/api/chat/recover", params={"id": response_id})
        except httpx.HTTPError as e:
            logger.warning("recovery request failed: %s", e)
            return None

        if response.status_code >= 400:
            logger.info("no recovery record for %s (HTTP %s)", response_id, response.status_code)
            return None

        try:
            return RecoveryResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            logger.warning("invalid recovery response: %s", e)
            return None
