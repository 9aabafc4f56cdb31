"""OpenAI-compatible chat completion and embedding client."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional, Protocol, Sequence

import httpx

from quotecast.core.config import ModelConfig
from quotecast.core.logger import get_logger

logger = get_logger("quotecast.llm")

Message = dict[str, str]


class UpstreamError(Exception):
    """Non-2xx or malformed response from a model or search provider."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_text: str = ""):
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(message)


class ChatModel(Protocol):
    async def complete(
        self,
        messages: Sequence[Message],
        *,
        model: Optional[str] = None,
        reasoning_effort: Optional[str] = None,
    ) -> str: ...

    def stream(
        self,
        messages: Sequence[Message],
        *,
        model: Optional[str] = None,
        reasoning_effort: Optional[str] = None,
    ) -> AsyncIterator[str]: ...

    async def embed(self, text: str) -> list[float]: ...


def _raise_for_status(response: httpx.Response, what: str) -> None:
    if response.is_success:
        return
    text = response.text[:500]
    raise UpstreamError(
        f"{what} failed with status {response.status_code}: {text}",
        status_code=response.status_code,
        response_text=text,
    )


class OpenAICompatibleClient:
    """Talks to ``{base_url}/chat/completions`` and ``{base_url}/embeddings``."""

    def __init__(self, config: ModelConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout)
        self._owns_client = client is None

    @property
    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{path}"

    def _chat_payload(
        self,
        messages: Sequence[Message],
        model: Optional[str],
        reasoning_effort: Optional[str],
        stream: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model or self.config.chat_model,
            "messages": list(messages),
        }
        if reasoning_effort:
            payload["reasoning_effort"] = reasoning_effort
        if stream:
            payload["stream"] = True
        return payload

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        model: Optional[str] = None,
        reasoning_effort: Optional[str] = None,
    ) -> str:
        response = await self._client.post(
            self._url("chat/completions"),
            headers=self._headers,
            json=self._chat_payload(messages, model, reasoning_effort, stream=False),
        )
        _raise_for_status(response, "chat completion")
        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamError(f"malformed chat completion response: {exc}") from exc
        return (content or "").strip()

    async def stream(
        self,
        messages: Sequence[Message],
        *,
        model: Optional[str] = None,
        reasoning_effort: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas until the provider sends ``[DONE]``."""

        payload = self._chat_payload(messages, model, reasoning_effort, stream=True)
        async with self._client.stream(
            "POST", self._url("chat/completions"), headers=self._headers, json=payload
        ) as response:
            if not response.is_success:
                await response.aread()
                _raise_for_status(response, "chat stream")

            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("skipping malformed stream line: %s", data[:200])
                    continue
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                delta = (choices[0].get("delta") or {}).get("content")
                if delta:
                    yield delta

    async def embed(self, text: str) -> list[float]:
        response = await self._client.post(
            self._url("embeddings"),
            headers=self._headers,
            json={"model": self.config.embedding_model, "input": text},
        )
        _raise_for_status(response, "embedding")
        try:
            return list(response.json()["data"][0]["embedding"])
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamError(f"malformed embedding response: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
