"""Vector search over the indexed source passages."""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence

import httpx

from quotecast.core.config import SearchConfig
from quotecast.core.logger import get_logger
from quotecast.schemas.chat import Quote
from quotecast.services.llm import UpstreamError

logger = get_logger("quotecast.search")

CONFEDERATION_NAMESPACE = "confederation"


class PassageSearch(Protocol):
    async def search(
        self, vector: Sequence[float], top_k: int, namespace: Optional[str] = None
    ) -> list[Quote]: ...


def _parse_matches(body: Any) -> list[Quote]:
    matches = body.get("matches") if isinstance(body, dict) else None
    if not isinstance(matches, list):
        raise UpstreamError("malformed search response: missing matches")

    quotes: list[Quote] = []
    for match in matches:
        metadata = match.get("metadata") if isinstance(match, dict) else None
        if not isinstance(metadata, dict):
            continue
        text = str(metadata.get("text", "")).strip()
        reference = str(metadata.get("reference", "")).strip()
        if not text or not reference:
            continue
        quotes.append(Quote(text=text, reference=reference, url=str(metadata.get("url", ""))))
    return quotes


class HttpPassageSearch:
    """POSTs ``{vector, topK, includeMetadata}`` to a vector-query endpoint."""

    def __init__(self, config: SearchConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout)
        self._owns_client = client is None

    async def search(
        self, vector: Sequence[float], top_k: int, namespace: Optional[str] = None
    ) -> list[Quote]:
        if not self.config.url:
            raise UpstreamError("search endpoint is not configured (QUOTECAST_SEARCH_URL)")

        payload: dict[str, Any] = {
            "vector": list(vector),
            "topK": top_k,
            "includeMetadata": True,
        }
        if namespace:
            payload["namespace"] = namespace

        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Api-Key"] = self.config.api_key

        response = await self._client.post(self.config.url, json=payload, headers=headers)
        if not response.is_success:
            raise UpstreamError(
                f"search failed with status {response.status_code}",
                status_code=response.status_code,
                response_text=response.text[:500],
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamError(f"malformed search response: {exc}") from exc

        quotes = _parse_matches(body)
        logger.debug("search returned %s passages (namespace=%s)", len(quotes), namespace)
        return quotes

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
