from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from quotecast.core.config import Settings, load_settings
from quotecast.core.rate_limit import RateLimiter
from quotecast.core.retry import CircuitBreakerRegistry
from quotecast.services.llm import ChatModel, OpenAICompatibleClient
from quotecast.services.response_cache import ResponseCache, build_response_cache
from quotecast.services.search import HttpPassageSearch, PassageSearch
from quotecast.services.stream_generator import ChatStreamGenerator


@dataclass
class ServiceContainer:
    """Everything one app instance shares across requests."""

    settings: Settings
    llm: ChatModel
    search: PassageSearch
    cache: ResponseCache
    breakers: CircuitBreakerRegistry
    chat_limiter: RateLimiter
    recovery_limiter: RateLimiter
    generator: ChatStreamGenerator

    async def aclose(self) -> None:
        await self.generator.shutdown()
        for collaborator in (self.llm, self.search):
            close = getattr(collaborator, "aclose", None)
            if close is not None:
                await close()


def build_container(
    settings: Optional[Settings] = None,
    *,
    llm: Optional[ChatModel] = None,
    search: Optional[PassageSearch] = None,
    cache: Optional[ResponseCache] = None,
    breakers: Optional[CircuitBreakerRegistry] = None,
) -> ServiceContainer:
    # explicit None checks: an empty cache is falsy
    settings = settings if settings is not None else load_settings()
    llm = llm if llm is not None else OpenAICompatibleClient(settings.model)
    search = search if search is not None else HttpPassageSearch(settings.search)
    cache = cache if cache is not None else build_response_cache(settings)
    breakers = breakers if breakers is not None else CircuitBreakerRegistry()
    return ServiceContainer(
        settings=settings,
        llm=llm,
        search=search,
        cache=cache,
        breakers=breakers,
        chat_limiter=RateLimiter(settings.rate_limit),
        recovery_limiter=RateLimiter(settings.recovery_rate_limit),
        generator=ChatStreamGenerator(llm, search, cache, breakers, settings),
    )
