"""
QuoteCast runtime configuration.

Every value can be overridden through a ``QUOTECAST_*`` environment variable
(optionally placed in the project-root ``.env``, see ``env_loader``):

  - QUOTECAST_LLM_BASE_URL / QUOTECAST_LLM_API_KEY / QUOTECAST_LLM_TIMEOUT
  - QUOTECAST_CHAT_MODEL / QUOTECAST_UTILITY_MODEL / QUOTECAST_EMBEDDING_MODEL
  - QUOTECAST_SEARCH_URL / QUOTECAST_SEARCH_API_KEY / QUOTECAST_SEARCH_TOP_K
  - QUOTECAST_RATE_LIMIT_MAX / QUOTECAST_RATE_LIMIT_WINDOW_SEC
  - QUOTECAST_CACHE_BACKEND (memory|sqlite) / QUOTECAST_CACHE_DB_PATH / QUOTECAST_CACHE_TTL_SEC
  - QUOTECAST_STALE_TIMEOUT_SEC / QUOTECAST_MIN_HIDDEN_SEC
  - QUOTECAST_HEARTBEAT_SEC
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

from quotecast.core.retry import RetryConfig


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name, "").strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class ValidationLimits:
    max_message_length: int = 5000
    max_history_length: int = 20
    max_history_message_length: int = 10000


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int = 10
    window_seconds: float = 60.0


@dataclass(frozen=True)
class ConversationConfig:
    # messages forwarded to the model
    recent_history_count: int = 6
    # messages kept client-side
    max_conversation_history: int = 30


@dataclass(frozen=True)
class StreamRecoveryConfig:
    cache_ttl_seconds: float = 300.0
    max_cache_entries: int = 100
    stale_timeout: float = 5.0
    min_hidden_for_recovery: float = 10.0
    suggestion_retry_delay: float = 3.0
    suggestion_retry_max_attempts: int = 3


@dataclass(frozen=True)
class ModelConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    chat_model: str = "gpt-5-mini"
    utility_model: str = "gpt-5-mini"
    embedding_model: str = "text-embedding-3-small"
    chat_reasoning_effort: str = "medium"
    thinking_reasoning_effort: str = "high"
    utility_reasoning_effort: str = "low"
    timeout: float = 60.0


@dataclass(frozen=True)
class SearchConfig:
    url: str = ""
    api_key: str = ""
    default_top_k: int = 8
    confederation_top_k: int = 4
    timeout: float = 10.0


@dataclass(frozen=True)
class RetryPolicies:
    embedding: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_retries=3, initial_delay=0.5, timeout=15.0)
    )
    search: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_retries=2, initial_delay=0.5, timeout=10.0)
    )
    completion: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_retries=2, initial_delay=1.0, timeout=60.0)
    )
    suggestions: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_retries=2, initial_delay=0.5, timeout=10.0)
    )
    intent: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_retries=2, initial_delay=0.5, timeout=10.0)
    )


@dataclass(frozen=True)
class Settings:
    validation: ValidationLimits = field(default_factory=ValidationLimits)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    recovery_rate_limit: RateLimitConfig = field(
        default_factory=lambda: RateLimitConfig(max_requests=30, window_seconds=60.0)
    )
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    recovery: StreamRecoveryConfig = field(default_factory=StreamRecoveryConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    retry: RetryPolicies = field(default_factory=RetryPolicies)
    cache_backend: Literal["memory", "sqlite"] = "memory"
    cache_db_path: str = "data/cache/responses.db"
    heartbeat_interval: float = 15.0


def load_settings() -> Settings:
    """Build settings from the environment (env > default)."""

    backend = _env_str("QUOTECAST_CACHE_BACKEND", "memory").lower()
    if backend not in ("memory", "sqlite"):
        backend = "memory"

    return Settings(
        rate_limit=RateLimitConfig(
            max_requests=_env_int("QUOTECAST_RATE_LIMIT_MAX", 10),
            window_seconds=_env_float("QUOTECAST_RATE_LIMIT_WINDOW_SEC", 60.0),
        ),
        recovery=StreamRecoveryConfig(
            cache_ttl_seconds=_env_float("QUOTECAST_CACHE_TTL_SEC", 300.0),
            stale_timeout=_env_float("QUOTECAST_STALE_TIMEOUT_SEC", 5.0),
            min_hidden_for_recovery=_env_float("QUOTECAST_MIN_HIDDEN_SEC", 10.0),
        ),
        model=ModelConfig(
            base_url=_env_str("QUOTECAST_LLM_BASE_URL", "https://api.openai.com/v1"),
            api_key=_env_str("QUOTECAST_LLM_API_KEY", os.getenv("OPENAI_API_KEY", "")),
            chat_model=_env_str("QUOTECAST_CHAT_MODEL", "gpt-5-mini"),
            utility_model=_env_str("QUOTECAST_UTILITY_MODEL", "gpt-5-mini"),
            embedding_model=_env_str("QUOTECAST_EMBEDDING_MODEL", "text-embedding-3-small"),
            timeout=_env_float("QUOTECAST_LLM_TIMEOUT", 60.0),
        ),
        search=SearchConfig(
            url=_env_str("QUOTECAST_SEARCH_URL", ""),
            api_key=_env_str("QUOTECAST_SEARCH_API_KEY", ""),
            default_top_k=_env_int("QUOTECAST_SEARCH_TOP_K", 8),
        ),
        cache_backend=backend,  # type: ignore[arg-type]
        cache_db_path=_env_str("QUOTECAST_CACHE_DB_PATH", "data/cache/responses.db"),
        heartbeat_interval=_env_float("QUOTECAST_HEARTBEAT_SEC", 15.0),
    )
