"""
Retry utility with exponential backoff and per-key circuit breaking.

Retries:
  - 429 (rate limit) and 5xx responses
  - timeouts and connection-level failures
  - errors whose message matches a known transient pattern

Never retries:
  - 4xx other than 429 (the request itself has to change)
  - unrecognised errors
"""

from __future__ import annotations

import asyncio
import random
import threading
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from quotecast.core.logger import get_logger

logger = get_logger("quotecast.retry")

T = TypeVar("T")

_TRANSIENT_MESSAGE_PATTERNS = (
    "rate limit",
    "429",
    "server error",
    "500",
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "socket hang up",
)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy. All durations are in seconds."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.1
    # per-attempt bound; 0 disables it
    timeout: float = 30.0


DEFAULT_RETRY_CONFIG = RetryConfig()


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, message: str, last_error: BaseException | None, attempts: int):
        self.message = message
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(message)


class CircuitOpenError(Exception):
    """Raised without calling the guarded function while its circuit is open."""

    def __init__(self, key: str, retry_after: float):
        self.key = key
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Circuit breaker open for {key}. Try again in {int(-(-self.retry_after // 1))}s"
        )


def _status_of(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Return True if ``error`` looks transient and is worth another attempt."""

    if isinstance(error, (RetryExhaustedError, CircuitOpenError)):
        return False

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return True

    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return True

    status = _status_of(error)
    if status is not None:
        if status == 429:
            return True
        return 500 <= status < 600

    message = str(error).lower()
    return any(pattern in message for pattern in _TRANSIENT_MESSAGE_PATTERNS)


def calculate_delay(
    attempt: int,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    rng: Callable[[], float] = random.random,
) -> float:
    """min(initial * multiplier^attempt, max) perturbed by +/- jitter * delay."""

    exponential = config.initial_delay * (config.backoff_multiplier ** attempt)
    capped = min(exponential, config.max_delay)
    jitter_range = capped * config.jitter
    offset = rng() * jitter_range * 2 - jitter_range
    return max(0.0, capped + offset)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    *,
    operation: str = "operation",
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds, at most ``max_retries + 1`` times.

    Raises:
        the original error, unchanged, as soon as a non-retryable one occurs
        RetryExhaustedError once every attempt failed with a retryable error
    """
    cfg = config or DEFAULT_RETRY_CONFIG
    total_attempts = cfg.max_retries + 1
    last_error: BaseException | None = None

    for attempt in range(total_attempts):
        try:
            if cfg.timeout and cfg.timeout > 0:
                return await asyncio.wait_for(fn(), timeout=cfg.timeout)
            return await fn()
        except Exception as exc:
            last_error = exc

            if not is_retryable_error(exc):
                logger.debug("%s: non-retryable error, giving up: %s", operation, exc)
                raise

            if attempt >= cfg.max_retries:
                logger.warning("%s: all %s attempts failed", operation, total_attempts)
                break

            delay = calculate_delay(attempt, cfg)
            logger.warning(
                "%s: attempt %s/%s failed (%s), retrying in %.2fs",
                operation,
                attempt + 1,
                total_attempts,
                exc,
                delay,
            )
            await sleep(delay)

    raise RetryExhaustedError(
        f"{operation} failed after {total_attempts} attempts: {last_error}",
        last_error=last_error,
        attempts=total_attempts,
    ) from last_error


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_time: float = 60.0


DEFAULT_CIRCUIT_BREAKER_CONFIG = CircuitBreakerConfig()


@dataclass
class CircuitBreakerState:
    failures: int = 0
    last_failure_time: float = 0.0
    is_open: bool = False
    probe_in_flight: bool = False


class CircuitBreakerRegistry:
    """
    Failure circuits keyed by an opaque name (usually the upstream dependency).

    One registry is owned by the serving process and shared by every request;
    state transitions happen under a lock so concurrent callers never lose an
    increment or a reset.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}
        self._lock = threading.Lock()

    def _acquire(self, key: str, config: CircuitBreakerConfig) -> None:
        with self._lock:
            state = self._states.setdefault(key, CircuitBreakerState())
            if not state.is_open:
                return

            elapsed = self._clock() - state.last_failure_time
            if elapsed < config.reset_time:
                raise CircuitOpenError(key, config.reset_time - elapsed)
            if state.probe_in_flight:
                raise CircuitOpenError(key, 0.0)

            state.probe_in_flight = True
            logger.info("circuit %s half-open, sending probe", key)

    def _record_success(self, key: str) -> None:
        with self._lock:
            state = self._states.setdefault(key, CircuitBreakerState())
            if state.is_open:
                logger.info("circuit %s closed", key)
            state.failures = 0
            state.is_open = False
            state.probe_in_flight = False

    def _record_failure(self, key: str, config: CircuitBreakerConfig) -> None:
        with self._lock:
            state = self._states.setdefault(key, CircuitBreakerState())
            state.failures += 1
            state.last_failure_time = self._clock()
            state.probe_in_flight = False
            if state.failures >= config.failure_threshold and not state.is_open:
                logger.warning("circuit %s opened after %s failures", key, state.failures)
            if state.failures >= config.failure_threshold:
                state.is_open = True

    def _release_probe(self, key: str) -> None:
        with self._lock:
            state = self._states.get(key)
            if state is not None:
                state.probe_in_flight = False

    async def call(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        config: Optional[CircuitBreakerConfig] = None,
    ) -> T:
        """Run ``fn`` through the circuit named ``key``."""

        cfg = config or DEFAULT_CIRCUIT_BREAKER_CONFIG
        self._acquire(key, cfg)
        try:
            result = await fn()
        except Exception:
            self._record_failure(key, cfg)
            raise
        except BaseException:
            # cancelled mid-call: neither a success nor a failure
            self._release_probe(key)
            raise
        self._record_success(key)
        return result

    def state(self, key: str) -> CircuitBreakerState:
        with self._lock:
            return replace(self._states.get(key) or CircuitBreakerState())

    def reset(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)

    def reset_all(self) -> None:
        with self._lock:
            self._states.clear()
