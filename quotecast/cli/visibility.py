"""
Stale-connection detection for a client that can be suspended.

When a process (or a page) is backgrounded long enough, the OS may silently
kill its stream while the socket still looks open. After a long hidden period
the monitor arms one timer; if the registered request made no progress by the
time it fires, its token is cancelled with reason ``stale`` and the consumer
takes its recovery path. Short hidden periods never arm the timer.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional, Protocol

from quotecast.cli.cancellation import CancellationToken, CancelReason
from quotecast.core.config import StreamRecoveryConfig
from quotecast.core.logger import get_logger

logger = get_logger("quotecast.cli.visibility")


class TimerHandle(Protocol):
    def cancel(self) -> Any: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class VisibilityMonitor:
    """One per client lifetime; holds at most one pending stale timer."""

    def __init__(
        self,
        config: Optional[StreamRecoveryConfig] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or StreamRecoveryConfig()
        self._scheduler = scheduler
        self._clock = clock

        self._token: Optional[CancellationToken] = None
        self._timer: Optional[TimerHandle] = None
        self._hidden = False
        self._hidden_at = 0.0
        self._progress = 0
        self._progress_at_arm = 0

        self.was_backgrounded = False
        self.last_hidden_duration = 0.0

    @property
    def hidden(self) -> bool:
        return self._hidden

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None

    def _get_scheduler(self) -> Scheduler:
        return self._scheduler or asyncio.get_running_loop()

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def register(self, token: Optional[CancellationToken]) -> None:
        """Track ``token`` (None when the stream finished). Clears any pending timer."""
        self._token = token
        self._clear_timer()

    def notify_progress(self) -> None:
        self._progress += 1

    def on_hidden(self) -> None:
        if self._hidden:
            return
        self._hidden = True
        self._hidden_at = self._clock()

    def on_visible(self) -> None:
        if not self._hidden:
            return
        self._hidden = False
        duration = self._clock() - self._hidden_at
        self.last_hidden_duration = duration
        self.was_backgrounded = True

        if duration < self.config.min_hidden_for_recovery:
            logger.debug("hidden for %.1fs, connection assumed alive", duration)
            return
        if self._token is None or self._token.cancelled or self._timer is not None:
            return

        logger.info("resumed after %.1fs hidden, watching for a stale stream", duration)
        self._arm()

    def clear_backgrounded(self) -> None:
        self.was_backgrounded = False

    def _arm(self) -> None:
        self._progress_at_arm = self._progress
        self._timer = self._get_scheduler().call_later(self.config.stale_timeout, self._on_stale)

    def _on_stale(self) -> None:
        self._timer = None
        token = self._token
        if token is None or token.cancelled:
            return
        if self._progress != self._progress_at_arm:
            # still streaming; check again later
            self._arm()
            return
        logger.info("stream stale after resume, cancelling for recovery")
        token.cancel(CancelReason.STALE)

    def close(self) -> None:
        self._clear_timer()
        self._token = None
