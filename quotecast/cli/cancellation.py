from __future__ import annotations

from enum import Enum
from typing import Callable, Optional

from quotecast.core.logger import get_logger

logger = get_logger("quotecast.cli.cancellation")


class CancelReason(str, Enum):
    SUPERSEDED = "superseded"  # a newer send replaced this request
    USER = "user"  # explicit cancel() or reset()
    STALE = "stale"  # visibility monitor gave up on the connection

    @property
    def is_silent(self) -> bool:
        """User-initiated cancellations never trigger recovery or messages."""
        return self is not CancelReason.STALE


class CancellationToken:
    """One per in-flight request. Cancelling is idempotent; the first reason wins."""

    def __init__(self) -> None:
        self.reason: Optional[CancelReason] = None
        self._callbacks: list[Callable[[CancelReason], None]] = []

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def add_callback(self, callback: Callable[[CancelReason], None]) -> None:
        if self.reason is not None:
            callback(self.reason)
            return
        self._callbacks.append(callback)

    def cancel(self, reason: CancelReason = CancelReason.USER) -> bool:
        if self.reason is not None:
            return False
        self.reason = reason
        logger.debug("token cancelled (%s)", reason.value)
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)
        return True
