"""
Recoverable event log for streamed responses.

Every SSE event of a response is appended under its response id so a client
that lost the connection can fetch and replay it. Entries expire ``ttl``
seconds after their last append. Appends never raise: a failing store is
logged once per response id and otherwise ignored.
"""

from __future__ import annotations

import json
import sqlite3
import tempfile
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol

from quotecast.core.config import Settings
from quotecast.core.logger import get_logger
from quotecast.schemas.chat import CachedEvent, RecoveryResponse

logger = get_logger("quotecast.response_cache")


class ResponseCache(Protocol):
    def append(self, response_id: str, event: str, data: Mapping[str, Any]) -> None: ...

    def get(self, response_id: str) -> Optional[RecoveryResponse]: ...


def _to_response(events: list[CachedEvent]) -> Optional[RecoveryResponse]:
    if not events:
        return None
    return RecoveryResponse(
        events=events,
        complete=any(e.event == "done" for e in events),
    )


@dataclass
class _Entry:
    expires_at: float
    events: list[CachedEvent] = field(default_factory=list)


class MemoryResponseCache:
    """Process-local LRU + TTL store. Only reliable for a single server process."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = threading.Lock()

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]

    def append(self, response_id: str, event: str, data: Mapping[str, Any]) -> None:
        now = self._clock()
        with self._lock:
            self._purge_expired(now)
            entry = self._entries.get(response_id)
            if entry is None:
                while len(self._entries) >= self.max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    logger.debug("evicted cached response %s", evicted)
                entry = _Entry(expires_at=now + self.ttl)
                self._entries[response_id] = entry
            entry.events.append(CachedEvent(event=event, data=dict(data)))
            entry.expires_at = now + self.ttl
            self._entries.move_to_end(response_id)

    def get(self, response_id: str) -> Optional[RecoveryResponse]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(response_id)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[response_id]
                return None
            return _to_response(list(entry.events))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _is_disk_io_error(exc: sqlite3.OperationalError) -> bool:
    return "disk i/o error" in str(exc).lower()


class SqliteResponseCache:
    """SQLite-backed store, shared by every worker process on the host."""

    def __init__(
        self,
        db_path: str | Path,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = Path(db_path)
        self.ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._error_logged: set[str] = set()
        self._init_db()

    def _create_tables(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cached_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    response_id TEXT NOT NULL,
                    event TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_cached_events_response ON cached_events(response_id, seq)"
            )
            conn.commit()

    def _init_db(self) -> None:
        try:
            self._create_tables(self.db_path)
        except sqlite3.OperationalError as exc:
            if not _is_disk_io_error(exc):
                raise
            fallback = Path(tempfile.gettempdir()) / "quotecast" / "responses.db"
            logger.warning("response cache path not writable, falling back to %s", fallback)
            self.db_path = fallback
            self._create_tables(fallback)

    def append(self, response_id: str, event: str, data: Mapping[str, Any]) -> None:
        now = self._clock()
        expires_at = now + self.ttl
        payload = json.dumps(dict(data), ensure_ascii=False)
        try:
            with self._lock, sqlite3.connect(self.db_path) as conn:
                conn.execute("DELETE FROM cached_events WHERE expires_at <= ?", (now,))
                conn.execute(
                    "INSERT INTO cached_events (response_id, event, data_json, expires_at) VALUES (?, ?, ?, ?)",
                    (response_id, event, payload, expires_at),
                )
                conn.execute(
                    "UPDATE cached_events SET expires_at=? WHERE response_id=?",
                    (expires_at, response_id),
                )
                conn.commit()
        except sqlite3.Error as exc:
            if response_id not in self._error_logged:
                self._error_logged.add(response_id)
                logger.error("response cache append failed for %s: %s", response_id, exc)

    def get(self, response_id: str) -> Optional[RecoveryResponse]:
        sql = """
            SELECT event, data_json FROM cached_events
            WHERE response_id = ? AND expires_at > ?
            ORDER BY seq
            """
        try:
            with self._lock, sqlite3.connect(self.db_path) as conn:
                conn.row_factory = sqlite3.Row
                rows = conn.execute(sql, (response_id, self._clock())).fetchall()
        except sqlite3.Error as exc:
            logger.error("response cache read failed for %s: %s", response_id, exc)
            return None

        events: list[CachedEvent] = []
        for row in rows:
            try:
                data = json.loads(row["data_json"])
            except (json.JSONDecodeError, ValueError):
                continue
            if isinstance(data, dict):
                events.append(CachedEvent(event=row["event"], data=data))
        return _to_response(events)


def build_response_cache(settings: Settings) -> ResponseCache:
    recovery = settings.recovery
    if settings.cache_backend == "sqlite":
        logger.info("using sqlite response cache at %s", settings.cache_db_path)
        return SqliteResponseCache(settings.cache_db_path, ttl_seconds=recovery.cache_ttl_seconds)
    return MemoryResponseCache(
        ttl_seconds=recovery.cache_ttl_seconds, max_entries=recovery.max_cache_entries
    )
