"""
Server-Sent Events framing shared by the server and the client.

Wire format per event::

    event: <type>
    data: <json object>
    <blank line>

Lines starting with ``:`` are comments (used for keep-alive heartbeats).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from pydantic import BaseModel

KEEP_ALIVE = ": keep-alive\n\n"


@dataclass(frozen=True)
class SSEEvent:
    event: str
    data: dict[str, Any] = field(default_factory=dict)


def encode_sse_event(event: str, data: Mapping[str, Any] | BaseModel) -> str:
    if isinstance(data, BaseModel):
        payload = data.model_dump(by_alias=True, mode="json")
    else:
        payload = dict(data)
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event}\ndata: {body}\n\n"


def parse_sse_block(block: str) -> Optional[SSEEvent]:
    """
    Parse one ``\\n\\n``-delimited block.

    Returns:
        The event, or None for comment-only blocks, blocks missing an
        ``event:`` or ``data:`` line, and blocks whose data is not a JSON object.
    """
    event_type: Optional[str] = None
    data_lines: list[str] = []

    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        if line.startswith("event:"):
            event_type = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))

    if not event_type or not data_lines:
        return None

    try:
        data = json.loads("\n".join(data_lines))
    except (json.JSONDecodeError, ValueError):
        return None

    if not isinstance(data, dict):
        return None
    return SSEEvent(event_type, data)


def parse_sse(buffer: str) -> tuple[list[SSEEvent], str]:
    """Parse every complete block in ``buffer``; return (events, unconsumed remainder)."""

    normalized = buffer.replace("\r\n", "\n")
    blocks = normalized.split("\n\n")
    remaining = blocks.pop()

    events: list[SSEEvent] = []
    for block in blocks:
        event = parse_sse_block(block)
        if event is not None:
            events.append(event)
    return events, remaining


class SSEParser:
    """Incremental reader: feed arbitrary text slices, get whole events back."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[SSEEvent]:
        if not text:
            return []
        # a "\r" at the end of one read may pair with "\n" at the start of the next
        self._buffer += text
        if self._buffer.endswith("\r"):
            events, rest = parse_sse(self._buffer[:-1])
            self._buffer = rest + "\r"
            return events
        events, self._buffer = parse_sse(self._buffer)
        return events

    @property
    def remainder(self) -> str:
        return self._buffer
