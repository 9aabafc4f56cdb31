"""
Incremental extraction of citation markers from streamed model output.

Marker grammar::

    {{QUOTE:<index>}}
    {{QUOTE:<index>:s<start>:s<end>}}

``index`` is 1-based into the candidate quotes of the current answer, and the
optional ``start``/``end`` select an inclusive sentence sub-range of the quote.

Deltas are fed as they arrive. Text is released as soon as it is known not to
be part of a marker; a tail that is still a live prefix of the grammar is held
back until the next delta decides it. ``finish()`` releases whatever is held as
plain text, so an unterminated marker degrades to literal text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Union

from quotecast.core.logger import get_logger
from quotecast.schemas.chat import QuoteChunkData, Quote, TextChunkData
from quotecast.services.quote_format import apply_sentence_range, format_whole_quote

logger = get_logger("quotecast.quote_markers")

MARKER_PREFIX = "{{QUOTE:"
_DIGITS = frozenset("0123456789")
_DIGIT = "<digit>"


class _State(Enum):
    INDEX_FIRST = "index_first"
    INDEX = "index"
    START_S = "start_s"
    START_FIRST = "start_first"
    START = "start"
    END_S = "end_s"
    END_FIRST = "end_first"
    END = "end"
    CLOSE = "close"
    ACCEPT = "accept"


# states reached after the literal "{{QUOTE:" prefix
_TRANSITIONS: dict[tuple[_State, str], _State] = {
    (_State.INDEX_FIRST, _DIGIT): _State.INDEX,
    (_State.INDEX, _DIGIT): _State.INDEX,
    (_State.INDEX, "}"): _State.CLOSE,
    (_State.INDEX, ":"): _State.START_S,
    (_State.START_S, "s"): _State.START_FIRST,
    (_State.START_FIRST, _DIGIT): _State.START,
    (_State.START, _DIGIT): _State.START,
    (_State.START, ":"): _State.END_S,
    (_State.END_S, "s"): _State.END_FIRST,
    (_State.END_FIRST, _DIGIT): _State.END,
    (_State.END, _DIGIT): _State.END,
    (_State.END, "}"): _State.CLOSE,
    (_State.CLOSE, "}"): _State.ACCEPT,
}

_DIGIT_SLOTS = {
    _State.INDEX: "index",
    _State.START: "start",
    _State.END: "end",
}


class MatchStatus(Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAIL = "fail"


@dataclass(frozen=True)
class MarkerMatch:
    status: MatchStatus
    start: int
    end: int = 0
    index: int = 0
    sentence_range: Optional[tuple[int, int]] = None


def match_marker_at(buffer: str, pos: int) -> MarkerMatch:
    """Run the marker automaton on ``buffer`` starting at ``pos``.

    PARTIAL means the buffer ended while the automaton was still in a live
    state, i.e. ``buffer[pos:]`` is a proper prefix of some marker.
    """
    n = len(buffer)
    for k, expected in enumerate(MARKER_PREFIX):
        if pos + k >= n:
            return MarkerMatch(MatchStatus.PARTIAL, pos)
        if buffer[pos + k] != expected:
            return MarkerMatch(MatchStatus.FAIL, pos)

    state = _State.INDEX_FIRST
    digits = {"index": "", "start": "", "end": ""}
    i = pos + len(MARKER_PREFIX)
    while i < n:
        ch = buffer[i]
        symbol = _DIGIT if ch in _DIGITS else ch
        nxt = _TRANSITIONS.get((state, symbol))
        if nxt is None:
            return MarkerMatch(MatchStatus.FAIL, pos)
        if symbol == _DIGIT:
            digits[_DIGIT_SLOTS[nxt]] += ch
        state = nxt
        i += 1
        if state is _State.ACCEPT:
            sentence_range = None
            if digits["start"] and digits["end"]:
                sentence_range = (int(digits["start"]), int(digits["end"]))
            return MarkerMatch(
                MatchStatus.COMPLETE,
                pos,
                end=i,
                index=int(digits["index"]),
                sentence_range=sentence_range,
            )

    return MarkerMatch(MatchStatus.PARTIAL, pos)


def scan_buffer(buffer: str) -> tuple[Optional[MarkerMatch], Optional[int]]:
    """Return (first complete marker, start of the first live partial marker)."""

    partial_at: Optional[int] = None
    pos = buffer.find("{")
    while pos != -1:
        match = match_marker_at(buffer, pos)
        if match.status is MatchStatus.COMPLETE:
            return match, partial_at
        if match.status is MatchStatus.PARTIAL and partial_at is None:
            partial_at = pos
        pos = buffer.find("{", pos + 1)
    return None, partial_at


@dataclass(frozen=True)
class TextSegment:
    content: str

    def to_chunk(self) -> TextChunkData:
        return TextChunkData(content=self.content)


@dataclass(frozen=True)
class CitationSegment:
    quote: Quote
    text: str
    index: int
    sentence_range: Optional[tuple[int, int]] = None

    def to_chunk(self) -> QuoteChunkData:
        return QuoteChunkData(text=self.text, reference=self.quote.reference, url=self.quote.url)


Segment = Union[TextSegment, CitationSegment]


class MarkerExtractor:
    """Stateful splitter for one streamed answer."""

    def __init__(self, quotes: Sequence[Quote]):
        self.quotes = list(quotes)
        self._buffer = ""
        self._raw: list[str] = []
        self.citations_emitted = 0
        self.markers_dropped = 0

    @property
    def full_output(self) -> str:
        """Everything fed so far, markers included."""
        return "".join(self._raw)

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, delta: str) -> list[Segment]:
        if not delta:
            return []
        self._raw.append(delta)
        self._buffer += delta

        segments: list[Segment] = []
        while True:
            match, partial_at = scan_buffer(self._buffer)
            if match is None:
                if partial_at is not None:
                    self._emit_text(self._buffer[:partial_at], segments)
                    self._buffer = self._buffer[partial_at:]
                else:
                    self._emit_text(self._buffer, segments)
                    self._buffer = ""
                return segments

            self._emit_text(self._buffer[: match.start], segments)
            citation = self._resolve(match, self._buffer[match.start : match.end])
            if citation is not None:
                segments.append(citation)
            self._buffer = self._buffer[match.end :]

    def finish(self) -> list[Segment]:
        segments: list[Segment] = []
        self._emit_text(self._buffer, segments)
        self._buffer = ""
        return segments

    def _emit_text(self, text: str, segments: list[Segment]) -> None:
        if text:
            segments.append(TextSegment(text))

    def _resolve(self, match: MarkerMatch, marker: str) -> Optional[CitationSegment]:
        if not 1 <= match.index <= len(self.quotes):
            self.markers_dropped += 1
            logger.debug(
                "dropping marker %s: index out of range (%s candidates)", marker, len(self.quotes)
            )
            return None

        quote = self.quotes[match.index - 1]
        if match.sentence_range is not None:
            start, end = match.sentence_range
            text = apply_sentence_range(quote.text, start, end)
        else:
            text = format_whole_quote(quote.text)

        logger.debug("matched marker %s -> %s", marker, quote.reference)
        self.citations_emitted += 1
        return CitationSegment(
            quote=quote, text=text, index=match.index, sentence_range=match.sentence_range
        )
