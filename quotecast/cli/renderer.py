"""Plain terminal rendering for streamed answers."""

from __future__ import annotations

import textwrap

from quotecast.cli.safe_output import emoji, safe_print
from quotecast.cli.stream_consumer import AnimationChunk


class ChatRenderer:
    """Text chunks are printed as they arrive; quotes as indented blocks."""

    _QUOTE_MARK = emoji("❝", "[QUOTE]")
    _RECOVERED_MARK = emoji("↻", "[RECOVERED]")
    _ERROR_MARK = emoji("❌", "[ERROR]")
    _SUGGESTION_MARK = emoji("\U0001f4a1", "[NEXT]")

    def __init__(self, width: int = 88):
        self.width = width
        self._at_line_start = True

    def render_chunk(self, chunk: AnimationChunk) -> None:
        if chunk.type == "quote" and chunk.quote is not None:
            self.render_quote(chunk.quote.text, chunk.quote.reference, chunk.quote.url)
            return
        self.render_text(chunk.content)

    def render_text(self, content: str) -> None:
        if not content:
            return
        safe_print(content, end="", flush=True)
        self._at_line_start = content.endswith("\n")

    def render_quote(self, text: str, reference: str, url: str = "") -> None:
        if not self._at_line_start:
            safe_print("")
        safe_print(f"\n{self._QUOTE_MARK} {reference}")
        for paragraph in text.split("\n\n"):
            body = textwrap.fill(
                paragraph.strip(),
                width=self.width,
                initial_indent="    ",
                subsequent_indent="    ",
            )
            safe_print(body)
        if url:
            safe_print(f"    {url}")
        safe_print("", flush=True)
        self._at_line_start = True

    def render_recovery_reset(self) -> None:
        safe_print(f"\n\n{self._RECOVERED_MARK} connection lost, showing the recovered response\n")
        self._at_line_start = True

    def render_suggestions(self, items: list[str]) -> None:
        if not items:
            return
        safe_print(f"\n{self._SUGGESTION_MARK} Follow-up ideas:")
        for item in items:
            safe_print(f"  - {item}")

    def render_error(self, message: str) -> None:
        safe_print(f"\n{self._ERROR_MARK} {message}", err=True)

    def finish(self) -> None:
        if not self._at_line_start:
            safe_print("")
        self._at_line_start = True
