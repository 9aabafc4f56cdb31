"""
Terminal-safe output for the CLI.

Prints as-is when the terminal encoding allows it; otherwise replaces the
characters it cannot encode instead of crashing mid-stream.
"""

import sys

import typer


def supports_unicode() -> bool:
    try:
        "✅".encode(sys.stdout.encoding or "utf-8")
        return True
    except (UnicodeEncodeError, LookupError):
        return False


_UNICODE_SUPPORT = supports_unicode()


def emoji(unicode_char: str, ascii_fallback: str) -> str:
    """Return the symbol, or a bracketed ASCII label on limited terminals."""
    return unicode_char if _UNICODE_SUPPORT else ascii_fallback


def _sanitize(text: str, encoding: str) -> str:
    try:
        return text.encode(encoding, errors="replace").decode(encoding, errors="replace")
    except LookupError:
        return text.encode("ascii", errors="replace").decode("ascii")


def safe_print(text: str, end: str = "\n", flush: bool = False, err: bool = False) -> None:
    if err:
        try:
            typer.echo(text, err=True, nl=(end == "\n"))
        except UnicodeEncodeError:
            typer.echo(_sanitize(text, sys.stderr.encoding or "utf-8"), err=True, nl=(end == "\n"))
        return

    try:
        print(text, end=end, flush=flush)
    except UnicodeEncodeError:
        print(_sanitize(text, sys.stdout.encoding or "utf-8"), end=end, flush=flush)


def safe_print_err(text: str) -> None:
    safe_print(text, err=True)
