"""Ask and chat commands - stream answers with quotes from the server."""

import asyncio
import json
import signal
from typing import Optional

import typer

from quotecast.cli._globals import get_global_config
from quotecast.cli.client import AsyncAPIClient
from quotecast.cli.config import CLIConfig
from quotecast.cli.renderer import ChatRenderer
from quotecast.cli.safe_output import emoji, safe_print
from quotecast.cli.stream_consumer import ChatStreamConsumer, StreamState
from quotecast.cli.visibility import VisibilityMonitor
from quotecast.core.logger import get_logger

logger = get_logger("quotecast.cli.ask")

EXIT_COMMANDS = {"/exit", "/quit", "exit", "quit"}


def install_suspend_handlers(monitor: VisibilityMonitor) -> bool:
    """
    Treat Ctrl+Z / fg as the client being hidden and shown again.

    On SIGTSTP the monitor records the hidden time and the process stops
    itself; SIGCONT marks it visible, which may arm the stale check.
    Returns False where the loop has no signal support.
    """
    if not hasattr(signal, "SIGTSTP"):
        return False
    loop = asyncio.get_running_loop()

    def _on_suspend() -> None:
        monitor.on_hidden()
        signal.raise_signal(signal.SIGSTOP)

    try:
        loop.add_signal_handler(signal.SIGTSTP, _on_suspend)
        loop.add_signal_handler(signal.SIGCONT, monitor.on_visible)
    except (NotImplementedError, RuntimeError):
        return False
    return True


def remove_suspend_handlers() -> None:
    if not hasattr(signal, "SIGTSTP"):
        return
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTSTP, signal.SIGCONT):
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):
            pass


async def ask_once(
    consumer: ChatStreamConsumer,
    renderer: Optional[ChatRenderer],
    question: str,
    *,
    language: str,
    thinking: bool,
    confederation: bool,
) -> StreamState:
    on_chunk = renderer.render_chunk if renderer else None
    on_reset = renderer.render_recovery_reset if renderer else None
    state = await consumer.send(
        question,
        on_chunk,
        on_reset,
        thinking_mode=thinking,
        target_language=language,
        include_confederation=confederation,
    )
    if renderer is None:
        return state

    renderer.finish()
    if state == StreamState.ERRORED and consumer.error_message:
        renderer.render_error(consumer.error_message)
    renderer.render_suggestions(consumer.suggestions)
    return state


def _json_result(consumer: ChatStreamConsumer, state: StreamState) -> str:
    payload = {
        "responseId": consumer.response_id,
        "state": state.value,
        "text": consumer.response_text,
        "quotes": [
            c.quote.model_dump() for c in consumer.chunks if c.type == "quote" and c.quote is not None
        ],
        "suggestions": consumer.suggestions,
        "error": consumer.error_message,
    }
    return json.dumps(payload, ensure_ascii=False, indent=2)


async def _run_ask(
    config: CLIConfig, question: str, thinking: bool, confederation: bool
) -> StreamState:
    client = AsyncAPIClient(config.api_base, timeout=config.timeout)
    monitor = VisibilityMonitor()
    consumer = ChatStreamConsumer(client, monitor=monitor)
    renderer = None if config.output_format == "json" else ChatRenderer()
    install_suspend_handlers(monitor)
    try:
        state = await ask_once(
            consumer,
            renderer,
            question,
            language=config.language,
            thinking=thinking,
            confederation=confederation,
        )
        if renderer is None:
            safe_print(_json_result(consumer, state))
        return state
    finally:
        remove_suspend_handlers()
        await consumer.aclose()
        monitor.close()
        await client.close()


def ask(
    question: str = typer.Argument(..., help="Question to answer from the source material"),
    thinking: bool = typer.Option(False, "--thinking", help="Ask for a more thorough answer"),
    confederation: bool = typer.Option(
        False, "--confederation", help="Also search the confederation passages"
    ),
) -> None:
    """Ask one question and stream the answer."""
    config = get_global_config()
    state = asyncio.run(_run_ask(config, question, thinking, confederation))
    if state == StreamState.ERRORED:
        raise typer.Exit(code=1)


async def _run_chat(config: CLIConfig, thinking: bool, confederation: bool) -> None:
    client = AsyncAPIClient(config.api_base, timeout=config.timeout)
    monitor = VisibilityMonitor()
    consumer = ChatStreamConsumer(client, monitor=monitor)
    renderer = ChatRenderer()
    install_suspend_handlers(monitor)

    safe_print(f"{emoji('💬', '[CHAT]')} QuoteCast chat. /new starts over, /exit quits.")
    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "\n> ")
            except EOFError:
                break
            text = line.strip()
            if not text:
                continue
            if text.lower() in EXIT_COMMANDS:
                break
            if text.lower() == "/new":
                consumer.reset()
                safe_print("Started a new conversation.")
                continue
            safe_print("")
            await ask_once(
                consumer,
                renderer,
                text,
                language=config.language,
                thinking=thinking,
                confederation=confederation,
            )
    finally:
        remove_suspend_handlers()
        await consumer.aclose()
        monitor.close()
        await client.close()


def chat(
    thinking: bool = typer.Option(False, "--thinking", help="Ask for more thorough answers"),
    confederation: bool = typer.Option(
        False, "--confederation", help="Also search the confederation passages"
    ),
) -> None:
    """Interactive conversation; history is kept between questions."""
    config = get_global_config()
    asyncio.run(_run_chat(config, thinking, confederation))
