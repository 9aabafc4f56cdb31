"""Recover command - show what the server cached for a response."""

import asyncio
import json
from typing import Optional

import typer

from quotecast.cli._globals import get_global_config
from quotecast.cli.client import AsyncAPIClient
from quotecast.cli.config import CLIConfig
from quotecast.cli.renderer import ChatRenderer
from quotecast.cli.safe_output import emoji, safe_print, safe_print_err
from quotecast.cli.stream_consumer import ChatStreamConsumer
from quotecast.schemas.chat import RecoveryResponse


async def _fetch(config: CLIConfig, response_id: str) -> Optional[RecoveryResponse]:
    async with AsyncAPIClient(config.api_base, timeout=config.timeout) as client:
        return await client.fetch_recovery(response_id)


def recover(
    response_id: str = typer.Argument(..., help="responseId from the session event"),
    raw: bool = typer.Option(False, "--raw", help="Print cached events instead of the answer"),
) -> None:
    """Replay a cached response by id."""
    config = get_global_config()
    cached = asyncio.run(_fetch(config, response_id))
    if cached is None:
        safe_print_err(f"{emoji('❌', '[ERROR]')} No cached response for {response_id}")
        raise typer.Exit(code=1)

    if raw or config.output_format == "json":
        safe_print(json.dumps(cached.model_dump(mode="json"), ensure_ascii=False, indent=2))
        return

    renderer = ChatRenderer()
    # replay only touches local state; no client calls are made
    consumer = ChatStreamConsumer(client=None)  # type: ignore[arg-type]
    consumer.replay(cached.events, renderer.render_chunk)
    renderer.finish()
    renderer.render_suggestions(consumer.suggestions)
    if not cached.complete:
        safe_print(f"\n{emoji('⏳', '[PARTIAL]')} The response is still being generated or was cut short.")
