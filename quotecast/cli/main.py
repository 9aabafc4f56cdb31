"""
QuoteCast CLI Main Entry Point

Streams quote-backed answers from the API server, and can run the server.
"""

import sys

import typer

from quotecast.core.env_loader import load_project_env

# Initialize environment before any other imports that depend on it
load_project_env()

from quotecast.cli._globals import set_global_config
from quotecast.cli.commands import ask, recover, serve
from quotecast.cli.config import get_config
from quotecast.core.logger import get_logger

logger = get_logger("quotecast.cli")


def config_callback(
    api_base: str = typer.Option(
        None,
        "--api-base",
        help="Backend API base URL (e.g., http://127.0.0.1:8000). Overrides QUOTECAST_API_BASE env var.",
        envvar="QUOTECAST_API_BASE",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output results in JSON format instead of plain text.",
    ),
    timeout: int = typer.Option(
        None,
        "--timeout",
        help="Request timeout in seconds. Overrides QUOTECAST_CLI_TIMEOUT env var.",
        envvar="QUOTECAST_CLI_TIMEOUT",
    ),
    language: str = typer.Option(
        None,
        "--language",
        "-l",
        help="Answer language (en, es, fr, de). Overrides QUOTECAST_CLI_LANGUAGE env var.",
    ),
) -> None:
    """Global options callback. Sets configuration for all commands."""
    output_format = "json" if json_output else None
    config = get_config(
        api_base=api_base,
        timeout=timeout,
        language=language,
        output_format=output_format,  # type: ignore
    )
    set_global_config(config)
    logger.debug("cli config: %s", config.to_dict())


app = typer.Typer(
    name="quotecast",
    help="QuoteCast: streamed answers with quotes from the source material",
    no_args_is_help=True,
    callback=config_callback,
)

app.command()(ask.ask)
app.command()(ask.chat)
app.command()(recover.recover)
app.command()(serve.serve)


def main() -> None:
    """Main entry point for CLI."""
    try:
        app()
    except KeyboardInterrupt:
        print("\n[ABORTED] Aborted by user.", file=sys.stderr)
        sys.exit(0)
    except Exception as e:
        print(f"\n[ERROR] Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
