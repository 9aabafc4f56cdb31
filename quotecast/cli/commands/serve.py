"""Serve command - run the API server."""

import typer
import uvicorn


def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
) -> None:
    """Start the streaming chat API."""
    uvicorn.run("quotecast.main:app", host=host, port=port, reload=reload)
