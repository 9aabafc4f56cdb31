"""
QuoteCast CLI Configuration Module

Handles configuration priority:
  1. CLI flags (highest priority)
  2. Environment variables
  3. Default values (lowest priority)

Configuration sources:
  - API_BASE: QUOTECAST_API_BASE (env) -> http://127.0.0.1:8000 (default)
  - TIMEOUT: QUOTECAST_CLI_TIMEOUT (env) -> 30 (default, seconds)
  - LANGUAGE: QUOTECAST_CLI_LANGUAGE (env) -> en (default)
  - OUTPUT_FORMAT: QUOTECAST_CLI_OUTPUT_FORMAT (env) -> text (default, text|json)
"""

import os
from dataclasses import dataclass
from typing import Literal, Optional

DEFAULT_API_BASE = "http://127.0.0.1:8000"


@dataclass
class CLIConfig:
    """CLI Configuration object."""

    api_base: str = DEFAULT_API_BASE
    timeout: int = 30  # seconds
    language: str = "en"
    output_format: Literal["text", "json"] = "text"

    def to_dict(self) -> dict:
        return {
            "api_base": self.api_base,
            "timeout": self.timeout,
            "language": self.language,
            "output_format": self.output_format,
        }


def get_api_base_from_env() -> str:
    return os.getenv("QUOTECAST_API_BASE", "").strip() or DEFAULT_API_BASE


def get_timeout_from_env() -> int:
    """Source: QUOTECAST_CLI_TIMEOUT (seconds), default 30."""
    raw = os.getenv("QUOTECAST_CLI_TIMEOUT", "").strip()
    if raw:
        try:
            value = int(raw)
        except ValueError:
            return 30
        if value > 0:
            return value
    return 30


def get_language_from_env() -> str:
    return os.getenv("QUOTECAST_CLI_LANGUAGE", "").strip().lower() or "en"


def get_output_format_from_env() -> Literal["text", "json"]:
    output_format = os.getenv("QUOTECAST_CLI_OUTPUT_FORMAT", "text").lower()
    if output_format == "json":
        return "json"
    return "text"


def get_config(
    api_base: Optional[str] = None,
    timeout: Optional[int] = None,
    language: Optional[str] = None,
    output_format: Optional[Literal["text", "json"]] = None,
) -> CLIConfig:
    """Build CLI configuration with priority: CLI flag > env > default."""
    return CLIConfig(
        api_base=api_base or get_api_base_from_env(),
        timeout=timeout or get_timeout_from_env(),
        language=(language or get_language_from_env()).lower(),
        output_format=output_format or get_output_format_from_env(),
    )
