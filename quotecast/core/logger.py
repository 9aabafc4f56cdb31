import logging
import os

_CONFIGURED = False


def _configure_root() -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return
    _CONFIGURED = True

    level_name = os.getenv("QUOTECAST_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger("quotecast")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
        root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``quotecast`` namespace."""

    _configure_root()
    if not name.startswith("quotecast"):
        name = f"quotecast.{name}"
    return logging.getLogger(name)
