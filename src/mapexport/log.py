from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_ROOT_NAME = "mapexport"


def setup_logging(level: str = "INFO", *, console: Console | None = None) -> logging.Logger:
    """Attach a rich console handler to the package logger (idempotent)."""
    logger = logging.getLogger(_ROOT_NAME)
    logger.setLevel(level.upper())
    logger.handlers.clear()
    handler = RichHandler(console=console or Console(stderr=True), show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(name)s | %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    if name == _ROOT_NAME or name.startswith(_ROOT_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT_NAME}.{name}")
