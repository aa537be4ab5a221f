from __future__ import annotations

import logging
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "comfyflow"

# Client libraries that log every request at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore")


def get_console(*, stderr: bool = False) -> Console:
    return Console(stderr=stderr)


def _as_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    # getLevelName maps known names to ints and anything else to "Level X".
    numeric = logging.getLevelName(level.strip().upper())
    return numeric if isinstance(numeric, int) else logging.INFO


def setup_logging(level: Union[str, int] = "INFO", logger_name: str = LOGGER_NAME) -> logging.Logger:
    """Send comfyflow logs to stderr through Rich; stdout stays free for results.

    Safe to call more than once: the handler is installed once and only its
    level changes. Request-level logs from httpx are shown only at DEBUG.
    """
    numeric = _as_level(level)

    logger = logging.getLogger(logger_name)
    logger.setLevel(numeric)
    logger.propagate = False

    handler = next((h for h in logger.handlers if isinstance(h, RichHandler)), None)
    if handler is None:
        handler = RichHandler(console=get_console(stderr=True), rich_tracebacks=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        logger.addHandler(handler)
    handler.setLevel(numeric)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if numeric <= logging.DEBUG else logging.WARNING)
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or LOGGER_NAME)
