"""Logging setup for mpv_stt_build.

The CLI renders log records through rich; during a matrix run the package
logger is additionally teed into the shared build log so orchestrator
messages and compiler output appear there in execution order.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "mpv_stt_build"

BUILD_LOG_FORMAT = "%(levelname)s[%(asctime)s] %(message)s"
BUILD_LOG_DATEFMT = "%H:%M:%S"


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Install a rich handler on the package logger.

    Calling this more than once replaces the previously installed handler.

    Args:
        level: Logging level name.
        console: Console to render to (stderr by default).
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)


@contextmanager
def build_log_handler(log_path: Path, level: int = logging.INFO) -> Iterator[Path]:
    """Tee package log records into the shared build log.

    Args:
        log_path: Build log file, opened in append mode.
        level: Minimum level written to the file.

    Yields:
        The log path.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(PACKAGE_LOGGER)
    handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(BUILD_LOG_FORMAT, BUILD_LOG_DATEFMT))
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > level:
        previous_level = logger.level
        logger.setLevel(level)
    else:
        previous_level = None
    try:
        yield log_path
    finally:
        logger.removeHandler(handler)
        handler.close()
        if previous_level is not None:
            logger.setLevel(previous_level)


__all__ = ["PACKAGE_LOGGER", "build_log_handler", "configure_logging"]
