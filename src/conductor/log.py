from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    *,
    console_output: bool = True,
    format_string: str | None = None,
) -> None:
    """Replace loguru's default sink with conductor's console/file sinks.

    Raises:
        ValueError: If ``level`` is not a known log level.
    """
    normalized = level.upper()
    if normalized not in VALID_LEVELS:
        raise ValueError(
            f"Invalid log level: '{level}'. Must be one of: {', '.join(sorted(VALID_LEVELS))}"
        )

    logger.remove()
    fmt = format_string or DEFAULT_FORMAT

    if console_output:
        logger.add(sys.stderr, format=fmt, level=normalized, colorize=True)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(str(path), format=fmt, level=normalized, rotation="20 MB", enqueue=True)

    logger.debug(f"Logging configured: level={normalized}, file={log_file or '-'}")
