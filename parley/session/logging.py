"""Logging setup for the parley namespace."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "parley"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(
    level: int = logging.WARNING,
    log_file: Path | None = None,
    file_level: int = logging.INFO,
) -> logging.Logger:
    """Configure the `parley` namespace logger.

    Console output goes to stderr at `level`. When `log_file` is given, a
    rotating file handler (5MB per file, 3 backups) is added at
    `file_level`. Existing handlers are replaced, so calling this again
    reconfigures rather than duplicates output.

    Returns:
        The configured `parley` logger.
    """
    parley_logger = logging.getLogger(LOGGER_NAME)
    for handler in list(parley_logger.handlers):
        parley_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    parley_logger.addHandler(console_handler)

    effective = level
    if log_file is not None:
        log_file = log_file.expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        parley_logger.addHandler(file_handler)
        effective = min(level, file_level)

    parley_logger.setLevel(effective)
    parley_logger.propagate = False
    return parley_logger
