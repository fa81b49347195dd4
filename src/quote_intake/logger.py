# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for quote-intake.

Modules obtain their logger through :func:`get_logger` (or
``logging.getLogger(__name__)``) and never install handlers themselves.
Handlers, level and format are set exactly once by the entry point through
:func:`configure_logging`.

Example:
    Typical usage in a module::

        from quote_intake.logger import get_logger

        logger = get_logger("RetentionEngine")
        logger.info("Removed %s", path)
"""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "QuoteIntake") -> logging.Logger:
    """Retrieve a logger instance.

    Args:
        name: The logger name. Defaults to "QuoteIntake".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Configure the root logger for an entry point.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR). Unknown names fall
            back to INFO.
        log_file: Optional file that receives the same records as stderr.
            The parent directory is created when missing.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
