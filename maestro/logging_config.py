"""Centralized logging configuration for maestro."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "maestro"


def setup_logging(level: str | None = None, log_dir: str = "") -> logging.Logger:
    """Set up the ``maestro`` logger with a console and optional file handler.

    Args:
        level: Log level name. Defaults to ``MAESTRO_LOG_LEVEL`` or INFO.
        log_dir: Directory for a rotating ``maestro.log``; empty disables it.

    Returns:
        The configured package logger.
    """
    level = level or os.getenv("MAESTRO_LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    # Avoid duplicate handlers
    if logger.handlers:
        for handler in logger.handlers:
            if not isinstance(handler, RotatingFileHandler):
                handler.setLevel(log_level)
        return logger

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    ))
    logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path / f"{LOGGER_NAME}.log",
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
        )
        file_handler.setLevel(logging.DEBUG)  # File gets all logs
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logger.addHandler(file_handler)

    return logger
