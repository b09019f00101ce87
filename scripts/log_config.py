#!/usr/bin/env python3
"""
Unified logging setup for the doh5 proxy

The global level is controlled through environment variables:
- LOG_LEVEL: Python logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- DEBUG: "1"/"true" switches to DEBUG when LOG_LEVEL is unset

Usage:
    from log_config import setup_logging, get_logger

    # once, at the entry point
    setup_logging()

    logger = get_logger(__name__)
    logger.info("Hello")
"""

import logging
import os
import sys
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries whose INFO output is noise for a proxy
NOISY_LOGGERS = ("aiohttp", "aiohttp_socks", "python_socks", "asyncio")

_logging_configured = False


def get_log_level() -> int:
    """Read the log level from the environment

    Checked in order:
    1. LOG_LEVEL - explicit level name
    2. DEBUG - "1", "true", "yes" or "on" selects DEBUG

    Returns:
        logging level constant
    """
    level_str = os.environ.get("LOG_LEVEL", "").upper().strip()

    if not level_str:
        debug_flag = os.environ.get("DEBUG", "").lower().strip()
        if debug_flag in ("1", "true", "yes", "on"):
            level_str = "DEBUG"
        else:
            level_str = DEFAULT_LOG_LEVEL

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
        "FATAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.INFO)


def setup_logging(
    name: Optional[str] = None,
    level: Optional[int] = None,
    force: bool = False
) -> logging.Logger:
    """Configure root logging

    Args:
        name: logger to return, None for the root logger
        level: log level, None reads it from the environment
        force: reconfigure even if already configured

    Returns:
        the configured Logger
    """
    global _logging_configured

    if _logging_configured and not force:
        return logging.getLogger(name)

    if level is None:
        level = get_log_level()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=force or not _logging_configured
    )

    for lib_logger in NOISY_LOGGERS:
        logging.getLogger(lib_logger).setLevel(max(level, logging.WARNING))

    _logging_configured = True

    logger = logging.getLogger(name)
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}")

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a named logger, configuring logging on first use"""
    if not _logging_configured:
        setup_logging()

    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """Change the root log level at runtime"""
    logging.getLogger().setLevel(level)
    logging.info(f"Log level changed to: {logging.getLevelName(level)}")


def disable_logging() -> None:
    """Discard all log output from here on (quiet mode)"""
    logging.disable(logging.CRITICAL)


def enable_logging() -> None:
    """Undo disable_logging()"""
    logging.disable(logging.NOTSET)


DEBUG = logging.DEBUG
