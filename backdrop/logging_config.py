"""
Console Logging Configuration
=============================

Colourised console logging for the ``hc-backdrop`` CLI. Library code only
ever calls ``logging.getLogger(__name__)``; handlers are installed here, by
the application.

Verbosity counts are shared between Python logging and the ``RUST_LOG``
level forwarded to the daemons:

    count   python      RUST_LOG
    0       CRITICAL    error
    1       ERROR       error
    2       WARNING     warn      (default)
    3       WARNING     warn
    4       INFO        info
    5       DEBUG       debug
    6+      DEBUG       trace
"""

import logging
import sys
from datetime import datetime
from typing import Optional

import colorama
from colorama import Fore, Style

from backdrop.utils.env_config import get_env_str

DEFAULT_VERBOSITY = 2

RUST_LOG_LEVELS = {
    0: "error",
    1: "error",
    2: "warn",
    3: "warn",
    4: "info",
    5: "debug",
    6: "trace",
}

PYTHON_LOG_LEVELS = {
    0: logging.CRITICAL,
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.WARNING,
    4: logging.INFO,
    5: logging.DEBUG,
    6: logging.DEBUG,
}


def _clamp(verbosity: int) -> int:
    return max(0, min(verbosity, 6))


def rust_log_level(verbosity: int) -> str:
    return RUST_LOG_LEVELS[_clamp(verbosity)]


def python_log_level(verbosity: int) -> int:
    return PYTHON_LOG_LEVELS[_clamp(verbosity)]


class ColorLogFormatter(logging.Formatter):
    """Timestamp, coloured level and logger name, then the message."""

    COLORS = {
        logging.DEBUG: Fore.CYAN,
        logging.INFO: Fore.GREEN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def format(self, record):
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]
        color = self.COLORS.get(record.levelno, Fore.WHITE)

        line = (
            f"{Fore.BLUE}{timestamp}{Style.RESET_ALL} "
            f"{color}{record.levelname:<8}{Style.RESET_ALL} "
            f"{Style.DIM}{record.name}{Style.RESET_ALL} "
            f"{record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(verbosity: int = DEFAULT_VERBOSITY, quiet: bool = False) -> int:
    """
    Install a coloured stderr handler on the ``backdrop`` logger.

    ``LOG_LEVEL`` in the environment overrides the level derived from
    ``verbosity``. Returns the effective level.
    """
    colorama.init()

    if quiet:
        verbosity = 1

    level = python_log_level(verbosity)
    override = (get_env_str("LOG_LEVEL") or "").upper()
    if isinstance(logging.getLevelName(override), int):
        level = logging.getLevelName(override)

    root = logging.getLogger("backdrop")
    for handler in list(root.handlers):
        if getattr(handler, "_backdrop_console", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColorLogFormatter())
    handler._backdrop_console = True
    root.addHandler(handler)
    root.setLevel(level)
    return level


def get_verbosity_env(verbosity: int, quiet: bool = False, current: Optional[str] = None) -> str:
    """The ``RUST_LOG`` value for the daemons; an explicit ``current`` wins."""
    if current:
        return current
    return rust_log_level(1 if quiet else verbosity)
