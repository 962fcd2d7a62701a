"""
Environment variable helpers.

All readers return the default (and log a warning) when a variable is set to
something that cannot be parsed, so a bad environment never crashes startup.

Usage:
    from backdrop.utils.env_config import get_env_float

    grace = get_env_float("BACKDROP_STOP_GRACE", 10.0, min_val=0.1)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


def get_env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    """Return the variable, treating an empty string as unset."""
    value = os.environ.get(key)
    if value is None or value.strip() == "":
        return default
    return value


def get_env_float(
    key: str,
    default: float,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> float:
    """Read a float, clamping to the optional bounds."""
    raw = os.environ.get(key)
    if raw is None or raw.strip() == "":
        return default

    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"[EnvConfig] {key}={raw!r} is not a number, using default {default}")
        return default

    if min_val is not None and value < min_val:
        logger.warning(f"[EnvConfig] {key}={value} below minimum {min_val}, using {min_val}")
        return min_val
    if max_val is not None and value > max_val:
        logger.warning(f"[EnvConfig] {key}={value} above maximum {max_val}, using {max_val}")
        return max_val
    return value


def get_env_int(key: str, default: int, min_val: Optional[int] = None) -> int:
    raw = os.environ.get(key)
    if raw is None or raw.strip() == "":
        return default

    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"[EnvConfig] {key}={raw!r} is not an integer, using default {default}")
        return default

    if min_val is not None and value < min_val:
        logger.warning(f"[EnvConfig] {key}={value} below minimum {min_val}, using {min_val}")
        return min_val
    return value


def get_env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None or raw.strip() == "":
        return default

    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False

    logger.warning(f"[EnvConfig] {key}={raw!r} is not a boolean, using default {default}")
    return default
