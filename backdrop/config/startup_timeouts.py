"""
Centralized Timeout Configuration for Backdrop Startup/Shutdown
===============================================================

Single source of truth for the time budgets used while launching, talking to
and tearing down the keystore and conductor daemons. All values are
configurable via environment variables with sensible defaults.

Design Principles:
- All env vars use the BACKDROP_ prefix
- Validation logs warnings but uses defaults (never crashes on bad config)
- All values are seconds

Environment Variables:
----------------------

- BACKDROP_MAX_TIMEOUT: Safety cap for any single budget (default: 900.0s)
- BACKDROP_START_TIMEOUT: Default deadline for Holochain.start() (default: 60.0s)
- BACKDROP_ADMIN_TIMEOUT: Per-request admin RPC timeout (default: 30.0s)
- BACKDROP_STOP_GRACE: Wait after SIGTERM before SIGKILL (default: 10.0s)
- BACKDROP_KEYSTORE_INIT_TIMEOUT: Ceiling for `lair-keystore init` (default: 30.0s)
- BACKDROP_PORT_PROBE_TIMEOUT: Socket bind probe timeout (default: 1.0s)

Usage:
    from backdrop.config.startup_timeouts import get_timeouts

    timeouts = get_timeouts()
    await holochain.start(timeouts.start_timeout)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from backdrop.utils.env_config import get_env_float

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULT VALUES
# =============================================================================

_DEFAULT_MAX_TIMEOUT = 900.0
_DEFAULT_START_TIMEOUT = 60.0
_DEFAULT_ADMIN_TIMEOUT = 30.0
_DEFAULT_STOP_GRACE = 10.0
_DEFAULT_KEYSTORE_INIT_TIMEOUT = 30.0
_DEFAULT_PORT_PROBE_TIMEOUT = 1.0


# =============================================================================
# STARTUP TIMEOUTS CONFIGURATION CLASS
# =============================================================================


@dataclass
class StartupTimeouts:
    """
    Timeout configuration loaded from the environment at instantiation time.

    Example:
        timeouts = StartupTimeouts()
        status = await process.stop(grace=timeouts.stop_grace)
    """

    max_timeout: float = field(default_factory=lambda: get_env_float(
        "BACKDROP_MAX_TIMEOUT", _DEFAULT_MAX_TIMEOUT, min_val=1.0
    ))
    """Maximum allowed value for any other budget."""

    start_timeout: float = field(default_factory=lambda: get_env_float(
        "BACKDROP_START_TIMEOUT", _DEFAULT_START_TIMEOUT, min_val=0.001
    ))
    """Overall deadline for keystore init + both daemon launches."""

    admin_timeout: float = field(default_factory=lambda: get_env_float(
        "BACKDROP_ADMIN_TIMEOUT", _DEFAULT_ADMIN_TIMEOUT, min_val=0.1
    ))
    """Per-request admin RPC timeout."""

    stop_grace: float = field(default_factory=lambda: get_env_float(
        "BACKDROP_STOP_GRACE", _DEFAULT_STOP_GRACE, min_val=0.1
    ))
    """Wait time after SIGTERM before escalating to SIGKILL."""

    keystore_init_timeout: float = field(default_factory=lambda: get_env_float(
        "BACKDROP_KEYSTORE_INIT_TIMEOUT", _DEFAULT_KEYSTORE_INIT_TIMEOUT, min_val=0.1
    ))
    """Ceiling for the one-off keystore initialisation subprocess."""

    port_probe_timeout: float = field(default_factory=lambda: get_env_float(
        "BACKDROP_PORT_PROBE_TIMEOUT", _DEFAULT_PORT_PROBE_TIMEOUT, min_val=0.05
    ))
    """Timeout for the socket bind used to find a free port."""

    def __post_init__(self) -> None:
        for field_name in (
            "start_timeout",
            "admin_timeout",
            "stop_grace",
            "keystore_init_timeout",
            "port_probe_timeout",
        ):
            value = getattr(self, field_name)
            if value > self.max_timeout:
                logger.warning(
                    f"[StartupTimeouts] {field_name}={value} exceeds max_timeout={self.max_timeout}, "
                    f"capping to max_timeout"
                )
                object.__setattr__(self, field_name, self.max_timeout)

        logger.debug(
            f"[StartupTimeouts] Initialized with start_timeout={self.start_timeout}, "
            f"stop_grace={self.stop_grace}"
        )

    def validate_timeout(self, timeout: float, name: str = "timeout") -> float:
        """
        Validate a caller-supplied timeout.

        Raises:
            ValueError: If timeout is <= 0
        """
        if timeout <= 0:
            raise ValueError(f"{name} must be positive, got {timeout}")

        if timeout > self.max_timeout:
            logger.warning(
                f"[StartupTimeouts] {name}={timeout} exceeds max_timeout={self.max_timeout}, "
                f"clamping to max"
            )
            return self.max_timeout

        return timeout

    def to_dict(self) -> dict:
        return {
            "max_timeout": self.max_timeout,
            "start_timeout": self.start_timeout,
            "admin_timeout": self.admin_timeout,
            "stop_grace": self.stop_grace,
            "keystore_init_timeout": self.keystore_init_timeout,
            "port_probe_timeout": self.port_probe_timeout,
        }


# =============================================================================
# MODULE-LEVEL SINGLETON
# =============================================================================

_timeouts_instance: Optional[StartupTimeouts] = None


def get_timeouts() -> StartupTimeouts:
    """Get the lazily-created module-level StartupTimeouts."""
    global _timeouts_instance
    if _timeouts_instance is None:
        _timeouts_instance = StartupTimeouts()
    return _timeouts_instance


def reset_timeouts() -> None:
    """
    Reset the module-level singleton (primarily for testing).

    The next get_timeouts() call re-reads the environment.
    """
    global _timeouts_instance
    _timeouts_instance = None
