"""Configuration: conductor config documents and startup time budgets."""

from backdrop.config.startup_timeouts import StartupTimeouts, get_timeouts, reset_timeouts

__all__ = [
    "StartupTimeouts",
    "get_timeouts",
    "reset_timeouts",
]
