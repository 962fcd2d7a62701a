"""
Backdrop - Holochain development & test harness
================================================

Provisions, launches, supervises and tears down a ``lair-keystore`` +
``holochain`` conductor pair, and installs test apps against it.

    from backdrop import Holochain

    holochain = Holochain()
    await holochain.start()
    ...
    await holochain.destroy()

Heavy modules are loaded on first access.
"""
from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING

from backdrop.utils.env_config import get_env_str

if TYPE_CHECKING:
    from .core.holochain import ConfigOptions, Holochain, HolochainOptions
    from .core.errors import BackdropError

logger = logging.getLogger(__name__)

__version__ = "0.1.0"

# Library loggers stay quiet unless LOG_LEVEL asks otherwise; handlers are
# the application's business.
_log_level = (get_env_str("LOG_LEVEL") or "").upper()
if isinstance(logging.getLevelName(_log_level), int):
    logger.setLevel(_log_level)

_lazy_modules = {
    "Holochain": (".core.holochain", "Holochain"),
    "HolochainOptions": (".core.holochain", "HolochainOptions"),
    "ConfigOptions": (".core.holochain", "ConfigOptions"),
    "LifecycleState": (".core.holochain", "LifecycleState"),
    "AdminClient": (".clients.admin_client", "AdminClient"),
    "BackdropError": (".core.errors", "BackdropError"),
    "ConfigurationError": (".core.errors", "ConfigurationError"),
    "ControllerStateError": (".core.errors", "ControllerStateError"),
    "ProcessStartError": (".core.errors", "ProcessStartError"),
    "StartupTimeoutError": (".core.errors", "StartupTimeoutError"),
    "AdminRPCError": (".core.errors", "AdminRPCError"),
    "AppEnableError": (".core.errors", "AppEnableError"),
}

__all__ = ["__version__", *_lazy_modules]


def __getattr__(name: str):
    """Import the backing module the first time one of its names is accessed."""
    if name in _lazy_modules:
        module_path, attr_name = _lazy_modules[name]
        module = importlib.import_module(module_path, package=__name__)
        value = getattr(module, attr_name)
        globals()[name] = value
        logger.debug(f"JIT loaded: {name}")
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
