"""
Exception taxonomy for backdrop.

    BackdropError
    ├── ConfigurationError        setup/config problems, fatal to the caller
    │   └── PortAllocationError   no free port could be probed
    ├── ControllerStateError      lifecycle call in the wrong state
    ├── ProcessStartError         spawn failure or exit before readiness
    ├── StartupTimeoutError       a lifecycle step ran out of budget
    ├── BundleSourceError         app bundle input of unknown shape
    └── AdminRPCError             error payload or transport failure from the admin RPC
        └── AppEnableError        enable-app reported one or more errors
"""

from __future__ import annotations

from typing import Any, List, Optional


class BackdropError(Exception):
    """Base class for every error raised by backdrop."""


class ConfigurationError(BackdropError):
    """Raised when the conductor configuration cannot be resolved."""


class PortAllocationError(ConfigurationError):
    """Raised when no free TCP port can be allocated."""


class ControllerStateError(BackdropError):
    """Raised when a lifecycle operation is called in the wrong state."""


class ProcessStartError(BackdropError):
    """Raised when a supervised process fails to spawn or exits before it is ready."""

    def __init__(
        self,
        name: str,
        message: str,
        code: Optional[int] = None,
        signal: Optional[str] = None,
        output: str = "",
    ):
        self.name = name
        self.code = code
        self.signal = signal
        self.output = output
        super().__init__(message)


class StartupTimeoutError(BackdropError, TimeoutError):
    """Raised when an operation exceeds its time budget."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Failed to {operation} within {timeout:g}s")


class BundleSourceError(BackdropError, TypeError):
    """Raised when an app config's bundle does not match any known source shape."""


class AdminRPCError(BackdropError):
    """Raised when the admin RPC returns an error payload or the connection fails."""

    def __init__(self, message: str, error_type: Optional[str] = None, data: Any = None):
        self.error_type = error_type
        self.data = data
        super().__init__(message)


class AppEnableError(AdminRPCError):
    """Raised when enabling an installed app reports errors."""

    def __init__(self, app_id: str, errors: List[Any]):
        self.app_id = app_id
        self.errors = list(errors)
        listing = "\n".join(f"  - {i}: {err}" for i, err in enumerate(self.errors))
        super().__init__(
            f"Failed to enable app '{app_id}' with {len(self.errors)} error(s)\n{listing}",
            error_type="enable_app",
            data=self.errors,
        )
