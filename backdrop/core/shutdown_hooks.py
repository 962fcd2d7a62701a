"""
Per-controller interpreter-exit hooks.

Each ``Holochain`` controller owns one ``ShutdownHooks`` registry. The
registry is registered with ``atexit`` when the controller is constructed and
unregistered when it is destroyed, so a test run that creates many
controllers never leaves one controller's cleanup attached to another, and an
interpreter that exits without calling ``destroy`` still kills the daemons
and removes temporary directories.

Hooks run synchronously (no event loop is available at exit) in reverse
registration order, at most once. A failing hook is logged and the remaining
hooks still run.
"""

from __future__ import annotations

import atexit
import logging
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)


class ShutdownHooks:
    """Ordered, fire-once collection of synchronous cleanup callbacks."""

    def __init__(self, owner: str):
        self.owner = owner
        self._hooks: List[Tuple[str, Callable[[], None]]] = []
        self._registered = False
        self._fired = False

    @property
    def registered(self) -> bool:
        return self._registered

    @property
    def fired(self) -> bool:
        return self._fired

    def add(self, name: str, callback: Callable[[], None]) -> None:
        self._hooks.append((name, callback))

    def register(self) -> None:
        if self._registered:
            return
        atexit.register(self.fire)
        self._registered = True
        logger.debug(f"[ShutdownHooks:{self.owner}] Registered exit hook")

    def unregister(self) -> None:
        if not self._registered:
            return
        atexit.unregister(self.fire)
        self._registered = False
        logger.debug(f"[ShutdownHooks:{self.owner}] Unregistered exit hook")

    def fire(self) -> None:
        """Run every hook once, newest first. Errors are logged, never raised."""
        if self._fired:
            return
        self._fired = True

        for name, callback in reversed(self._hooks):
            try:
                callback()
            except Exception as e:
                logger.error(f"[ShutdownHooks:{self.owner}] Hook '{name}' failed: {e}")
