"""
Single-fire gate used for readiness, exit and destroy-once signalling.

A ``OneShot`` settles exactly once, either with a value or with an exception.
Later attempts to settle it are ignored and reported through the return value,
so racing producers (a readiness marker vs. an unexpected exit) never need
their own bookkeeping. Any number of waiters may await it before or after it
settles.

Unlike a bare ``asyncio.Future``, an unobserved failure is not reported as
"exception never retrieved": a gate that nobody waits on is normal here.
"""

from __future__ import annotations

import asyncio
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class OneShot(Generic[T]):
    """A settle-once gate carrying a success value or a failure exception."""

    def __init__(self, name: str = "gate"):
        self.name = name
        self._event: Optional[asyncio.Event] = None
        self._settled = False
        self._value: Optional[T] = None
        self._error: Optional[BaseException] = None

    def _get_event(self) -> asyncio.Event:
        # Created on first use so a gate can be built outside a running loop
        if self._event is None:
            self._event = asyncio.Event()
            if self._settled:
                self._event.set()
        return self._event

    @property
    def settled(self) -> bool:
        return self._settled

    @property
    def failed(self) -> bool:
        return self._settled and self._error is not None

    @property
    def value(self) -> Optional[T]:
        return self._value

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def fulfill(self, value: T) -> bool:
        """Settle with a value. Returns False if the gate had already settled."""
        if self._settled:
            return False
        self._settled = True
        self._value = value
        if self._event is not None:
            self._event.set()
        return True

    def reject(self, error: BaseException) -> bool:
        """Settle with an error. Returns False if the gate had already settled."""
        if self._settled:
            return False
        self._settled = True
        self._error = error
        if self._event is not None:
            self._event.set()
        return True

    async def wait(self, timeout: Optional[float] = None) -> T:
        """
        Wait for the gate to settle.

        Raises:
            asyncio.TimeoutError: if ``timeout`` elapses first
            the rejection error: if the gate was rejected
        """
        if not self._settled:
            event = self._get_event()
            if timeout is None:
                await event.wait()
            else:
                await asyncio.wait_for(event.wait(), timeout=max(timeout, 0.0))

        if self._error is not None:
            raise self._error
        return self._value  # type: ignore[return-value]

    def __repr__(self) -> str:
        state = "pending"
        if self._settled:
            state = "rejected" if self._error is not None else "fulfilled"
        return f"<OneShot {self.name} {state}>"
