"""
Typed subscription channels for supervised process output.

Each ``SupervisedProcess`` owns one ``OutputChannels`` pair. Subscribers
receive classified ``LogRecord``s, one call per line, in the order the lines
were read from the pipe.

    channels = OutputChannels()
    unsubscribe = channels.stdout.subscribe(lambda record: print(record.message))
    ...
    unsubscribe()
"""

from __future__ import annotations

import logging
from typing import Callable, List

from backdrop.core.log_classifier import LogRecord

logger = logging.getLogger(__name__)

RecordListener = Callable[[LogRecord], None]


class OutputChannel:
    """Fan-out of records read from one stream (stdout or stderr)."""

    def __init__(self, label: str):
        self.label = label
        self._listeners: List[RecordListener] = []

    def subscribe(self, listener: RecordListener) -> Callable[[], None]:
        """
        Register a listener.

        Returns an unsubscribe function.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, record: LogRecord) -> None:
        # Copy so a listener may unsubscribe itself while being notified
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:
                logger.error(f"[OutputChannel:{self.label}] Listener error: {e}", exc_info=True)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)


class OutputChannels:
    """The stdout/stderr channel pair of one supervised process."""

    def __init__(self, name: str = "process"):
        self.stdout = OutputChannel(f"{name}:stdout")
        self.stderr = OutputChannel(f"{name}:stderr")

    def clear(self) -> None:
        self.stdout.clear()
        self.stderr.clear()
