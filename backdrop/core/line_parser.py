"""
Line Parser
===========

Turns arbitrary chunks read from a subprocess pipe into complete lines.

    parser = LineParser()
    parser.write(b"first li")
    parser.write(b"ne\nsecond")
    parser.drain()      # ["first line"]
    parser.flush()      # "second"  (only when the stream has closed)

Bytes are decoded incrementally, so a multi-byte UTF-8 character split across
two reads is reassembled rather than replaced. The trailing unterminated
fragment is never emitted by ``drain``; the owner of the stream calls
``flush`` once it reaches EOF.
"""

from __future__ import annotations

import codecs
from typing import List, Optional, Union


class LineParser:
    """Accumulates chunks and hands back newline-terminated lines exactly once."""

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._remnant = ""
        self._lines: List[str] = []

    def write(self, chunk: Union[bytes, bytearray, str]) -> None:
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk

        if not text:
            return

        parts = text.split("\n")
        parts[0] = self._remnant + parts[0]
        self._remnant = parts.pop()
        self._lines.extend(parts)

    def drain(self) -> List[str]:
        """Return and forget every complete line assembled so far."""
        lines = self._lines
        self._lines = []
        return lines

    def flush(self) -> Optional[str]:
        """
        Return the trailing partial line (if any) and reset the remainder.

        Only meaningful once the stream is closed; returns None when there
        is nothing left.
        """
        tail = self._decoder.decode(b"", final=True)
        remnant = self._remnant + tail
        self._remnant = ""
        return remnant if remnant else None

    @property
    def pending(self) -> str:
        """The unterminated text currently held back."""
        return self._remnant
