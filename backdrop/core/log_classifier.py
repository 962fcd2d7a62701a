"""
Daemon Log Classifier
=====================

Classifies one complete line of keystore/conductor output and pulls out its
timestamp, severity and source provenance.

Line shapes handled:

    2023-04-05T23:54:56.267039Z  INFO holochain: crates/holochain/src/bin/holochain/main.rs:96: Conductor successfully initialized.
    |                          | |   | |
    0                         27 28 33 34

    structured   - timestamp-prefixed tracing output, further split into
                   workflow / group-location / wasm-trace / plain variants
    multiline    - continuation of a pretty-printed value (leading whitespace
                   or a lone closing bracket)
    print        - anything else that a daemon printed for humans
                   (banners, "Conductor ready.", "# lair-keystore running #")
    unrecognized - looked like a timestamped line but the timestamp was invalid

``classify_line`` is total: malformed input yields an ``unrecognized`` (or
``print``) record, never an exception.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from colorama import Fore, Style

# =============================================================================
# Patterns
# =============================================================================

ESCAPE_CODE_RE = re.compile(
    r"[\u001b\u009b][\[()#;?]*(?:[0-9]{1,4}(?:;[0-9]{0,4})*)?[0-9A-ORZcf-nqry=><]"
)

# Checked against the first 27 characters only
TIMESTAMP_WINDOW = 27
TIMESTAMP_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})\.(\d+)Z"
)
LEVEL_RE = re.compile(r"^\s*([A-Za-z]+)(?: (.*))?$", re.DOTALL)

# publish_dht_ops_workflow{agent=AgentPubKey(uhCAk...)}: holochain::core::workflow::publish_dht_ops_workflow: crates/holochain/src/core/workflow/publish_dht_ops_workflow.rs:46: publishing to 11 nodes
WORKFLOW_RE = re.compile(r"^(\S+\}): (\S+): (\S+):([0-9]+): (.*)$", re.DOTALL)
AGENT_RE = re.compile(r"AgentPubKey\(([^)]+)\)")

# holochain: crates/holochain/src/bin/holochain/main.rs:96: Conductor successfully initialized.
GROUP_LOCATION_RE = re.compile(r"^(\S+): (\S+):([0-9]+): (.*)$", re.DOTALL)

# mere_memory_api::handlers:src/handlers.rs:32 Creating entries for remembering (3000000 bytes)
LOCATION_ONLY_RE = re.compile(r"^(\S+):([0-9]+) (.*)$", re.DOTALL)

CLOSING_CHARS = ("}", ")", "]")
ELLIPSIS = "…"


class RecordType(str, Enum):
    """Semantic category of a daemon output line."""
    STRUCTURED = "structured"
    MULTILINE = "multiline"
    PRINT = "print"
    UNRECOGNIZED = "unrecognized"


class StructuredVariant(str, Enum):
    """Which provenance rule matched a structured line."""
    WORKFLOW = "workflow"
    GROUP_LOCATION = "group-location"
    WASM_TRACE = "wasm-trace"
    PLAIN = "plain"


@dataclass
class LogRecord:
    """One classified line of daemon output."""
    type: RecordType
    source: str
    text: str
    timestamp: datetime
    level: Optional[str] = None
    group: Optional[str] = None
    location: Optional[str] = None
    line_number: Optional[int] = None
    message: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    variant: Optional[StructuredVariant] = None

    @property
    def context(self) -> str:
        """Provenance column: ``(group) location`` padded to 48 characters."""
        if self.group:
            width = 45 - min(len(self.group), 22)
            return f"({eclipse_right(self.group, 22)}) {column_eclipse_left(self.location, width)}"
        return column_eclipse_left(self.location, 48)

    @property
    def formatted(self) -> str:
        return format_record(self)


# =============================================================================
# Column helpers
# =============================================================================

def sanitize_str(text: str) -> str:
    """Remove terminal escape/colour sequences."""
    return ESCAPE_CODE_RE.sub("", text)


def eclipse_right(text: str, length: int) -> str:
    """Truncate on the right, marking the cut with an ellipsis."""
    if length <= 0:
        return ELLIPSIS
    if len(text) > length:
        return text[: length - 1] + ELLIPSIS
    return text[:length]


def eclipse_left(text: str, length: int) -> str:
    """Truncate on the left, keeping the tail (useful for file paths)."""
    if length <= 0:
        return ELLIPSIS
    if len(text) > length:
        return ELLIPSIS + text[-max(length - 1, 1):]
    return text


def column_eclipse_right(text: Optional[str], length: int, align: str = "left") -> str:
    value = eclipse_right(text if isinstance(text, str) else "", length)
    return value.ljust(length) if align == "left" else value.rjust(length)


def column_eclipse_left(text: Optional[str], length: int, align: str = "right") -> str:
    value = eclipse_left(text if isinstance(text, str) else "", length)
    return value.rjust(length) if align == "right" else value.ljust(length)


# =============================================================================
# Classification
# =============================================================================

def _parse_timestamp(text: str) -> Optional[datetime]:
    """Parse the leading ISO-8601 timestamp; None when absent or invalid."""
    match = TIMESTAMP_RE.match(text[:TIMESTAMP_WINDOW])
    if match is None:
        return None

    year, month, day, hour, minute, second, fraction = match.groups()
    micros = int(fraction[:6].ljust(6, "0"))
    try:
        return datetime(
            int(year), int(month), int(day),
            int(hour), int(minute), int(second), micros,
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None


def _is_continuation(text: str) -> bool:
    if text[:1].isspace():
        return True
    stripped = text.strip()
    return len(stripped) > 0 and stripped[0] in CLOSING_CHARS


def _split_provenance(record: LogRecord, body: str) -> None:
    """Apply the provenance rules in priority order; mutates ``record``."""
    # The workflow label would otherwise be mis-split by the group-location rule
    match = WORKFLOW_RE.match(body)
    if match:
        label, group, location, line_number, message = match.groups()
        record.variant = StructuredVariant.WORKFLOW
        record.group = group
        record.location = location
        record.line_number = int(line_number)
        record.message = message
        agent = AGENT_RE.search(label)
        if agent:
            record.metadata["agent"] = agent.group(1)
        record.metadata["span"] = label
        return

    match = GROUP_LOCATION_RE.match(body)
    if match:
        group, location, line_number, message = match.groups()
        record.variant = StructuredVariant.GROUP_LOCATION
        record.group = group
        record.location = location
        record.line_number = int(line_number)
        record.message = message
        return

    match = LOCATION_ONLY_RE.match(body)
    if match:
        location, line_number, message = match.groups()
        record.variant = StructuredVariant.WASM_TRACE
        record.level = "normal"
        record.group = "wasm_trace"
        record.location = location
        record.line_number = int(line_number)
        record.message = message
        return

    record.variant = StructuredVariant.PLAIN
    record.message = body


def classify_line(line: Union[str, bytes]) -> LogRecord:
    """
    Classify one complete line of daemon output.

    Never raises; lines that cannot be dissected come back as ``print`` or
    ``unrecognized`` records carrying the raw text as their message.
    """
    if isinstance(line, (bytes, bytearray)):
        line = bytes(line).decode("utf-8", errors="replace")
    elif not isinstance(line, str):
        line = str(line)

    text = sanitize_str(line)
    now = datetime.now(timezone.utc)

    if _is_continuation(text):
        return LogRecord(
            type=RecordType.MULTILINE,
            source=line,
            text=text,
            timestamp=now,
            message=line,
        )

    if TIMESTAMP_RE.match(text[:TIMESTAMP_WINDOW]) is None:
        return LogRecord(
            type=RecordType.PRINT,
            source=line,
            text=text,
            timestamp=now,
            level="normal",
            message=text,
        )

    timestamp = _parse_timestamp(text)
    if timestamp is None:
        return LogRecord(
            type=RecordType.UNRECOGNIZED,
            source=line,
            text=text,
            timestamp=now,
            message=line,
        )

    record = LogRecord(
        type=RecordType.STRUCTURED,
        source=line,
        text=text,
        timestamp=timestamp,
    )

    remainder = text[TIMESTAMP_RE.match(text).end():]
    level_match = LEVEL_RE.match(remainder)
    if level_match is None:
        record.level = "unknown"
        record.variant = StructuredVariant.PLAIN
        record.message = remainder.strip()
        return record

    record.level = level_match.group(1).lower()
    _split_provenance(record, level_match.group(2) or "")
    return record


# =============================================================================
# Display
# =============================================================================

def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_record(record: LogRecord) -> str:
    """Render ``timestamp LEVEL | (group) location | message`` with colours."""
    level = (record.level or "").upper()[:5].rjust(5)
    message_color = Fore.WHITE if record.variant == StructuredVariant.WASM_TRACE else Style.RESET_ALL
    return (
        f"{Fore.MAGENTA}{Style.NORMAL}{_iso(record.timestamp)} {Fore.RESET}{level}{Fore.RESET} | "
        f"{Fore.CYAN}{record.context}{Fore.RESET} | "
        f"{message_color}{eclipse_right(record.message, 2000)}{Style.RESET_ALL}"
    )
