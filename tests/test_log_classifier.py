"""
Tests for daemon log line classification.
"""

from datetime import datetime, timezone

import pytest

from backdrop.core.log_classifier import (
    RecordType,
    StructuredVariant,
    classify_line,
    column_eclipse_left,
    eclipse_left,
    eclipse_right,
    format_record,
    sanitize_str,
)

TS = "2023-04-05T23:54:56.267039Z"


@pytest.mark.unit
class TestStructuredLines:

    def test_group_location_line(self):
        record = classify_line(
            f"{TS}  INFO holochain: crates/holochain/src/bin/holochain/main.rs:96: Conductor successfully initialized."
        )
        assert record.type == RecordType.STRUCTURED
        assert record.variant == StructuredVariant.GROUP_LOCATION
        assert record.timestamp == datetime(2023, 4, 5, 23, 54, 56, 267039, tzinfo=timezone.utc)
        assert record.level == "info"
        assert record.group == "holochain"
        assert record.location == "crates/holochain/src/bin/holochain/main.rs"
        assert record.line_number == 96
        assert record.message == "Conductor successfully initialized."

    def test_workflow_line_extracts_agent(self):
        record = classify_line(
            f"{TS} DEBUG publish_dht_ops_workflow{{agent=AgentPubKey(uhCAkXyZ)}}: "
            "holochain::core::workflow::publish_dht_ops_workflow: "
            "crates/holochain/src/core/workflow/publish_dht_ops_workflow.rs:46: publishing to 11 nodes"
        )
        assert record.variant == StructuredVariant.WORKFLOW
        assert record.level == "debug"
        assert record.group == "holochain::core::workflow::publish_dht_ops_workflow"
        assert record.location == "crates/holochain/src/core/workflow/publish_dht_ops_workflow.rs"
        assert record.line_number == 46
        assert record.message == "publishing to 11 nodes"
        assert record.metadata["agent"] == "uhCAkXyZ"
        assert record.metadata["span"].startswith("publish_dht_ops_workflow{")

    def test_wasm_trace_line(self):
        record = classify_line(
            f"{TS} TRACE mere_memory_api::handlers:src/handlers.rs:32 Creating entries for remembering (3000000 bytes)"
        )
        assert record.variant == StructuredVariant.WASM_TRACE
        assert record.level == "normal"
        assert record.group == "wasm_trace"
        assert record.location == "mere_memory_api::handlers:src/handlers.rs"
        assert record.line_number == 32
        assert record.message == "Creating entries for remembering (3000000 bytes)"

    def test_plain_structured_line(self):
        record = classify_line(f"{TS}  WARN something happened without provenance")
        assert record.variant == StructuredVariant.PLAIN
        assert record.level == "warn"
        assert record.group is None
        assert record.message == "something happened without provenance"

    def test_escape_codes_are_stripped_before_matching(self):
        record = classify_line(f"\x1b[2m{TS}\x1b[0m \x1b[32m INFO\x1b[0m holochain: main.rs:1: hi")
        assert record.type == RecordType.STRUCTURED
        assert record.level == "info"
        assert record.message == "hi"
        assert "\x1b" in record.source
        assert "\x1b" not in record.text


@pytest.mark.unit
class TestOtherLines:

    @pytest.mark.parametrize("line", ["    payload: Any { .. },", "}", "  ]", "\tcontinued"])
    def test_continuation_lines_are_multiline(self, line):
        record = classify_line(line)
        assert record.type == RecordType.MULTILINE
        assert record.level is None
        assert record.message == line

    def test_banner_is_print(self):
        record = classify_line("# lair-keystore running #")
        assert record.type == RecordType.PRINT
        assert record.level == "normal"
        assert record.message == "# lair-keystore running #"

    def test_invalid_date_is_unrecognized(self):
        record = classify_line("2023-13-45T25:61:61.000000Z  INFO holochain: x.rs:1: impossible")
        assert record.type == RecordType.UNRECOGNIZED
        assert record.level is None
        assert record.timestamp.tzinfo is not None

    def test_bytes_are_decoded(self):
        record = classify_line(b"Conductor ready.")
        assert record.type == RecordType.PRINT
        assert record.message == "Conductor ready."

    def test_never_raises_on_garbage(self):
        for line in ["", " ", "\x00\xff", "}" * 3, TS, TS + " ", "2023-04-05T"]:
            classify_line(line)


@pytest.mark.unit
class TestColumnHelpers:

    def test_sanitize_str(self):
        assert sanitize_str("\x1b[31mred\x1b[0m") == "red"

    def test_eclipse_right(self):
        assert eclipse_right("short", 10) == "short"
        cut = eclipse_right("abcdefghij", 5)
        assert len(cut) == 5
        assert cut.endswith("…")

    def test_eclipse_left(self):
        cut = eclipse_left("crates/holochain/src/main.rs", 10)
        assert len(cut) == 10
        assert cut.startswith("…")
        assert cut.endswith("main.rs")

    def test_column_eclipse_left_pads(self):
        assert column_eclipse_left("abc", 6) == "   abc"
        assert column_eclipse_left(None, 4) == "    "

    def test_format_record_contains_fields(self):
        record = classify_line(f"{TS}  INFO holochain: main.rs:96: Conductor successfully initialized.")
        rendered = sanitize_str(format_record(record))
        assert "2023-04-05T23:54:56.267Z" in rendered
        assert "INFO" in rendered
        assert "(holochain)" in rendered
        assert "Conductor successfully initialized." in rendered
        assert len(record.context) == 48
