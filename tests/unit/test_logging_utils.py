"""Unit tests for structured logging."""
import io
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from sidecar.logging_utils import (
    StructuredFormatter, WorkflowCommandHandler, correlation_context,
    escape_command_data, get_correlation_ids, log_group
)


def make_record(message: str, level: int = logging.INFO, **fields) -> logging.LogRecord:
    record = logging.LogRecord("sidecar.supervisor", level, __file__, 1, message, None, None)
    if fields:
        record.fields = fields
    return record


class TestStructuredFormatter:
    """Tests for StructuredFormatter."""

    def test_human_format(self):
        with correlation_context(phase="teardown", run_id="42"):
            line = StructuredFormatter().format(make_record("Stopped agent", pid=7))

        assert "[INFO] [supervisor] phase=teardown run=42 pid=7 Stopped agent" in line

    def test_json_format(self):
        with correlation_context(phase="setup"):
            line = StructuredFormatter(json_output=True).format(make_record("Launched", image="img"))

        entry = json.loads(line)
        assert entry["level"] == "INFO"
        assert entry["component"] == "supervisor"
        assert entry["phase"] == "setup"
        assert entry["image"] == "img"
        assert entry["message"] == "Launched"

    def test_correlation_restored(self):
        with correlation_context(phase="setup"):
            with correlation_context(phase="teardown"):
                assert get_correlation_ids()["phase"] == "teardown"
            assert get_correlation_ids()["phase"] == "setup"
        assert get_correlation_ids()["phase"] is None


class TestWorkflowCommands:
    """Tests for workflow command output."""

    def test_warning_and_error(self):
        stream = io.StringIO()
        handler = WorkflowCommandHandler(stream)

        handler.handle(make_record("disk 90%\nfull", logging.WARNING))
        handler.handle(make_record("boom", logging.ERROR))
        handler.handle(make_record("quiet", logging.INFO))

        assert stream.getvalue() == "::warning::disk 90%25%0Afull\n::error::boom\n"

    def test_escape(self):
        assert escape_command_data("a%b\r\nc") == "a%25b%0D%0Ac"

    def test_log_group(self):
        stream = io.StringIO()
        with log_group("Telemetry server logs", stream=stream):
            stream.write("line\n")
        assert stream.getvalue() == "::group::Telemetry server logs\nline\n::endgroup::\n"
