"""Tests for the JSON log formatter."""

import json
import logging
import sys

from rule_scheduler.core.logging import StructuredFormatter


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "rule_scheduler.services.pipeline", logging.INFO, __file__, 10, "cycle %s done", ("abc",), None
    )
    record.__dict__.update(extra)
    return record


class TestStructuredFormatter:
    def test_renders_message_and_level(self):
        payload = json.loads(StructuredFormatter().format(_record()))

        assert payload["message"] == "cycle abc done"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "rule_scheduler.services.pipeline"

    def test_inlines_extra_fields(self):
        payload = json.loads(StructuredFormatter().format(_record(operation="pipeline_cycle", duration_ms=12)))

        assert payload["operation"] == "pipeline_cycle"
        assert payload["duration_ms"] == 12
        assert "args" not in payload

    def test_includes_exception_text(self):
        try:
            raise ValueError("bad cron")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        payload = json.loads(StructuredFormatter().format(record))

        assert "ValueError: bad cron" in payload["exception"]
