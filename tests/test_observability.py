"""
Structured logging tests: JSON and text output, correlation ids and timed
operations.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import io
import json

import pytest


@pytest.fixture
def log_stream():
    """Route engine logs into a buffer; restore the default handler afterwards."""
    from ledgerfold.observability import configure_logging

    def install(level="debug", fmt="json"):
        buf = io.StringIO()
        configure_logging(level, fmt, stream=buf)
        return buf

    yield install
    configure_logging()


def _events(buf):
    return [json.loads(line) for line in buf.getvalue().splitlines()]


class TestStructuredOutput:

    def test_json_line_carries_layer_and_context(self, log_stream):
        from ledgerfold.observability import Layer, get_logger

        buf = log_stream()
        get_logger("unit", Layer.TREE).info("Leaf inserted", operation="insert", position=3)

        (event,) = _events(buf)
        assert event["logger"] == "ledgerfold.tree.unit"
        assert event["level"] == "info"
        assert event["message"] == "Leaf inserted"
        assert event["layer"] == "tree"
        assert event["operation"] == "insert"
        assert event["context"] == {"position": 3}
        assert "correlation_id" not in event

    def test_level_filters(self, log_stream):
        from ledgerfold.observability import Layer, get_logger

        buf = log_stream(level="warning")
        log = get_logger("unit", Layer.STATE)
        log.info("quiet")
        log.warning("loud", error_code="E1")
        events = _events(buf)
        assert [e["message"] for e in events] == ["loud"]
        assert events[0]["error_code"] == "E1"

    def test_text_format(self, log_stream):
        from ledgerfold.observability import Layer, get_logger

        buf = log_stream(fmt="text")
        get_logger("unit", Layer.ANCHOR).info("Submitted", attempt=2)
        line = buf.getvalue().strip()
        assert " INFO ledgerfold.anchor.unit Submitted" in line
        assert line.endswith("attempt=2")

    def test_exception_included(self, log_stream):
        from ledgerfold.observability import Layer, get_logger

        buf = log_stream()
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            get_logger("unit", Layer.ENGINE).error("Failed", exc_info=True)
        (event,) = _events(buf)
        assert "RuntimeError: boom" in event["exception"]

    @pytest.mark.parametrize("level,fmt", [("loud", "json"), ("info", "xml")])
    def test_invalid_settings(self, level, fmt):
        from ledgerfold.observability import configure_logging

        with pytest.raises(ValueError):
            configure_logging(level, fmt)


class TestCorrelation:

    def test_correlation_id_bound_and_reset(self, log_stream):
        from ledgerfold.observability import (
            Layer,
            get_logger,
            reset_correlation_id,
            set_correlation_id,
        )

        buf = log_stream()
        log = get_logger("unit", Layer.API)
        token = set_correlation_id("corr-123")
        log.info("inside")
        reset_correlation_id(token)
        log.info("outside")

        inside, outside = _events(buf)
        assert inside["correlation_id"] == "corr-123"
        assert "correlation_id" not in outside

    def test_generated_ids_are_unique(self):
        from ledgerfold.observability import generate_correlation_id

        ids = {generate_correlation_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith("corr-") for i in ids)


class TestTimedOperation:

    def test_success_and_failure(self, log_stream):
        from ledgerfold.observability import Layer, get_logger, timed_operation

        buf = log_stream()
        log = get_logger("unit", Layer.STORAGE)

        @timed_operation(log, "load")
        def load(fail):
            if fail:
                raise OSError("disk")
            return "ok"

        assert load(False) == "ok"
        with pytest.raises(OSError):
            load(True)

        ok, failed = _events(buf)
        assert ok["message"] == "Operation load completed"
        assert ok["level"] == "info"
        assert ok["duration_ms"] >= 0
        assert failed["message"] == "Operation load failed"
        assert failed["level"] == "warning"
