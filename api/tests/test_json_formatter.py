"""Tests for structured JSON logging and request correlation."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from api.middleware.json_formatter import JSONFormatter, configure_json_logging
from api.middleware.logging import CorrelationLoggingFilter, _correlation_id_var


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(
    msg: str = "test message", level: int = logging.INFO, name: str = "test.logger", **kwargs
) -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=kwargs.pop("args", ()),
        exc_info=kwargs.pop("exc_info", None),
    )


class TestJSONFormatter:
    """Verify structured JSON output from the formatter."""

    def test_basic_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test.logger"
        assert data["message"] == "test message"
        assert "timestamp" in data

    def test_args_interpolated(self, formatter: JSONFormatter) -> None:
        record = _record("Debited account=%s amount=%s", args=("acct-1", "0.25"))
        data = json.loads(formatter.format(record))
        assert data["message"] == "Debited account=acct-1 amount=0.25"

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        output = formatter.format(_record("warn msg", logging.WARNING))
        assert "\n" not in output

    def test_request_context_included(self, formatter: JSONFormatter) -> None:
        record = _record("request completed", name="api.access")
        record.request = {  # type: ignore[attr-defined]
            "method": "POST",
            "path": "/webhook/xero",
            "status_code": 200,
            "duration_ms": 1.5,
            "headers": {"x-xero-signature": "***"},
        }
        data = json.loads(formatter.format(record))

        assert data["request"]["path"] == "/webhook/xero"
        assert data["request"]["headers"]["x-xero-signature"] == "***"

    def test_no_request_context_omitted(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record("plain msg")))
        assert "request" not in data
        assert "correlation_id" not in data

    def test_exception_info_included(self, formatter: JSONFormatter) -> None:
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(formatter.format(_record("error occurred", logging.ERROR, exc_info=exc_info)))

        assert "ValueError: test error" in data["exc_info"]
        assert "Traceback" in data["exc_info"]

    def test_timestamp_is_utc_iso_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record("ts test")))
        assert "+00:00" in data["timestamp"]


class TestCorrelation:
    """Correlation ids flow from the request context into log lines."""

    def test_filter_injects_correlation_id(self, formatter: JSONFormatter) -> None:
        token = _correlation_id_var.set("corr-abc")
        try:
            record = _record()
            assert CorrelationLoggingFilter().filter(record) is True
        finally:
            _correlation_id_var.reset(token)

        data = json.loads(formatter.format(record))
        assert data["correlation_id"] == "corr-abc"

    def test_configure_json_logging(self) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_json_logging(logging.DEBUG)
            assert len(root.handlers) == 1
            handler = root.handlers[0]
            assert isinstance(handler.formatter, JSONFormatter)
            assert any(isinstance(f, CorrelationLoggingFilter) for f in handler.filters)
            assert root.level == logging.DEBUG
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
