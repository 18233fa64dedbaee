"""Tests for api/api/middleware/json_formatter.py"""

from __future__ import annotations

import json
import logging
import sys

import pytest
from api.middleware.json_formatter import JSONFormatter


def _record(msg: str = "payment verified", level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="api.services.billing_service",
        level=level,
        pathname="billing_service.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


class TestJSONFormatter:
    def test_core_fields(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "api.services.billing_service"
        assert data["message"] == "payment verified"
        assert data["timestamp"].endswith("+00:00")

    def test_single_line(self, formatter: JSONFormatter) -> None:
        assert "\n" not in formatter.format(_record("line one\nline two"))

    def test_billing_extras_copied(self, formatter: JSONFormatter) -> None:
        record = _record(firm_id="firm-1", event="subscription.charged", subscription_id="sub_1")

        data = json.loads(formatter.format(record))

        assert data["firm_id"] == "firm-1"
        assert data["event"] == "subscription.charged"
        assert data["subscription_id"] == "sub_1"
        assert "payment_id" not in data

    def test_request_context(self, formatter: JSONFormatter) -> None:
        record = _record("request completed", request={"method": "POST", "status_code": 200})

        data = json.loads(formatter.format(record))

        assert data["request"] == {"method": "POST", "status_code": 200}

    def test_exception_traceback(self, formatter: JSONFormatter) -> None:
        try:
            raise RuntimeError("provider down")
        except RuntimeError:
            record = _record("provider call failed", level=logging.ERROR)
            record.exc_info = sys.exc_info()

        data = json.loads(formatter.format(record))

        assert "RuntimeError: provider down" in data["exc_info"]

    def test_rupee_symbol_not_escaped(self, formatter: JSONFormatter) -> None:
        assert "₹1,000" in formatter.format(_record("charged ₹1,000"))
