"""Tests for log formatting and request id propagation."""

import json
import logging

from deals_assistant.utils.logging import (
    JSONFormatter,
    StandardFormatter,
    get_logger,
    get_request_id,
    request_id_var,
    set_request_id,
)


def make_record(message="Tool search_deals completed", **extra):
    record = logging.LogRecord(
        "deals_assistant.tool_service", logging.INFO, __file__, 10, message, None, None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test the production formatter."""

    def test_payload_fields(self):
        token = request_id_var.set("req-123")
        try:
            line = JSONFormatter("deals-assistant", "production").format(
                make_record(extra_fields={"tool": "search_deals"}, duration_ms=12.5)
            )
        finally:
            request_id_var.reset(token)

        payload = json.loads(line)
        assert payload["service"] == "deals-assistant"
        assert payload["environment"] == "production"
        assert payload["level"] == "INFO"
        assert payload["message"] == "Tool search_deals completed"
        assert payload["request_id"] == "req-123"
        assert payload["tool"] == "search_deals"
        assert payload["duration_ms"] == 12.5
        assert "extra_fields" not in payload

    def test_no_request_id_outside_a_request(self):
        payload = json.loads(JSONFormatter("svc", "production").format(make_record()))
        assert "request_id" not in payload


class TestStandardFormatter:
    """Test the development formatter."""

    def test_short_request_id(self):
        token = request_id_var.set("0123456789abcdef")
        try:
            line = StandardFormatter().format(make_record())
        finally:
            request_id_var.reset(token)
        assert "[01234567]" in line
        assert line.endswith("Tool search_deals completed")

    def test_dash_without_request_id(self):
        assert "[-]" in StandardFormatter().format(make_record())


class TestHelpers:
    """Test logger naming and the request id context."""

    def test_get_logger_names(self):
        assert get_logger().name == "deals_assistant"
        assert get_logger("chat").name == "deals_assistant.chat"

    def test_set_request_id(self):
        token = request_id_var.set(None)
        try:
            set_request_id("abc")
            assert get_request_id() == "abc"
        finally:
            request_id_var.reset(token)
