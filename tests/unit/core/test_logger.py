"""
Unit tests for core.logger module.

Tests:
- format_kv_pairs escaping and truncation
- StructuredFormatter output
- JSON output mode
- bind() context propagation
"""

import json
import logging

import pytest

from relaypool.core.logger import Logger, StructuredFormatter, format_kv_pairs


class TestFormatKvPairs:
    """Key-value pairs formatting and escaping."""

    def test_simple(self):
        assert format_kv_pairs({"key": "hello"}) == " key=hello"
        assert format_kv_pairs({"key": 123}) == " key=123"

    def test_with_spaces(self):
        assert format_kv_pairs({"key": "hello world"}) == ' key="hello world"'

    def test_with_equals(self):
        assert format_kv_pairs({"key": "foo=bar"}) == ' key="foo=bar"'

    def test_with_double_quotes(self):
        assert format_kv_pairs({"key": 'say "hi"'}) == ' key="say \\"hi\\""'

    def test_empty_value(self):
        assert format_kv_pairs({"key": ""}) == ' key=""'

    def test_empty_dict(self):
        assert format_kv_pairs({}) == ""

    def test_truncation(self):
        result = format_kv_pairs({"key": "x" * 1500}, max_value_length=1000)
        assert "truncated 500 chars" in result

    def test_no_truncation(self):
        result = format_kv_pairs({"key": "x" * 1500}, max_value_length=None)
        assert "truncated" not in result

    def test_custom_prefix(self):
        assert format_kv_pairs({"key": "val"}, prefix="") == "key=val"


class TestStructuredFormatter:
    def test_appends_structured_fields(self):
        record = logging.LogRecord("relaypool.pool", logging.INFO, __file__, 1, "relay_added", (), None)
        record.structured_kv = {"url": "wss://relay.example.com"}
        formatted = StructuredFormatter().format(record)
        assert formatted == "info relaypool.pool relay_added url=wss://relay.example.com"

    def test_plain_record(self):
        record = logging.LogRecord("other", logging.WARNING, __file__, 1, "plain %s", ("msg",), None)
        assert StructuredFormatter().format(record) == "warning other plain msg"


class TestLogger:
    def test_name(self):
        assert Logger("relaypool.test").name == "relaypool.test"

    def test_fields_attached_to_record(self, caplog: pytest.LogCaptureFixture):
        with caplog.at_level(logging.INFO, logger="relaypool.test"):
            Logger("relaypool.test").info("hello", world=True)
        record = caplog.records[-1]
        assert record.getMessage() == "hello"
        assert record.structured_kv == {"world": True}

    def test_long_values_truncated(self, caplog: pytest.LogCaptureFixture):
        with caplog.at_level(logging.INFO, logger="relaypool.test"):
            Logger("relaypool.test", max_value_length=10).info("msg", frame="y" * 50)
        assert "truncated" in caplog.records[-1].structured_kv["frame"]

    def test_json_output(self, caplog: pytest.LogCaptureFixture):
        with caplog.at_level(logging.INFO, logger="relaypool.json"):
            Logger("relaypool.json", json_output=True).info("test", value=42)
        parsed = json.loads(caplog.records[-1].getMessage())
        assert parsed["message"] == "test"
        assert parsed["level"] == "info"
        assert parsed["value"] == 42

    def test_disabled_level_skipped(self, caplog: pytest.LogCaptureFixture):
        with caplog.at_level(logging.WARNING, logger="relaypool.quiet"):
            Logger("relaypool.quiet").debug("hidden")
        assert not [r for r in caplog.records if r.name == "relaypool.quiet"]

    def test_exception_includes_traceback(self, caplog: pytest.LogCaptureFixture):
        with caplog.at_level(logging.ERROR, logger="relaypool.test"):
            try:
                raise RuntimeError("boom")
            except RuntimeError:
                Logger("relaypool.test").exception("failed", step=1)
        assert caplog.records[-1].exc_info is not None


class TestBind:
    def test_context_prepended(self, caplog: pytest.LogCaptureFixture):
        logger = Logger("relaypool.bind").bind(relay="wss://r.example.com")
        with caplog.at_level(logging.INFO, logger="relaypool.bind"):
            logger.info("connected", attempt=2)
        assert caplog.records[-1].structured_kv == {"relay": "wss://r.example.com", "attempt": 2}

    def test_bind_is_cumulative_and_non_mutating(self):
        parent = Logger("relaypool.bind")
        child = parent.bind(a=1).bind(b=2)
        assert child._context == {"a": 1, "b": 2}
        assert parent._context == {}

    def test_keyword_overrides_context(self, caplog: pytest.LogCaptureFixture):
        logger = Logger("relaypool.bind").bind(relay="x")
        with caplog.at_level(logging.INFO, logger="relaypool.bind"):
            logger.info("msg", relay="y")
        assert caplog.records[-1].structured_kv == {"relay": "y"}
