"""Tests for logging configuration and formatters."""

import json
import logging

import pytest

from movenotify.logging import ComponentLoggerAdapter, get_logger
from movenotify.logging.config import (
    ContextualFilter,
    JSONFormatter,
    KeyValueFormatter,
    configure_logging,
)
from movenotify.logging.context import clear_log_context, log_context


@pytest.fixture(autouse=True)
def clean_context():
    """Clear logging context before and after each test."""
    clear_log_context()
    yield
    clear_log_context()


@pytest.fixture
def logger():
    """Create a test logger with handler for capturing output."""
    test_logger = logging.getLogger("test_logger")
    test_logger.setLevel(logging.DEBUG)
    test_logger.handlers.clear()

    yield test_logger

    test_logger.handlers.clear()


def _record(logger, message="Test message", level=logging.INFO, **extra):
    record = logger.makeRecord("test", level, "test.py", 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_basic(logger):
    """Test JSONFormatter produces valid JSON with mandatory fields."""
    output = JSONFormatter().format(_record(logger))
    log_obj = json.loads(output)

    assert log_obj["level"] == "INFO"
    assert log_obj["message"] == "Test message"
    assert log_obj["logger"] == "test"
    assert log_obj["timestamp"].endswith("Z")


def test_json_formatter_with_extra_fields(logger):
    record = _record(logger, event="cleanup.archived", archived=10, component="cleanup")
    log_obj = json.loads(JSONFormatter().format(record))

    assert log_obj["event"] == "cleanup.archived"
    assert log_obj["archived"] == 10
    assert log_obj["component"] == "cleanup"


def test_json_formatter_stringifies_unknown_types(logger):
    record = _record(logger, obj=object())
    log_obj = json.loads(JSONFormatter().format(record))

    assert isinstance(log_obj["obj"], str)


def test_contextual_filter_adds_static_fields(logger):
    record = _record(logger)
    ContextualFilter(service="movenotify", environment="test").filter(record)

    assert record.service == "movenotify"
    assert record.environment == "test"


def test_contextual_filter_adds_context_fields(logger):
    record = _record(logger)
    with log_context(job="lifecycle", run_id="r1"):
        ContextualFilter().filter(record)

    assert record.job == "lifecycle"
    assert record.run_id == "r1"


def test_contextual_filter_keeps_explicit_extra(logger):
    """Test that explicit extra fields win over context fields."""
    record = _record(logger, job="cleanup")
    with log_context(job="lifecycle"):
        ContextualFilter().filter(record)

    assert record.job == "cleanup"


def test_key_value_formatter_with_extras(logger):
    formatter = KeyValueFormatter("%(levelname)s %(message)s")
    record = _record(logger, event="job.run.completed", skipped=False, note="two words", missing=None)
    output = formatter.format(record)

    assert output.startswith("INFO Test message")
    assert "event=job.run.completed" in output
    assert "skipped=false" in output
    assert 'note="two words"' in output
    assert "missing=null" in output


def test_key_value_formatter_omits_static_fields(logger):
    formatter = KeyValueFormatter("%(message)s")
    record = _record(logger, service="movenotify", environment="test")

    assert formatter.format(record) == "Test message"


def test_configure_logging_invalid_level():
    with pytest.raises(ValueError, match="Invalid log level"):
        configure_logging(level="INVALID")


def test_configure_logging_invalid_format():
    with pytest.raises(ValueError, match="Invalid log format"):
        configure_logging(format_type="invalid")


def test_configure_logging_json_format():
    configure_logging(level="INFO", format_type="json", environment="test")

    handler = logging.getLogger().handlers[0]
    assert isinstance(handler.formatter, JSONFormatter)
    assert any(isinstance(f, ContextualFilter) for f in handler.filters)


def test_configure_logging_key_value_format():
    configure_logging(level="DEBUG", format_type="key-value", environment="test")

    root_logger = logging.getLogger()
    assert isinstance(root_logger.handlers[0].formatter, KeyValueFormatter)
    assert root_logger.level == logging.DEBUG


def test_configure_logging_quiets_apscheduler():
    configure_logging(level="DEBUG", format_type="key-value")

    assert logging.getLogger("apscheduler").level == logging.WARNING


def test_get_logger_binds_component():
    adapter = get_logger("movenotify.test", component="cleanup")

    assert isinstance(adapter, ComponentLoggerAdapter)
    _, kwargs = adapter.process("msg", {"extra": {"event": "x"}})
    assert kwargs["extra"] == {"component": "cleanup", "event": "x"}


def test_get_logger_without_component():
    assert isinstance(get_logger("movenotify.test"), logging.Logger)
