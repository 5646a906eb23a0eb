"""
Tests for logging_setup module.

Verifies:
- JSON structured logging format
- Component and severity tagging
- Session ID correlation
- PIN masking and PII-aware helpers
- Log level configuration
"""
import json
import logging
from datetime import datetime
from io import StringIO

import pytest

from logging_setup import (
    MASK,
    Component,
    JSONFormatter,
    get_logger,
    mask_sensitive,
    setup_logging,
)


@pytest.fixture
def capture_logs():
    """Capture log output to a string buffer."""
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(JSONFormatter())

    logger = logging.getLogger()
    logger.handlers = []
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield buffer

    logger.handlers = []


def _entries(buffer):
    return [json.loads(line) for line in buffer.getvalue().strip().split("\n") if line]


def test_json_formatter_basic(capture_logs):
    logger = get_logger(Component.DISPATCHER)
    logger.info("Function call received", function="verify_pin")

    [entry] = _entries(capture_logs)

    assert entry["severity"] == "info"
    assert entry["component"] == "dispatcher"
    assert entry["message"] == "Function call received"
    assert entry["function"] == "verify_pin"
    datetime.fromisoformat(entry["timestamp"])


def test_session_id_correlation(capture_logs):
    get_logger(Component.VOICE_SESSION, session_id="sess_123").info("Call started")
    get_logger(Component.VOICE_SESSION).info("No session")

    first, second = _entries(capture_logs)
    assert first["session_id"] == "sess_123"
    assert "session_id" not in second


def test_with_session_creates_new_logger(capture_logs):
    base_logger = get_logger(Component.PIN_AUTH)
    base_logger.with_session("sess_456").info("With session")

    [entry] = _entries(capture_logs)
    assert entry["session_id"] == "sess_456"
    assert base_logger.session_id is None


def test_pin_fields_are_masked(capture_logs):
    logger = get_logger(Component.PIN_AUTH)
    logger.info("PIN received", pin="048213", parameters={"pin": 48213, "format": "24h"})

    output = capture_logs.getvalue()
    [entry] = _entries(capture_logs)

    assert entry["pin"] == MASK
    assert entry["parameters"] == {"pin": MASK, "format": "24h"}
    assert "048213" not in output


def test_mask_sensitive_recurses():
    value = {"calls": [{"new_pin": "123456", "current_pin": "654321", "name": "update"}], "pin": None}

    assert mask_sensitive(value) == {
        "calls": [{"new_pin": MASK, "current_pin": MASK, "name": "update"}],
        "pin": None,
    }


def test_pii_logging(capture_logs):
    get_logger(Component.CREDENTIAL_STORE).info_pii("Profile loaded", email="user@example.com")

    [entry] = _entries(capture_logs)
    assert entry["pii"]["email"] == "user@example.com"


def test_debug_pii_method(capture_logs):
    get_logger(Component.CREDENTIAL_STORE).debug_pii("Profile loaded", email="user@example.com")

    [entry] = _entries(capture_logs)
    assert entry["severity"] == "debug"


def test_severity_levels(capture_logs):
    logger = get_logger(Component.VOICE_ENGINE)

    logger.debug("Debug message")
    logger.info("Info message")
    logger.warning("Warning message")
    logger.error("Error message")
    logger.critical("Critical message")

    assert [e["severity"] for e in _entries(capture_logs)] == ["debug", "info", "warning", "error", "critical"]


def test_component_string_fallback(capture_logs):
    get_logger("custom_component").info("Test")

    [entry] = _entries(capture_logs)
    assert entry["component"] == "custom_component"


def test_exception_logging(capture_logs):
    logger = get_logger(Component.DISPATCHER)

    try:
        raise ValueError("Test exception")
    except ValueError:
        logger.exception("Function handler failed")

    [entry] = _entries(capture_logs)
    assert entry["severity"] == "error"
    assert "ValueError: Test exception" in entry["exception"]


def test_setup_logging_json():
    setup_logging(level="DEBUG", use_json=True)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.DEBUG
    assert len(root_logger.handlers) == 1
    assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)


def test_setup_logging_text():
    setup_logging(level="INFO", use_json=False)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.INFO
    assert len(root_logger.handlers) == 1
    assert not isinstance(root_logger.handlers[0].formatter, JSONFormatter)
