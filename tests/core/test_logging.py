"""
Tests for the structlog configuration.
"""

import json
import logging

import pytest
import structlog

from wprank.core.logging import NOISY_LOGGERS, configure_logging


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def test_json_events_carry_service_and_severity(settings, capsys):
    configure_logging(settings.model_copy(update={"LOG_FORMAT": "json", "ENV": "staging"}))

    structlog.get_logger("wprank.test").warning("Queue item failed", domain="example.com")

    event = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert event["event"] == "Queue item failed"
    assert event["domain"] == "example.com"
    assert event["severity"] == "WARNING"
    assert event["service"] == "wprank"
    assert event["env"] == "staging"
    assert "timestamp" in event


def test_level_filters_debug(settings, capsys):
    configure_logging(settings.model_copy(update={"LOG_FORMAT": "json", "LOG_LEVEL": "INFO"}))

    structlog.get_logger("wprank.test").debug("Engine starting")

    assert capsys.readouterr().out == ""
    assert all(logging.getLogger(name).level == logging.WARNING for name in NOISY_LOGGERS)
