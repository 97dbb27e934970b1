"""Tests for structlog configuration."""

import json
import logging

import pytest
import structlog

from botforge.logging_config import get_logger, setup_logging


@pytest.fixture(autouse=True)
def reset_logging():
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def _json_events(output: str) -> list[dict]:
    return [json.loads(line) for line in output.strip().splitlines() if line.strip().startswith("{")]


def test_json_output_carries_service_and_context(capsys):
    setup_logging(service_name="botforge-test", log_format="json", log_level="INFO")

    structlog.contextvars.bind_contextvars(deployment_id="d-1")
    get_logger("botforge.tests").info("deployment_created", catalog_id="wolf-bot")

    events = _json_events(capsys.readouterr().out)
    entry = next(e for e in events if e["event"] == "deployment_created")
    assert entry["service"] == "botforge-test"
    assert entry["deployment_id"] == "d-1"
    assert entry["catalog_id"] == "wolf-bot"
    assert entry["level"] == "info"
    assert entry["logger"] == "botforge.tests"
    assert "timestamp" in entry


def test_level_filtering(capsys):
    setup_logging(service_name="botforge-test", log_format="json", log_level="WARNING")

    logger = get_logger()
    logger.info("hidden_event")
    logger.warning("visible_event")

    names = [e["event"] for e in _json_events(capsys.readouterr().out)]
    assert "hidden_event" not in names
    assert "visible_event" in names


def test_console_format(capsys):
    setup_logging(service_name="botforge-test", log_format="console", log_level="DEBUG")

    get_logger().debug("console_event", answer=42)

    assert "console_event" in capsys.readouterr().out


def test_defaults_come_from_settings(monkeypatch, capsys):
    from botforge.config import get_settings

    monkeypatch.setenv("SERVICE_NAME", "from-env")
    monkeypatch.setenv("LOG_FORMAT", "json")
    get_settings.cache_clear()
    try:
        setup_logging()
        get_logger().info("settings_event")
    finally:
        get_settings.cache_clear()

    entry = next(e for e in _json_events(capsys.readouterr().out) if e["event"] == "settings_event")
    assert entry["service"] == "from-env"


def test_config_values_are_masked(capsys):
    setup_logging(service_name="botforge-test", log_format="json", log_level="INFO")

    get_logger().info(
        "deploy_payload",
        env_vars={"SESSION_ID": "WOLF-BOT_secret", "PREFIX": "!"},
        panel_api_key="ptla_secret",
        catalog_id="wolf-bot",
    )

    output = capsys.readouterr().out
    entry = next(e for e in _json_events(output) if e["event"] == "deploy_payload")
    assert entry["env_vars"] == {"SESSION_ID": "***", "PREFIX": "***"}
    assert entry["panel_api_key"] == "***"
    assert entry["catalog_id"] == "wolf-bot"
    assert "WOLF-BOT_secret" not in output


def test_http_client_loggers_are_quiet():
    setup_logging(service_name="botforge-test", log_format="json", log_level="DEBUG")

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("uvicorn.access").level == logging.WARNING
