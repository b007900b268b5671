"""Tests for tokensync.core.logging processors and configuration."""

from __future__ import annotations

import json
import logging

import pytest

from tokensync.core.logging import (
    REDACTED,
    add_otel_context,
    add_service_context,
    configure_logging,
    get_service_context,
    redact_secrets,
    set_service_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestProcessors:
    def test_service_context_injected(self):
        set_service_context("tokensync-test")
        assert get_service_context() == "tokensync-test"
        event = add_service_context(None, "info", {"event": "hello"})
        assert event["service"] == "tokensync-test"

    def test_otel_context_defaults_to_zero_ids(self):
        event = add_otel_context(None, "info", {"event": "hello"})
        assert event["trace_id"] == "0" * 32
        assert event["span_id"] == "0" * 16

    def test_top_level_secrets_redacted(self):
        event = redact_secrets(
            None,
            "info",
            {
                "event": "stored",
                "accessToken": "ya29.secret",
                "refresh_token": "1//secret",
                "client_secret": "shh",
                "userId": "u1",
            },
        )
        assert event["accessToken"] == REDACTED
        assert event["refresh_token"] == REDACTED
        assert event["client_secret"] == REDACTED
        assert event["userId"] == "u1"

    def test_nested_secrets_redacted(self):
        event = redact_secrets(
            None, "info", {"event": "x", "payload": {"accessToken": "ya29", "provider": "google"}}
        )
        assert event["payload"] == {"accessToken": REDACTED, "provider": "google"}

    def test_empty_secret_values_left_alone(self):
        event = redact_secrets(None, "info", {"event": "x", "refreshToken": ""})
        assert event["refreshToken"] == ""


class TestConfigureLogging:
    def test_installs_single_root_handler(self):
        configure_logging(level="DEBUG", fmt="text")
        configure_logging(level="WARNING", fmt="text")
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING

    def test_noise_loggers_quieted(self):
        configure_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_json_output_redacts_extra_fields(self, capsys):
        configure_logging(level="INFO", fmt="json", service_name="tokensync")
        logging.getLogger("tokensync.test").info(
            "credential stored", extra={"accessToken": "ya29.secret", "userId": "u1"}
        )
        line = capsys.readouterr().err.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "credential stored"
        assert record["accessToken"] == REDACTED
        assert record["userId"] == "u1"
        assert record["service"] == "tokensync"
        assert "ya29.secret" not in line
