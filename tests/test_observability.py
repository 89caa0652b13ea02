"""Tests for JSON logging and correlation ids."""

import json
import logging
import sys

from fastapi.testclient import TestClient

from aliado.api.factory import create_app
from aliado.observability.correlation import (
    CORRELATION_ID_HEADER,
    correlation_scope,
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from aliado.observability.logging import JsonFormatter, get_logger
from aliado.observability.redaction import safe_log_context


def _record(message="hello", **extra_fields):
    record = logging.LogRecord("aliado.test", logging.INFO, __file__, 1, message, None, None)
    if extra_fields:
        record.extra_fields = extra_fields
    return record


class TestJsonFormatter:
    def test_base_fields(self):
        line = json.loads(JsonFormatter().format(_record()))
        assert line["service"] == "aliado"
        assert line["level"] == "INFO"
        assert line["logger"] == "aliado.test"
        assert line["message"] == "hello"
        assert "correlationId" not in line

    def test_extra_fields_merged(self):
        ctx = safe_log_context(account_id="acct-1", phone="5511999998888")
        line = json.loads(JsonFormatter().format(_record(**ctx)))
        assert line["account_id"] == "acct-1"
        assert line["phone"] == "[REDACTED]"

    def test_correlation_id_included(self):
        token = set_correlation_id("cid-123")
        try:
            line = json.loads(JsonFormatter().format(_record()))
        finally:
            reset_correlation_id(token)
        assert line["correlationId"] == "cid-123"

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                "aliado.test", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
            )
        line = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in line["exception"]


class TestGetLogger:
    def test_configured_once(self):
        logger = get_logger("aliado.test.once")
        again = get_logger("aliado.test.once")
        assert logger is again
        assert len(logger.handlers) == 1
        assert logger.propagate is False
        assert isinstance(logger.handlers[0].formatter, JsonFormatter)

    def test_level_from_env(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "warning")
        assert get_logger("aliado.test.level").level == logging.WARNING

    def test_unknown_level_defaults_to_info(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "chatty")
        assert get_logger("aliado.test.badlevel").level == logging.INFO


class TestCorrelation:
    def test_scope_binds_and_restores(self):
        assert get_correlation_id() == ""
        with correlation_scope("sync-") as cid:
            assert cid.startswith("sync-")
            assert get_correlation_id() == cid
        assert get_correlation_id() == ""

    def test_middleware_echoes_header(self):
        client = TestClient(create_app())
        response = client.get("/health", headers={CORRELATION_ID_HEADER: "req-42"})
        assert response.headers[CORRELATION_ID_HEADER] == "req-42"

    def test_middleware_generates_header(self):
        client = TestClient(create_app())
        response = client.get("/health")
        assert response.headers[CORRELATION_ID_HEADER]
