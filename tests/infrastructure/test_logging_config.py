"""Tests for structured logging and the security logger."""

import json
import logging

from intake_gateway.infrastructure.logging_config import (
    SECURITY_LOGGER_NAME,
    RequestContextFilter,
    StructuredFormatter,
    log_security_alert,
    log_security_event,
)
from intake_gateway.infrastructure.request_context import request_scope, tenant_scope


def make_record(message="Processed delivery"):
    return logging.LogRecord(
        name="intake_gateway.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=message,
        args=(),
        exc_info=None,
    )


class TestRequestContextFilter:
    def test_attaches_active_context(self):
        record = make_record()
        with request_scope("req-42"), tenant_scope(3):
            RequestContextFilter().filter(record)

        assert record.request_id == "req-42"
        assert record.tenant_id == 3

    def test_defaults_outside_a_request(self):
        record = make_record()
        RequestContextFilter().filter(record)

        assert record.request_id == "-"
        assert record.tenant_id is None


class TestStructuredFormatter:
    def test_json_output(self):
        record = make_record()
        record.request_id = "req-42"
        record.tenant_id = 3
        record.extra_fields = {"source": "wellmedr"}

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "Processed delivery"
        assert data["level"] == "INFO"
        assert data["request_id"] == "req-42"
        assert data["tenant_id"] == 3
        assert data["source"] == "wellmedr"

    def test_missing_context_is_omitted(self):
        record = make_record()
        record.request_id = "-"

        data = json.loads(StructuredFormatter().format(record))

        assert "request_id" not in data
        assert "tenant_id" not in data


class TestSecurityLogging:
    def test_alert(self, caplog):
        with caplog.at_level(logging.WARNING, logger=SECURITY_LOGGER_NAME):
            log_security_alert("Resolved tenant does not match", source="wellmedr", code="CLINIC_ID_MISMATCH")

        record = caplog.records[-1]
        assert record.levelno == logging.CRITICAL
        assert record.name == SECURITY_LOGGER_NAME
        assert record.getMessage().startswith("SECURITY ALERT:")
        assert record.extra_fields == {"security_alert": True, "source": "wellmedr", "code": "CLINIC_ID_MISMATCH"}

    def test_event(self, caplog):
        with caplog.at_level(logging.WARNING, logger=SECURITY_LOGGER_NAME):
            log_security_event("Rejected webhook credentials", source="heyflow")

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.extra_fields["security_event"] is True
