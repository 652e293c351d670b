"""Structured logging configuration.

This module provides structured logging with JSON formatting for production
environments and human-readable formatting for development, plus a dedicated
security logger for events operators page on.

Security Impact:
    - Logs never carry PHI; callers log ids, sources and step names only
    - Security alerts (tenant mismatch) and security events (auth failures)
      are emitted on their own logger with a marker field, so alert routing
      does not depend on message text
    - Every record carries the request correlation id when one is active
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from intake_gateway.infrastructure.request_context import get_request_id, get_tenant_id

SECURITY_LOGGER_NAME = "intake_gateway.security"

security_logger = logging.getLogger(SECURITY_LOGGER_NAME)


class RequestContextFilter(logging.Filter):
    """Attach request_id and tenant_id from the active context to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id() or "-"
        if not hasattr(record, "tenant_id"):
            record.tenant_id = get_tenant_id()
        return True


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs.

    Formats log records as JSON for better parsing and analysis in
    production environments.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Parameters:
            record: Log record to format

        Returns:
            JSON string representation of log record
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if getattr(record, "request_id", None) not in (None, "-"):
            log_data["request_id"] = record.request_id
        if getattr(record, "tenant_id", None) is not None:
            log_data["tenant_id"] = record.tenant_id
        if hasattr(record, "client_ip"):
            log_data["client_ip"] = record.client_ip
        if hasattr(record, "endpoint"):
            log_data["endpoint"] = record.endpoint

        return json.dumps(log_data, default=str)


def setup_logging(use_json: bool = False, log_level: str = "INFO"):
    """Setup application logging.

    Parameters:
        use_json: Use JSON formatting (for production)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(RequestContextFilter())

    if use_json:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("fastapi").setLevel(logging.WARNING)


def log_security_alert(message: str, **fields: Any) -> None:
    """Log a fatal security fault (pages operators).

    Parameters:
        message: Human-readable description (no PHI)
        **fields: Structured context (source, tenant ids, code)
    """
    security_logger.critical(
        f"SECURITY ALERT: {message}",
        extra={"extra_fields": {"security_alert": True, **fields}}
    )


def log_security_event(message: str, **fields: Any) -> None:
    """Log a security-relevant but expected event (e.g. rejected credential)."""
    security_logger.warning(
        message,
        extra={"extra_fields": {"security_event": True, **fields}}
    )
