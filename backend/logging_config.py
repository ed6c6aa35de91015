"""
Bankrec Core - Structured JSON Logging

Provides structured logging for production environments.
Outputs JSON format for log aggregation (Datadog, CloudWatch, etc.)

Every record carries the reconciliation scope it was emitted in (company,
bank account, run). The scope lives in context variables so that concurrent
runs on different accounts never see each other's context.
"""

import logging
import json
import sys
import os
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

CONTEXT_FIELDS = ("company_id", "bank_account_id", "run_id")

_company_id: ContextVar[Optional[str]] = ContextVar("company_id", default=None)
_bank_account_id: ContextVar[Optional[str]] = ContextVar("bank_account_id", default=None)
_run_id: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

# Attributes present on every LogRecord; anything else came in through `extra=`
_RESERVED_ATTRS = frozenset([
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName", "event_type",
]) | frozenset(CONTEXT_FIELDS)


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record: base fields, reconciliation context, event
    type and whatever else was passed through `extra=`.
    """

    def __init__(self, service_name: str = "bankrec-core"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")
        self.hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "hostname": self.hostname,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        context = {
            key: getattr(record, key) for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        }
        if context:
            log_data["context"] = context

        event_type = getattr(record, "event_type", None)
        if event_type:
            log_data["event_type"] = event_type

        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class ReconciliationContextFilter(logging.Filter):
    """
    Stamps records with the current reconciliation scope. A value passed
    explicitly through `extra=` wins over the ambient one.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, var in (("company_id", _company_id), ("bank_account_id", _bank_account_id), ("run_id", _run_id)):
            if getattr(record, key, None) is None:
                setattr(record, key, var.get())
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "bankrec-core"
) -> logging.Logger:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production)
        service_name: Service name for log aggregation

    Returns:
        Configured root logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))

    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(company_id)s/%(run_id)s] %(message)s"
        ))

    handler.addFilter(ReconciliationContextFilter())
    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name."""
    return logging.getLogger(name)


def set_reconciliation_context(
    company_id: Optional[str] = None,
    bank_account_id: Optional[str] = None,
    run_id: Optional[str] = None
):
    """Set the reconciliation scope for records logged from the current context."""
    _company_id.set(company_id)
    _bank_account_id.set(bank_account_id)
    _run_id.set(run_id)


def clear_reconciliation_context():
    """Clear the reconciliation scope."""
    set_reconciliation_context(None, None, None)


def get_reconciliation_context() -> Dict[str, Optional[str]]:
    return {
        "company_id": _company_id.get(),
        "bank_account_id": _bank_account_id.get(),
        "run_id": _run_id.get(),
    }
