"""
Bankrec Core - Sentry Integration

Error tracking for reconciliation jobs. Failures are tagged with the
company, bank account and run they belong to so that one noisy account can be
filtered out of the issue stream.
"""

import os
import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

# Context keys promoted to searchable tags; anything else goes to extras
RUN_TAGS = ("company_id", "bank_account_id", "run_id", "job")

# Bank identifiers, counterparty labels and connection secrets
SENSITIVE_KEYS = ("password", "secret", "token", "dsn", "iban", "database_url", "label")

REDACTED = "[REDACTED]"


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    release: Optional[str] = None,
    sample_rate: float = 1.0,
) -> bool:
    """
    Initialize Sentry error tracking.

    Args:
        dsn: Sentry DSN (from environment if not provided)
        environment: Environment name (production, staging, development)
        release: Release version
        sample_rate: Error sampling rate (0.0 to 1.0)

    Returns:
        True if Sentry was initialized, False otherwise
    """
    dsn = dsn or os.environ.get("SENTRY_DSN", "")

    if not dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release or os.environ.get("GIT_SHA", "unknown"),
            sample_rate=sample_rate,
            traces_sample_rate=0.0,
            integrations=[
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            send_default_pii=False,
            before_send=filter_sensitive_data,
        )
        logger.info(f"Sentry initialized for environment: {environment}")
        return True

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if any(s in key.lower() for s in SENSITIVE_KEYS) else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Redact sensitive values from a Sentry event before it leaves the process.

    Extras and contexts are walked recursively; tags are flat.
    """
    for section in ("extra", "contexts", "tags"):
        if section in event:
            event[section] = _redact(event[section])
    return event


def capture_exception(exception: Exception, **context) -> Optional[str]:
    """
    Capture an exception with its reconciliation context.

    Keys listed in RUN_TAGS become tags, the rest become extras.

    Returns:
        Event ID if captured, None otherwise
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in context.items():
                if key in RUN_TAGS and value is not None:
                    scope.set_tag(key, str(value))
                else:
                    scope.set_extra(key, value)
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"Failed to capture exception to Sentry: {e}")
        return None


def set_tag(key: str, value: str):
    """Set a tag on the current scope."""
    sentry_sdk.set_tag(key, value)
