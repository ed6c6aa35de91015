"""
Unit Tests for configuration, logging and error tracking helpers

Tests:
- Settings parsing and production validation
- Database URL resolution
- JSON log formatting and reconciliation context
- Sentry event redaction
- Runner argument parsing

Run with: pytest tests/test_configuration.py -v
"""

import json
import logging
import pytest
from decimal import Decimal
from unittest.mock import MagicMock, patch

from config import Settings
from logging_config import (
    JSONFormatter,
    ReconciliationContextFilter,
    clear_reconciliation_context,
    get_reconciliation_context,
    set_reconciliation_context,
)
from run_reconciliation import parse_args
from sentry_integration import capture_exception, filter_sensitive_data


def make_settings(**overrides):
    return Settings(_env_file=None, **overrides)


# ==================== SETTINGS TESTS ====================

class TestSettings:
    """Test settings parsing."""

    def test_defaults(self):
        settings = make_settings()

        assert settings.BANK_CONTROL_ACCOUNT_CODE == "512"
        assert settings.BALANCE_TOLERANCE == Decimal("1")
        assert settings.exceptional_account_prefixes == ["67", "77"]
        assert settings.is_development is True

    def test_exceptional_prefixes_are_trimmed(self):
        settings = make_settings(EXCEPTIONAL_ACCOUNT_PREFIXES=" 67, 77 ,,658")
        assert settings.exceptional_account_prefixes == ["67", "77", "658"]

    def test_json_logs_forced_in_production(self):
        assert make_settings(ENVIRONMENT="production").json_logs is True
        assert make_settings(LOG_JSON=True).json_logs is True
        assert make_settings().json_logs is False

    def test_production_validation(self):
        settings = make_settings(
            ENVIRONMENT="production",
            DATABASE_URL="sqlite+aiosqlite:///bankrec.db",
            DEBUG=True,
            BALANCE_TOLERANCE=Decimal("-1")
        )

        errors = settings.validate_production_config()

        assert "DATABASE_URL cannot use SQLite in production" in errors
        assert "DEBUG should be False in production" in errors
        assert "BALANCE_TOLERANCE cannot be negative" in errors

    def test_database_url_uses_asyncpg(self):
        settings = make_settings(DATABASE_URL="postgres://u:p@db:5432/bankrec")
        assert settings.get_database_url() == "postgresql+asyncpg://u:p@db:5432/bankrec"

    def test_database_url_from_components(self):
        settings = make_settings(POSTGRES_HOST="db", POSTGRES_USER="u", POSTGRES_PASSWORD="p")
        assert settings.get_database_url() == "postgresql+asyncpg://u:p@db:5432/bankrec?ssl=require"

    def test_missing_database_configuration(self):
        with pytest.raises(ValueError):
            make_settings().get_database_url()


# ==================== LOGGING TESTS ====================

class TestLogging:
    """Test structured logging."""

    def _record(self, **extra):
        record = logging.LogRecord("reconciliation", logging.INFO, __file__, 10, "run %s", ("done",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter(self):
        formatter = JSONFormatter(service_name="bankrec-test")

        payload = json.loads(formatter.format(self._record(
            event_type="reconciliation.created",
            company_id="company-1",
            run_id=None,
            amount=Decimal("10.50"),
        )))

        assert payload["message"] == "run done"
        assert payload["service"] == "bankrec-test"
        assert payload["event_type"] == "reconciliation.created"
        assert payload["context"] == {"company_id": "company-1"}
        assert payload["extra"] == {"amount": "10.50"}

    def test_context_filter(self):
        context_filter = ReconciliationContextFilter()
        set_reconciliation_context("company-1", "account-1", "run-1")

        try:
            record = self._record()
            assert context_filter.filter(record) is True
            assert (record.company_id, record.bank_account_id, record.run_id) == ("company-1", "account-1", "run-1")
        finally:
            clear_reconciliation_context()

        record = self._record(company_id="explicit")
        context_filter.filter(record)
        assert record.company_id == "explicit"
        assert record.run_id is None
        assert get_reconciliation_context() == {"company_id": None, "bank_account_id": None, "run_id": None}


# ==================== ERROR TRACKING TESTS ====================

class TestSentryIntegration:
    """Test event redaction and run context."""

    def test_sensitive_values_are_redacted(self):
        event = {
            "extra": {
                "iban": "FR7612345",
                "transaction_id": "tx-1",
                "connection": {"database_url": "postgresql://u:p@db/x"},
                "items": [{"password": "x"}, "plain"],
            },
            "contexts": {"transaction": {"label": "VIR DUPONT JEAN"}},
            "tags": {"run_id": "run-1"},
        }

        redacted = filter_sensitive_data(event, {})

        assert redacted["extra"]["iban"] == "[REDACTED]"
        assert redacted["extra"]["transaction_id"] == "tx-1"
        assert redacted["extra"]["connection"]["database_url"] == "[REDACTED]"
        assert redacted["extra"]["items"] == [{"password": "[REDACTED]"}, "plain"]
        assert redacted["contexts"]["transaction"]["label"] == "[REDACTED]"
        assert redacted["tags"] == {"run_id": "run-1"}

    def test_run_context_becomes_tags(self):
        scope = MagicMock()
        with patch("sentry_integration.sentry_sdk") as sdk:
            sdk.new_scope.return_value.__enter__.return_value = scope
            sdk.capture_exception.return_value = "event-1"

            event_id = capture_exception(RuntimeError("boom"), company_id="c1", run_id="r1", transaction_id="tx-1")

        assert event_id == "event-1"
        scope.set_tag.assert_any_call("company_id", "c1")
        scope.set_tag.assert_any_call("run_id", "r1")
        scope.set_extra.assert_called_once_with("transaction_id", "tx-1")


# ==================== RUNNER TESTS ====================

class TestRunnerArguments:
    """Test the scheduler entry point arguments."""

    def test_parse_args(self):
        args = parse_args(["discrepancies", "--company", "c1", "--account", "a1", "--as-of", "2024-03-31", "--persist"])

        assert args.job == "discrepancies"
        assert args.as_of == "2024-03-31"
        assert args.persist is True

    def test_unknown_job(self):
        with pytest.raises(SystemExit):
            parse_args(["export", "--company", "c1", "--account", "a1"])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
