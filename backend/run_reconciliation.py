"""
Bankrec Core - Reconciliation Runner

Entry point for an external scheduler. Runs one job for one bank account
and prints its report as JSON.

Usage:
    python run_reconciliation.py auto --company <id> --account <id>
    python run_reconciliation.py discrepancies --company <id> --account <id> [--as-of 2024-03-31] [--persist]
    python run_reconciliation.py indicators --company <id> --account <id>

Exit codes: 0 success, 1 run-level error, 2 completed with per-transaction errors.
"""

import argparse
import asyncio
import json
import sys
from datetime import date

from config import get_settings
from database.connection import session_scope, dispose_engine
from database.reconciliation_models import DiscrepancyType
from logging_config import setup_logging, get_logger
from reconciliation.errors import ReconciliationError
from reconciliation.services import AutoReconciliationService, BalanceService, DiscrepancyService
from sentry_integration import init_sentry, capture_exception, set_tag

logger = get_logger(__name__)


async def run_auto(company_id: str, bank_account_id: str) -> dict:
    async with session_scope() as session:
        report = await AutoReconciliationService(session).run_auto_reconciliation(company_id, bank_account_id)
    return report.to_dict()


async def run_discrepancies(company_id: str, bank_account_id: str, as_of: date, persist: bool) -> dict:
    async with session_scope() as session:
        service = DiscrepancyService(session)
        if persist:
            stored = await service.detect_and_persist(
                company_id, bank_account_id, as_of, persist_types=list(DiscrepancyType)
            )
            return {"stored": [d.id for d in stored]}

        findings = await service.detect_discrepancies(company_id, bank_account_id, as_of)
        return {"findings": [f.to_dict() for f in findings]}


async def run_indicators(company_id: str, bank_account_id: str, as_of: date) -> dict:
    async with session_scope() as session:
        indicators = await BalanceService(session).get_indicators(company_id, bank_account_id, as_of)
    return indicators.to_dict()


async def main(args) -> int:
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.json_logs, service_name=settings.SERVICE_NAME)
    if init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT):
        set_tag("job", args.job)

    as_of = date.fromisoformat(args.as_of) if args.as_of else date.today()

    try:
        if args.job == "auto":
            output = await run_auto(args.company, args.account)
        elif args.job == "discrepancies":
            output = await run_discrepancies(args.company, args.account, as_of, args.persist)
        else:
            output = await run_indicators(args.company, args.account, as_of)
    except ReconciliationError as e:
        logger.error(f"{args.job} failed: {e.message}")
        print(json.dumps(e.to_dict()))
        return 1
    except Exception as e:
        logger.exception(f"{args.job} failed")
        capture_exception(e, job=args.job, company_id=args.company, bank_account_id=args.account)
        return 1
    finally:
        await dispose_engine()

    print(json.dumps(output, default=str, indent=2))
    return 2 if output.get("errors") else 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run a bank reconciliation job")
    parser.add_argument("job", choices=["auto", "discrepancies", "indicators"])
    parser.add_argument("--company", required=True, help="Company id")
    parser.add_argument("--account", required=True, help="Bank account id")
    parser.add_argument("--as-of", dest="as_of", help="Balance date (YYYY-MM-DD), defaults to today")
    parser.add_argument("--persist", action="store_true", help="Store detected discrepancies")
    return parser.parse_args(argv)


if __name__ == "__main__":
    sys.exit(asyncio.run(main(parse_args())))
