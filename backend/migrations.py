"""
Database migration script for Bankrec Core
Creates the reconciliation schema and optionally provisions a company's
bank control account.

Usage:
    python migrations.py
    python migrations.py --seed-company <company_id>
"""
import argparse
import asyncio
import logging

from sqlalchemy import inspect, select

from config import get_settings
from database.connection import Base, get_engine, get_session_factory, dispose_engine, init_db
from database.reconciliation_models import LedgerAccountDB

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CONTROL_ACCOUNT_LABEL = "Banque"


async def create_tables():
    """Check the connection and create all tables in the database"""
    await init_db(create_tables=True)


async def verify_tables() -> bool:
    """Check every mapped table exists"""
    async with get_engine().connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))

    missing = sorted(set(Base.metadata.tables) - existing)
    for table in sorted(Base.metadata.tables):
        logger.info(f"  {'✗' if table in missing else '✓'} {table}")

    if missing:
        logger.error(f"Missing tables: {', '.join(missing)}")
        return False
    return True


async def seed_control_account(company_id: str) -> LedgerAccountDB:
    """Provision the bank control account for a company (idempotent)"""
    code = get_settings().BANK_CONTROL_ACCOUNT_CODE

    async with get_session_factory()() as session:
        result = await session.execute(
            select(LedgerAccountDB).where(
                LedgerAccountDB.company_id == company_id,
                LedgerAccountDB.code == code
            )
        )
        account = result.scalar_one_or_none()
        if account:
            logger.info(f"Control account {code} already exists for company {company_id}")
            return account

        account = LedgerAccountDB(company_id=company_id, code=code, label=CONTROL_ACCOUNT_LABEL)
        session.add(account)
        await session.commit()
        logger.info(f"Created control account {code} for company {company_id}")
        return account


async def main(seed_company: str = None):
    """Run migrations"""
    logger.info("=" * 50)
    logger.info("Bankrec Core - Database Migration")
    logger.info("=" * 50)

    try:
        await create_tables()
        if not await verify_tables():
            raise SystemExit(1)

        if seed_company:
            await seed_control_account(seed_company)
    finally:
        await dispose_engine()

    logger.info("=" * 50)
    logger.info("Migration complete!")
    logger.info("=" * 50)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the bankrec-core schema")
    parser.add_argument("--seed-company", help="Company id to provision the bank control account for")
    args = parser.parse_args()

    asyncio.run(main(args.seed_company))
