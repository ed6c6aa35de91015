"""
Reconciliation audit trail.

Every engine decision is logged (structured, via `extra=`) and stored in
reconciliation_audit_log inside the caller's unit of work, so the audit row
commits or rolls back together with the state change it describes.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import ReconciliationAuditLogDB

logger = logging.getLogger(__name__)


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    CANDIDATES_FOUND = "reconciliation.candidates_found"
    INVOICE_CANDIDATES_FOUND = "reconciliation.invoice_candidates_found"
    RECONCILIATION_CREATED = "reconciliation.created"
    RECONCILIATION_VALIDATED = "reconciliation.validated"
    RECONCILIATION_REJECTED = "reconciliation.rejected"
    INVOICE_PAID = "reconciliation.invoice_paid"
    RULE_CREATED = "reconciliation.rule_created"
    RULE_UPDATED = "reconciliation.rule_updated"
    RULE_APPLIED = "reconciliation.rule_applied"
    DISCREPANCIES_DETECTED = "reconciliation.discrepancies_detected"
    DISCREPANCY_RESOLVED = "reconciliation.discrepancy_resolved"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


def log_reconciliation_event(
    event_type: str,
    company_id: str,
    details: Dict[str, Any],
    reconciliation_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event_type": event_type,
        "company_id": company_id,
        "reconciliation_id": reconciliation_id,
        "details": _jsonable(details),
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


def record_audit_event(
    db: AsyncSession,
    event_type: str,
    company_id: str,
    details: Dict[str, Any],
    reconciliation_id: Optional[str] = None,
    actor: str = "system"
) -> ReconciliationAuditLogDB:
    """Log the event and stage its audit row in the current unit of work (no commit)."""
    log_reconciliation_event(event_type, company_id, details, reconciliation_id, actor)

    entry = ReconciliationAuditLogDB(
        company_id=company_id,
        reconciliation_id=reconciliation_id,
        action=event_type,
        actor=actor,
        details=_jsonable(details),
    )
    db.add(entry)
    return entry
