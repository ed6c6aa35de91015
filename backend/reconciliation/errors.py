"""
Reconciliation error kinds.

All are local, recoverable conditions surfaced to the caller. Batch drivers
catch them per item and aggregate them into their report.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for reconciliation engine errors."""

    code = "reconciliation_error"

    def __init__(self, message: str, resource_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.resource_id = resource_id

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "resource_id": self.resource_id,
        }


class NotFoundError(ReconciliationError):
    """Id does not resolve, or does not belong to the caller's company."""

    code = "not_found"


class ConflictError(ReconciliationError):
    """Active reconciliation already exists, or the record is in a terminal state."""

    code = "conflict"


class InvalidRuleError(ReconciliationError):
    """Lettrage rule criteria or action is malformed."""

    code = "invalid_rule"


class ConfigurationMissingError(ReconciliationError):
    """Bank control account is not provisioned for the company."""

    code = "configuration_missing"
