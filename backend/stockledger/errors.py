# Overview: Error taxonomy shared by the stock ledger services and routes.

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """
    Base class for every failure a unit of work can report.

    Each subclass maps to one HTTP status so routes can answer with a
    structured envelope: {"error": message, "code": code, "details": {...}}.
    """
    status_code = 400
    code = "ledger_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationFailure(LedgerError):
    """400-level input problem, raised before any mutation."""
    status_code = 400
    code = "validation_error"


class NotFound(LedgerError):
    status_code = 404
    code = "not_found"


class Conflict(LedgerError):
    """409-level business rule conflict (duplicate stock record, return already reviewed)."""
    status_code = 409
    code = "conflict"


class InsufficientStock(LedgerError):
    """
    Requested debit exceeds current stock.

    details["items"] lists every short product, not only the first one found.
    """
    status_code = 409
    code = "insufficient_stock"


class Unauthorized(LedgerError):
    """Actor's branch scope does not cover the target branch."""
    status_code = 403
    code = "unauthorized"


class StoreFailure(LedgerError):
    """
    Transient storage failure (lock timeout, stale version).

    The only class that is safe to retry; the services never retry on their own.
    """
    status_code = 503
    code = "store_failure"
    retryable = True
