"""Typed failures raised by the ledger, allocation and directory services."""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for every ledger failure surfaced to callers."""

    code = "ledger_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LedgerError):
    """Malformed input, rejected before touching storage."""

    code = "validation_error"
    status_code = 422


class InsufficientBalance(LedgerError):
    """A debit would drive the wallet below zero."""

    code = "insufficient_balance"
    status_code = 402

    def __init__(self, required: int, available: int, *, message: Optional[str] = None):
        super().__init__(
            message or f"Insufficient credits. Required: {required}, available: {available}.",
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class NotFound(LedgerError):
    code = "not_found"
    status_code = 404


class TransientConflict(LedgerError):
    """Concurrent writers kept racing on the same wallet until retries ran out."""

    code = "transient_conflict"
    status_code = 503
    retryable = True


class StorageTimeout(TransientConflict):
    code = "storage_timeout"
