"""Translation of service failures into HTTP responses."""

from fastapi import HTTPException

from services.errors import LedgerError


def ledger_http_error(exc: LedgerError) -> HTTPException:
    headers = {"Retry-After": "1"} if exc.retryable else None
    return HTTPException(status_code=exc.status_code, detail=exc.as_dict(), headers=headers)
