"""Read-only credit usage reports for HR and admins."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.enums import Frequency
from routers.auth_scope import AuthContext, ensure_organization_scope, get_auth_context
from routers.errors import ledger_http_error
from services.errors import LedgerError
from services.reporting import low_balance_members, organization_wallets, usage_report

router = APIRouter()


@router.get("/usage")
async def get_usage_report(
    organization_id: Optional[str] = Query(default=None),
    frequency: Frequency = Query(default=Frequency.MONTHLY),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_org = ensure_organization_scope(auth, organization_id)
    try:
        return await usage_report(db, organization_id=scoped_org, frequency=frequency)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc


@router.get("/low-balance")
async def get_low_balance_members(
    organization_id: Optional[str] = Query(default=None),
    threshold: Optional[int] = Query(default=None, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_org = ensure_organization_scope(auth, organization_id)
    try:
        return await low_balance_members(db, organization_id=scoped_org, threshold=threshold)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc


@router.get("/wallets")
async def get_organization_wallets(
    organization_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_org = ensure_organization_scope(auth, organization_id)
    try:
        return await organization_wallets(db, organization_id=scoped_org)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
