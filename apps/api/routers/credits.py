"""Credit wallet router: balances, history, issuance and booking debits."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.enums import CreditType, OwnerType, Role
from routers.auth_scope import AuthContext, ensure_wallet_access, get_auth_context, require_roles
from routers.errors import ledger_http_error
from routers.rate_limit import rate_limit
from services.errors import LedgerError
from services.ledger import credit, debit, history, list_balances, transaction_payload, verify_wallet

router = APIRouter()
logger = logging.getLogger(__name__)


class IssueCreditsRequest(BaseModel):
    owner_type: OwnerType = OwnerType.USER
    owner_id: str = Field(min_length=1)
    credit_type: CreditType
    amount: int = Field(ge=1, le=100000)
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None


class DebitCreditsRequest(BaseModel):
    owner_type: OwnerType = OwnerType.USER
    owner_id: Optional[str] = None
    credit_type: CreditType
    amount: int = Field(default=1, ge=1, le=1000)
    reason: str = "Booking confirmed"
    booking_id: Optional[str] = None


def _default_issue_reason(request: IssueCreditsRequest) -> str:
    if request.owner_type == OwnerType.ORG:
        return f"Admin credit issuance: {request.amount} {request.credit_type.value} credits"
    return f"Credit allocation: {request.amount} {request.credit_type.value} credits"


@router.get("/balance")
async def get_balances(
    owner_type: OwnerType = Query(default=OwnerType.USER),
    owner_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    resolved_owner = owner_id or (auth.organization_id if owner_type == OwnerType.ORG else auth.user_id)
    if not resolved_owner:
        raise HTTPException(status_code=422, detail="owner_id is required.")
    await ensure_wallet_access(auth, owner_type, resolved_owner, db)
    try:
        balances = await list_balances(db, owner_type=owner_type, owner_id=resolved_owner)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return {
        "owner_type": owner_type.value,
        "owner_id": resolved_owner,
        "balances": [balance.as_dict() for balance in balances],
    }


@router.get("/history")
async def get_history(
    credit_type: CreditType = Query(...),
    owner_type: OwnerType = Query(default=OwnerType.USER),
    owner_id: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1, le=200),
    cursor: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    resolved_owner = owner_id or (auth.organization_id if owner_type == OwnerType.ORG else auth.user_id)
    if not resolved_owner:
        raise HTTPException(status_code=422, detail="owner_id is required.")
    await ensure_wallet_access(auth, owner_type, resolved_owner, db)
    try:
        page = await history(
            db,
            owner_type=owner_type,
            owner_id=resolved_owner,
            credit_type=credit_type,
            limit=limit,
            cursor=cursor,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return {
        "items": [transaction_payload(entry) for entry in page.items],
        "next_cursor": page.next_cursor,
    }


@router.post("/issue")
async def issue_credits(
    request: IssueCreditsRequest,
    _rate_limit: None = Depends(rate_limit("credits_issue", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    require_roles(auth, Role.ADMIN, Role.HR)
    await ensure_wallet_access(auth, request.owner_type, request.owner_id, db, grant=True)
    try:
        entry = await credit(
            db,
            owner_type=request.owner_type,
            owner_id=request.owner_id,
            credit_type=request.credit_type,
            amount=request.amount,
            reason=request.reason or _default_issue_reason(request),
            actor_id=auth.user_id,
            expires_at=request.expires_at,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return {"ok": True, "transaction": transaction_payload(entry)}


@router.post("/debit")
async def debit_credits(
    request: DebitCreditsRequest,
    _rate_limit: None = Depends(rate_limit("credits_debit", limit=300, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    owner_id = request.owner_id or auth.user_id
    is_self = request.owner_type == OwnerType.USER and owner_id == auth.user_id
    if not is_self and auth.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Only the wallet owner may redeem these credits.")
    try:
        entry = await debit(
            db,
            owner_type=request.owner_type,
            owner_id=owner_id,
            credit_type=request.credit_type,
            amount=request.amount,
            reason=request.reason,
            booking_id=request.booking_id,
            actor_id=auth.user_id,
        )
    except LedgerError as exc:
        if exc.retryable:
            logger.warning("Booking debit for %s deferred: %s", owner_id, exc)
        raise ledger_http_error(exc) from exc
    return {"ok": True, "transaction": transaction_payload(entry)}


@router.get("/wallets/{wallet_id}/verify")
async def verify_wallet_balance(
    wallet_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    require_roles(auth, Role.ADMIN)
    try:
        return await verify_wallet(db, wallet_id)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
