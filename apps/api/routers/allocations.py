"""Allocation rule management and scheduled run trigger."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.enums import CreditType, Frequency, Role, TargetRole
from routers.auth_scope import AuthContext, ensure_organization_scope, get_auth_context, require_roles
from routers.errors import ledger_http_error
from routers.rate_limit import rate_limit
from services.allocation_queue import enqueue_allocation_run
from services.allocations import create_rule, deactivate_rule, get_rule, list_rules, rule_payload, run_due
from services.errors import LedgerError

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateRuleRequest(BaseModel):
    organization_id: Optional[str] = None
    credit_type: CreditType
    amount: int = Field(ge=1, le=10000)
    frequency: Frequency = Frequency.MONTHLY
    target_role: TargetRole = TargetRole.EMPLOYEE


class RunDueRequest(BaseModel):
    now: Optional[datetime] = None
    enqueue: bool = False


@router.post("/rules")
async def create_allocation_rule(
    request: CreateRuleRequest,
    _rate_limit: None = Depends(rate_limit("allocation_rules", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    organization_id = ensure_organization_scope(auth, request.organization_id)
    try:
        rule = await create_rule(
            db,
            organization_id=organization_id,
            credit_type=request.credit_type,
            amount=request.amount,
            frequency=request.frequency,
            target_role=request.target_role,
            actor_id=auth.user_id,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return rule_payload(rule)


@router.get("/rules")
async def list_allocation_rules(
    organization_id: Optional[str] = Query(default=None),
    include_inactive: bool = Query(default=False),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_org = ensure_organization_scope(auth, organization_id)
    rules = await list_rules(db, organization_id=scoped_org, include_inactive=include_inactive)
    return {"count": len(rules), "items": [rule_payload(rule) for rule in rules]}


@router.post("/rules/{rule_id}/deactivate")
async def deactivate_allocation_rule(
    rule_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    require_roles(auth, Role.ADMIN, Role.HR)
    existing = await get_rule(db, rule_id)
    if existing is not None:
        ensure_organization_scope(auth, existing.organization_id)
    try:
        rule = await deactivate_rule(db, rule_id)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return rule_payload(rule)


@router.post("/run")
async def run_due_allocations(
    request: RunDueRequest,
    auth: AuthContext = Depends(get_auth_context),
):
    require_roles(auth, Role.ADMIN)
    if request.enqueue:
        try:
            job = enqueue_allocation_run(request.now)
        except Exception as exc:
            logger.warning("Allocation run enqueue failed: %s", exc)
            raise HTTPException(status_code=503, detail="Allocation queue is unavailable.") from exc
        return {"queued": True, "job_id": job.id}
    report = await run_due(request.now)
    return report.as_dict()
