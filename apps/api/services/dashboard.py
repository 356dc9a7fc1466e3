"""Role-specific credit dashboard summaries."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_allocation_rule import CreditAllocationRule
from models.enums import CreditType, OwnerType, Role
from models.organization import Organization
from services.errors import ValidationError
from services.ledger import history, list_balances, transaction_payload
from services.reporting import low_balance_members, usage_report


RECENT_TRANSACTION_LIMIT = 10

DashboardHandler = Callable[[AsyncSession, str, Optional[str]], Awaitable[Dict[str, Any]]]


async def _admin_dashboard(db: AsyncSession, user_id: str, organization_id: Optional[str]) -> Dict[str, Any]:
    org_count = await db.execute(select(func.count(Organization.id)))
    rule_count = await db.execute(
        select(func.count(CreditAllocationRule.id)).where(CreditAllocationRule.is_active.is_(True))
    )
    return {
        "organization_count": int(org_count.scalar() or 0),
        "active_rule_count": int(rule_count.scalar() or 0),
    }


async def _hr_dashboard(db: AsyncSession, user_id: str, organization_id: Optional[str]) -> Dict[str, Any]:
    if not organization_id:
        raise ValidationError("HR sessions must be bound to an organization.")
    return {
        "usage": await usage_report(db, organization_id=organization_id),
        "low_balance": await low_balance_members(db, organization_id=organization_id),
    }


async def _member_dashboard(db: AsyncSession, user_id: str, organization_id: Optional[str]) -> Dict[str, Any]:
    balances = await list_balances(db, owner_type=OwnerType.USER, owner_id=user_id)
    recent = []
    for kind in CreditType:
        page = await history(
            db,
            owner_type=OwnerType.USER,
            owner_id=user_id,
            credit_type=kind,
            limit=RECENT_TRANSACTION_LIMIT,
        )
        recent.extend(transaction_payload(entry) for entry in page.items)
    recent.sort(key=lambda row: (row["created_at"] or "", row["id"]), reverse=True)
    return {
        "balances": [balance.as_dict() for balance in balances],
        "recent_transactions": recent[:RECENT_TRANSACTION_LIMIT],
    }


async def _coach_dashboard(db: AsyncSession, user_id: str, organization_id: Optional[str]) -> Dict[str, Any]:
    return {}


DASHBOARD_HANDLERS: Dict[Role, DashboardHandler] = {
    Role.ADMIN: _admin_dashboard,
    Role.HR: _hr_dashboard,
    Role.EMPLOYEE: _member_dashboard,
    Role.COACH: _coach_dashboard,
    Role.INDIVIDUAL: _member_dashboard,
}

_unhandled_roles = set(Role) - set(DASHBOARD_HANDLERS)
if _unhandled_roles:
    raise RuntimeError(f"Dashboard handlers missing for roles: {sorted(role.value for role in _unhandled_roles)}")


async def build_dashboard(
    db: AsyncSession,
    *,
    user_id: str,
    role: Role,
    organization_id: Optional[str] = None,
) -> Dict[str, Any]:
    handler = DASHBOARD_HANDLERS[role]
    payload = await handler(db, user_id, organization_id)
    return {
        "role": role.value,
        "user_id": user_id,
        "organization_id": organization_id,
        **payload,
    }
