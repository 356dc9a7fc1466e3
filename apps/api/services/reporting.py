"""Read-only credit projections for HR and admin dashboards.

These queries may run against a read replica; callers must not assume they
observe writes committed moments earlier on another instance.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, case, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.credit_wallet import CreditWallet
from models.enums import CreditType, Frequency, OwnerType, Role
from models.organization import OrganizationMember
from services.allocations import period_end, period_start
from services.directory import list_active_members, require_organization
from services.ledger import as_utc, list_balances, utcnow
from services.validation import parse_choice


ORGANIZATION_BUCKET = "ORGANIZATION"
EXPIRY_KEY_PATTERN = "expiry:%"


def _empty_totals() -> Dict[str, Dict[str, int]]:
    return {kind.value: {"allocated": 0, "consumed": 0, "expired": 0} for kind in CreditType}


async def _member_wallet_balances(db: AsyncSession, user_ids: Iterable[str]) -> Dict[Tuple[str, str], int]:
    ids = list(user_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(CreditWallet.owner_id, CreditWallet.credit_type, CreditWallet.balance).where(
            CreditWallet.owner_type == OwnerType.USER.value,
            CreditWallet.owner_id.in_(ids),
        )
    )
    return {(owner_id, credit_type): int(balance or 0) for owner_id, credit_type, balance in result.all()}


async def usage_report(
    db: AsyncSession,
    *,
    organization_id: Any,
    frequency: Any = Frequency.MONTHLY,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Allocated vs consumed credits for an organization in the period containing ``now``."""
    cadence = parse_choice(Frequency, frequency, "frequency")
    organization = await require_organization(db, organization_id)
    start = period_start(cadence, as_utc(now) or utcnow())
    end = period_end(cadence, start)

    member_result = await db.execute(
        select(OrganizationMember.user_id, OrganizationMember.role).where(
            OrganizationMember.organization_id == organization.id
        )
    )
    role_by_user = {user_id: role for user_id, role in member_result.all()}

    is_expiry = and_(CreditTransaction.delta < 0, CreditTransaction.idempotency_key.like(EXPIRY_KEY_PATTERN))
    is_consumption = and_(
        CreditTransaction.delta < 0,
        or_(
            CreditTransaction.idempotency_key.is_(None),
            CreditTransaction.idempotency_key.not_like(EXPIRY_KEY_PATTERN),
        ),
    )
    allocated = func.coalesce(func.sum(case((CreditTransaction.delta > 0, CreditTransaction.delta), else_=0)), 0)
    consumed = func.coalesce(func.sum(case((is_consumption, -CreditTransaction.delta), else_=0)), 0)
    expired = func.coalesce(func.sum(case((is_expiry, -CreditTransaction.delta), else_=0)), 0)

    owner_filter = [and_(CreditWallet.owner_type == OwnerType.ORG.value, CreditWallet.owner_id == organization.id)]
    if role_by_user:
        owner_filter.append(
            and_(
                CreditWallet.owner_type == OwnerType.USER.value,
                CreditWallet.owner_id.in_(list(role_by_user)),
            )
        )

    result = await db.execute(
        select(
            CreditWallet.owner_type,
            CreditWallet.owner_id,
            CreditWallet.credit_type,
            allocated,
            consumed,
            expired,
        )
        .join(CreditTransaction, CreditTransaction.wallet_id == CreditWallet.id)
        .where(
            or_(*owner_filter),
            CreditTransaction.created_at >= start,
            CreditTransaction.created_at < end,
        )
        .group_by(CreditWallet.owner_type, CreditWallet.owner_id, CreditWallet.credit_type)
    )

    totals = _empty_totals()
    by_role: Dict[str, Dict[str, Dict[str, int]]] = {}
    for owner_type, owner_id, credit_type, allocated_sum, consumed_sum, expired_sum in result.all():
        if owner_type == OwnerType.ORG.value:
            bucket = ORGANIZATION_BUCKET
        else:
            bucket = role_by_user.get(owner_id, "UNKNOWN")
        role_totals = by_role.setdefault(bucket, _empty_totals())
        for target in (totals, role_totals):
            row = target.setdefault(credit_type, {"allocated": 0, "consumed": 0, "expired": 0})
            row["allocated"] += int(allocated_sum or 0)
            row["consumed"] += int(consumed_sum or 0)
            row["expired"] += int(expired_sum or 0)

    return {
        "organization_id": organization.id,
        "frequency": cadence.value,
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
        "totals": totals,
        "by_role": by_role,
    }


async def low_balance_members(
    db: AsyncSession,
    *,
    organization_id: Any,
    threshold: Optional[int] = None,
    roles: Iterable[Role] = (Role.EMPLOYEE,),
) -> Dict[str, Any]:
    """Active members holding at most ``threshold`` credits of any type."""
    organization = await require_organization(db, organization_id)
    limit = int(settings.LOW_BALANCE_THRESHOLD if threshold is None else threshold)
    members = await list_active_members(db, organization.id, roles)
    balances = await _member_wallet_balances(db, (member.user_id for member in members))

    flagged: List[Dict[str, Any]] = []
    for member in members:
        member_balances = {kind.value: balances.get((member.user_id, kind.value), 0) for kind in CreditType}
        low_types = [kind for kind, value in member_balances.items() if value <= limit]
        if low_types:
            flagged.append(
                {
                    "user_id": member.user_id,
                    "email": member.email,
                    "role": member.role,
                    "balances": member_balances,
                    "low_credit_types": low_types,
                }
            )
    return {"organization_id": organization.id, "threshold": limit, "members": flagged}


async def organization_wallets(db: AsyncSession, *, organization_id: Any) -> Dict[str, Any]:
    organization = await require_organization(db, organization_id)
    org_balances = await list_balances(db, owner_type=OwnerType.ORG, owner_id=organization.id)
    members = await list_active_members(db, organization.id)
    balances = await _member_wallet_balances(db, (member.user_id for member in members))
    return {
        "organization_id": organization.id,
        "organization_balances": [balance.as_dict() for balance in org_balances],
        "members": [
            {
                "user_id": member.user_id,
                "role": member.role,
                "balances": {kind.value: balances.get((member.user_id, kind.value), 0) for kind in CreditType},
            }
            for member in members
        ],
    }
