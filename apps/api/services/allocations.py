"""Allocation rules and idempotent periodic credit grants."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.credit_allocation_rule import CreditAllocationRule
from models.enums import CreditType, Frequency, OwnerType, Role, TargetRole
from services.directory import get_organization, is_active_organization, list_active_members, require_organization
from services.errors import LedgerError, NotFound
from services.ledger import as_utc, expire_wallets, grant_credit, utcnow
from services.validation import parse_choice, require_identifier, require_positive_amount


logger = logging.getLogger(__name__)

PERIOD_MONTHS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.YEARLY: 12,
}


@dataclass
class AllocationGrant:
    rule_id: str
    organization_id: str
    user_id: str
    credit_type: str
    amount: int
    transaction_id: str
    period_start: str


@dataclass
class AllocationFailure:
    rule_id: str
    organization_id: str
    user_id: Optional[str]
    code: str
    message: str


@dataclass
class RuleRunResult:
    rule_id: str
    organization_id: str
    period_start: Optional[str] = None
    status: str = "completed"
    already_granted: int = 0
    grants: List[AllocationGrant] = field(default_factory=list)
    failures: List[AllocationFailure] = field(default_factory=list)


@dataclass
class AllocationRunReport:
    run_at: datetime
    rules: List[RuleRunResult] = field(default_factory=list)
    expired_wallets: int = 0

    @property
    def grants(self) -> List[AllocationGrant]:
        return [grant for rule in self.rules for grant in rule.grants]

    @property
    def failures(self) -> List[AllocationFailure]:
        return [failure for rule in self.rules for failure in rule.failures]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_at": self.run_at.isoformat(),
            "rules_processed": sum(1 for rule in self.rules if rule.status != "skipped"),
            "granted_count": len(self.grants),
            "failed_count": len(self.failures),
            "expired_wallets": self.expired_wallets,
            "grants": [asdict(grant) for grant in self.grants],
            "failures": [asdict(failure) for failure in self.failures],
            "rules": [
                {
                    "rule_id": rule.rule_id,
                    "organization_id": rule.organization_id,
                    "period_start": rule.period_start,
                    "status": rule.status,
                    "granted": len(rule.grants),
                    "already_granted": rule.already_granted,
                    "failed": len(rule.failures),
                }
                for rule in self.rules
            ],
        }


def period_start(frequency: Any, now: datetime) -> datetime:
    """Start of the calendar month, quarter or year containing ``now`` (UTC)."""
    kind = parse_choice(Frequency, frequency, "frequency")
    current = as_utc(now)
    span = PERIOD_MONTHS[kind]
    month = ((current.month - 1) // span) * span + 1
    return datetime(current.year, month, 1, tzinfo=timezone.utc)


def period_end(frequency: Any, start: datetime) -> datetime:
    kind = parse_choice(Frequency, frequency, "frequency")
    month_index = start.month - 1 + PERIOD_MONTHS[kind]
    return datetime(start.year + month_index // 12, month_index % 12 + 1, 1, tzinfo=timezone.utc)


def allocation_key(rule_id: str, start: datetime) -> str:
    return f"allocation:{rule_id}:{start.date().isoformat()}"


def rule_payload(rule: CreditAllocationRule) -> Dict[str, Any]:
    last_period = as_utc(rule.last_period_start)
    return {
        "id": rule.id,
        "organization_id": rule.organization_id,
        "credit_type": rule.credit_type,
        "amount": rule.amount,
        "frequency": rule.frequency,
        "target_role": rule.target_role,
        "is_active": bool(rule.is_active),
        "last_period_start": last_period.isoformat() if last_period else None,
    }


def is_rule_due(rule: CreditAllocationRule, now: datetime) -> bool:
    if not rule.is_active:
        return False
    last_period = as_utc(rule.last_period_start)
    return last_period is None or last_period < period_start(rule.frequency, now)


async def create_rule(
    db: AsyncSession,
    *,
    organization_id: Any,
    credit_type: Any,
    amount: Any,
    frequency: Any,
    target_role: Any,
    actor_id: Optional[str] = None,
) -> CreditAllocationRule:
    org_id = require_identifier(organization_id, "organization_id")
    kind = parse_choice(CreditType, credit_type, "credit_type")
    credits = require_positive_amount(amount)
    cadence = parse_choice(Frequency, frequency, "frequency")
    target = parse_choice(TargetRole, target_role, "target_role")

    await require_organization(db, org_id)
    rule = CreditAllocationRule(
        id=str(uuid.uuid4()),
        organization_id=org_id,
        credit_type=kind.value,
        amount=credits,
        frequency=cadence.value,
        target_role=target.value,
        is_active=True,
        created_by=actor_id,
    )
    db.add(rule)
    await db.commit()
    logger.info(
        "allocation_rule_created rule=%s org=%s type=%s amount=%s frequency=%s target=%s",
        rule.id,
        org_id,
        kind.value,
        credits,
        cadence.value,
        target.value,
    )
    return rule


async def get_rule(db: AsyncSession, rule_id: str) -> Optional[CreditAllocationRule]:
    result = await db.execute(
        select(CreditAllocationRule)
        .where(CreditAllocationRule.id == rule_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def deactivate_rule(db: AsyncSession, rule_id: Any) -> CreditAllocationRule:
    """Stop future runs of a rule. Past grants stay in place."""
    key = require_identifier(rule_id, "rule_id")
    rule = await get_rule(db, key)
    if rule is None:
        raise NotFound(f"Allocation rule {key} not found.", details={"rule_id": key})
    if rule.is_active:
        rule.is_active = False
        await db.commit()
        logger.info("allocation_rule_deactivated rule=%s", key)
    return rule


async def list_rules(
    db: AsyncSession,
    organization_id: Optional[str] = None,
    include_inactive: bool = False,
) -> List[CreditAllocationRule]:
    query = select(CreditAllocationRule)
    if organization_id:
        query = query.where(CreditAllocationRule.organization_id == organization_id)
    if not include_inactive:
        query = query.where(CreditAllocationRule.is_active.is_(True))
    result = await db.execute(query.order_by(CreditAllocationRule.created_at, CreditAllocationRule.id))
    return list(result.scalars().all())


async def _run_rule(rule_id: str, now: datetime) -> RuleRunResult:
    async with async_session_maker() as db:
        rule = await get_rule(db, rule_id)
        if rule is None or not is_rule_due(rule, now):
            return RuleRunResult(rule_id=rule_id, organization_id=rule.organization_id if rule else "", status="skipped")

        # Copy before grants: ledger rollbacks expire loaded instances.
        organization_id = rule.organization_id
        credit_type = rule.credit_type
        amount = int(rule.amount)
        frequency = parse_choice(Frequency, rule.frequency, "frequency")
        target = parse_choice(TargetRole, rule.target_role, "target_role")
        start = period_start(frequency, now)
        key = allocation_key(rule_id, start)
        outcome = RuleRunResult(rule_id=rule_id, organization_id=organization_id, period_start=start.isoformat())

        organization = await get_organization(db, organization_id)
        if not is_active_organization(organization):
            outcome.status = "skipped"
            logger.info("allocation_rule_skipped rule=%s org=%s reason=organization_inactive", rule_id, organization_id)
            return outcome

        roles = None if target == TargetRole.ALL else (Role.EMPLOYEE,)
        members = await list_active_members(db, organization_id, roles)
        member_ids = [member.user_id for member in members]
        await db.commit()

        for user_id in member_ids:
            try:
                entry, created = await grant_credit(
                    db,
                    owner_type=OwnerType.USER,
                    owner_id=user_id,
                    credit_type=credit_type,
                    amount=amount,
                    reason=f"{frequency.value.title()} allocation for period starting {start.date().isoformat()}",
                    idempotency_key=key,
                )
            except LedgerError as exc:
                logger.warning("Allocation rule %s skipped member %s: %s", rule_id, user_id, exc)
                outcome.failures.append(
                    AllocationFailure(
                        rule_id=rule_id,
                        organization_id=organization_id,
                        user_id=user_id,
                        code=exc.code,
                        message=exc.message,
                    )
                )
                continue
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.exception("Allocation rule %s failed for member %s: %s", rule_id, user_id, exc)
                outcome.failures.append(
                    AllocationFailure(
                        rule_id=rule_id,
                        organization_id=organization_id,
                        user_id=user_id,
                        code="storage_error",
                        message=str(exc),
                    )
                )
                continue

            if created:
                outcome.grants.append(
                    AllocationGrant(
                        rule_id=rule_id,
                        organization_id=organization_id,
                        user_id=user_id,
                        credit_type=credit_type,
                        amount=amount,
                        transaction_id=entry.id,
                        period_start=start.isoformat(),
                    )
                )
            else:
                outcome.already_granted += 1

        if outcome.failures:
            outcome.status = "partial"
            return outcome

        await db.execute(
            update(CreditAllocationRule)
            .where(CreditAllocationRule.id == rule_id)
            .values(last_period_start=start)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return outcome


async def run_due(now: Optional[datetime] = None, *, rule_concurrency: Optional[int] = None) -> AllocationRunReport:
    """Apply every active rule whose period has rolled over since its last run.

    Safe to invoke repeatedly: grants carry an ``allocation:<rule>:<period>``
    idempotency key, so a rerun only backfills members not yet granted.
    """
    current = as_utc(now) or utcnow()
    report = AllocationRunReport(run_at=current)

    async with async_session_maker() as db:
        expired = await expire_wallets(db, current)
        report.expired_wallets = len(expired)
        rules = await list_rules(db)
        due_ids = [rule.id for rule in rules if is_rule_due(rule, current)]

    limit = max(int(rule_concurrency or settings.ALLOCATION_RULE_CONCURRENCY), 1)
    semaphore = asyncio.Semaphore(limit)

    async def _guarded(rule_id: str) -> RuleRunResult:
        async with semaphore:
            try:
                return await _run_rule(rule_id, current)
            except SQLAlchemyError as exc:
                logger.exception("Allocation rule %s aborted: %s", rule_id, exc)
                return RuleRunResult(
                    rule_id=rule_id,
                    organization_id="",
                    status="failed",
                    failures=[
                        AllocationFailure(
                            rule_id=rule_id,
                            organization_id="",
                            user_id=None,
                            code="storage_error",
                            message=str(exc),
                        )
                    ],
                )

    report.rules = list(await asyncio.gather(*(_guarded(rule_id) for rule_id in due_ids)))
    if due_ids or report.expired_wallets:
        logger.info(
            "allocation_run at=%s rules=%s granted=%s failed=%s expired=%s",
            current.isoformat(),
            len(due_ids),
            len(report.grants),
            len(report.failures),
            report.expired_wallets,
        )
    return report


def run_due_job(now_iso: Optional[str] = None) -> Dict[str, Any]:
    """RQ worker entrypoint for scheduled allocation runs."""
    now = datetime.fromisoformat(now_iso) if now_iso else None
    report = asyncio.run(run_due(now))
    return report.as_dict()
