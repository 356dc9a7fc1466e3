"""Credit ledger: wallet balances backed by an append-only transaction log.

Every balance change writes one ``CreditTransaction`` and the wallet's cached
balance in the same database transaction. The cached balance is written with a
compare-and-swap on ``CreditWallet.version``; a lost race rolls back and the
read-check-write cycle is retried a bounded number of times.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.credit_wallet import CreditWallet
from models.enums import CreditType, OwnerType
from services.errors import InsufficientBalance, LedgerError, NotFound, StorageTimeout, TransientConflict, ValidationError
from services.validation import MAX_AMOUNT, normalize_reason, parse_choice, require_identifier, require_positive_amount


logger = logging.getLogger(__name__)

T = TypeVar("T")


class _WriteConflict(Exception):
    """Wallet version moved between read and write."""


@dataclass
class CreditBalance:
    credit_type: str
    balance: int
    expires_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "credit_type": self.credit_type,
            "balance": self.balance,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class HistoryPage:
    items: List[CreditTransaction] = field(default_factory=list)
    next_cursor: Optional[str] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def transaction_payload(entry: CreditTransaction) -> Dict[str, Any]:
    created_at = as_utc(entry.created_at)
    return {
        "id": entry.id,
        "wallet_id": entry.wallet_id,
        "delta": entry.delta,
        "reason": entry.reason,
        "booking_id": entry.booking_id,
        "created_by": entry.created_by,
        "created_at": created_at.isoformat() if created_at else None,
    }


def encode_cursor(entry: CreditTransaction) -> str:
    raw = f"{entry.created_at.isoformat()}|{entry.id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        created_at_text, entry_id = raw.split("|", 1)
        created_at = datetime.fromisoformat(created_at_text)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValidationError("cursor is malformed.", details={"field": "cursor"}) from exc
    if not entry_id:
        raise ValidationError("cursor is malformed.", details={"field": "cursor"})
    return created_at, entry_id


def _is_expired(wallet: CreditWallet, now: datetime) -> bool:
    expires_at = as_utc(wallet.expires_at)
    return expires_at is not None and expires_at <= now


def _expiry_key(expires_at: datetime) -> str:
    return f"expiry:{expires_at.isoformat()}"


def _expiry_entry(wallet: CreditWallet, amount: int, expires_at: datetime, key: str, now: datetime) -> CreditTransaction:
    return CreditTransaction(
        id=str(uuid.uuid4()),
        wallet_id=wallet.id,
        delta=-amount,
        reason=f"Credits expired on {expires_at.date().isoformat()}",
        idempotency_key=key,
        created_at=now,
    )


async def _backoff(attempt_number: int) -> None:
    base = max(float(settings.LEDGER_RETRY_BACKOFF_SECONDS), 0.0)
    await asyncio.sleep(base * (2 ** (attempt_number - 1)) * random.uniform(0.5, 1.5))


async def _run_with_retries(db: AsyncSession, operation: str, attempt: Callable[[], Awaitable[T]]) -> T:
    """Run one read-check-write attempt at a time until it commits or retries run out."""
    max_attempts = max(int(settings.LEDGER_MAX_RETRIES), 1)
    timeout = max(float(settings.LEDGER_STORAGE_TIMEOUT_SECONDS), 0.01)
    last_error: Optional[BaseException] = None
    for attempt_number in range(1, max_attempts + 1):
        try:
            return await asyncio.wait_for(attempt(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            await db.rollback()
            raise StorageTimeout(
                f"Ledger {operation} timed out after {timeout:g}s.",
                details={"operation": operation},
            ) from exc
        except (_WriteConflict, IntegrityError, OperationalError) as exc:
            await db.rollback()
            last_error = exc
            logger.warning(
                "Ledger %s lost a write race (attempt %s/%s): %s",
                operation,
                attempt_number,
                max_attempts,
                exc,
            )
            if attempt_number < max_attempts:
                await _backoff(attempt_number)
        except Exception:
            await db.rollback()
            raise
    raise TransientConflict(
        f"Ledger {operation} could not commit after {max_attempts} attempts.",
        details={"operation": operation, "last_error": str(last_error) if last_error else None},
    )


async def _find_wallet(
    db: AsyncSession,
    owner_type: OwnerType,
    owner_id: str,
    credit_type: CreditType,
    *,
    lock: bool = False,
) -> Optional[CreditWallet]:
    query = (
        select(CreditWallet)
        .where(
            CreditWallet.owner_type == owner_type.value,
            CreditWallet.owner_id == owner_id,
            CreditWallet.credit_type == credit_type.value,
        )
        .execution_options(populate_existing=True)
    )
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def _create_wallet(
    db: AsyncSession,
    owner_type: OwnerType,
    owner_id: str,
    credit_type: CreditType,
    now: datetime,
) -> CreditWallet:
    wallet = CreditWallet(
        id=str(uuid.uuid4()),
        owner_type=owner_type.value,
        owner_id=owner_id,
        credit_type=credit_type.value,
        balance=0,
        version=0,
        created_at=now,
        updated_at=now,
    )
    db.add(wallet)
    await db.flush()
    return wallet


async def _ledger_sum(db: AsyncSession, wallet_id: str) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.delta), 0)).where(CreditTransaction.wallet_id == wallet_id)
    )
    return int(result.scalar() or 0)


async def _ledger_balance(db: AsyncSession, wallet: CreditWallet) -> int:
    ledger_balance = await _ledger_sum(db, wallet.id)
    if ledger_balance != int(wallet.balance or 0):
        logger.warning(
            "Wallet %s cached balance %s differs from ledger sum %s; using ledger sum",
            wallet.id,
            wallet.balance,
            ledger_balance,
        )
    return ledger_balance


async def _find_keyed_transaction(db: AsyncSession, wallet_id: str, idempotency_key: str) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.wallet_id == wallet_id,
            CreditTransaction.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def _compare_and_swap(
    db: AsyncSession,
    wallet: CreditWallet,
    *,
    next_balance: int,
    expires_at: Optional[datetime],
    now: datetime,
) -> bool:
    result = await db.execute(
        update(CreditWallet)
        .where(CreditWallet.id == wallet.id, CreditWallet.version == wallet.version)
        .values(
            balance=next_balance,
            version=int(wallet.version or 0) + 1,
            expires_at=expires_at,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _write_entry(
    db: AsyncSession,
    wallet: CreditWallet,
    *,
    ledger_balance: int,
    delta: int,
    reason: str,
    booking_id: Optional[str],
    actor_id: Optional[str],
    idempotency_key: Optional[str],
    expires_at: Optional[datetime],
    now: datetime,
) -> CreditTransaction:
    next_balance = ledger_balance + delta
    if next_balance < 0:
        raise InsufficientBalance(required=-delta, available=ledger_balance)
    swapped = await _compare_and_swap(db, wallet, next_balance=next_balance, expires_at=expires_at, now=now)
    if not swapped:
        raise _WriteConflict(f"wallet {wallet.id} changed concurrently")

    entry = CreditTransaction(
        id=str(uuid.uuid4()),
        wallet_id=wallet.id,
        delta=delta,
        reason=reason,
        booking_id=booking_id,
        created_by=actor_id,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    db.add(entry)
    await db.flush()
    await db.commit()
    return entry


async def get_balance(db: AsyncSession, *, owner_type: Any, owner_id: Any, credit_type: Any) -> CreditBalance:
    """Return the wallet balance, or zero when no wallet exists yet."""
    owner = parse_choice(OwnerType, owner_type, "owner_type")
    kind = parse_choice(CreditType, credit_type, "credit_type")
    owner_key = require_identifier(owner_id, "owner_id")

    wallet = await _find_wallet(db, owner, owner_key, kind)
    if wallet is None:
        return CreditBalance(credit_type=kind.value, balance=0)
    return CreditBalance(
        credit_type=kind.value,
        balance=int(wallet.balance or 0),
        expires_at=as_utc(wallet.expires_at),
    )


async def list_balances(db: AsyncSession, *, owner_type: Any, owner_id: Any) -> List[CreditBalance]:
    """Return one balance per credit type for an owner, zero-filled."""
    owner = parse_choice(OwnerType, owner_type, "owner_type")
    owner_key = require_identifier(owner_id, "owner_id")

    result = await db.execute(
        select(CreditWallet)
        .where(CreditWallet.owner_type == owner.value, CreditWallet.owner_id == owner_key)
        .execution_options(populate_existing=True)
    )
    wallets = {wallet.credit_type: wallet for wallet in result.scalars().all()}
    balances: List[CreditBalance] = []
    for kind in CreditType:
        wallet = wallets.get(kind.value)
        if wallet is None:
            balances.append(CreditBalance(credit_type=kind.value, balance=0))
        else:
            balances.append(
                CreditBalance(
                    credit_type=kind.value,
                    balance=int(wallet.balance or 0),
                    expires_at=as_utc(wallet.expires_at),
                )
            )
    return balances


async def grant_credit(
    db: AsyncSession,
    *,
    owner_type: Any,
    owner_id: Any,
    credit_type: Any,
    amount: Any,
    reason: Any,
    actor_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
) -> Tuple[CreditTransaction, bool]:
    """Credit a wallet; return the entry and whether it was newly written.

    When ``idempotency_key`` was already recorded on the wallet the existing
    entry is returned unchanged.
    """
    owner = parse_choice(OwnerType, owner_type, "owner_type")
    kind = parse_choice(CreditType, credit_type, "credit_type")
    owner_key = require_identifier(owner_id, "owner_id")
    credits = require_positive_amount(amount)
    note = normalize_reason(reason)
    expiry = as_utc(expires_at)

    async def _attempt() -> Tuple[CreditTransaction, bool]:
        now = utcnow()
        wallet = await _find_wallet(db, owner, owner_key, kind, lock=True)
        if wallet is None:
            wallet = await _create_wallet(db, owner, owner_key, kind, now)
        elif idempotency_key:
            existing = await _find_keyed_transaction(db, wallet.id, idempotency_key)
            if existing is not None:
                await db.commit()
                return existing, False

        ledger_balance = await _ledger_balance(db, wallet)
        if _is_expired(wallet, now):
            if ledger_balance > 0:
                # Lapsed credits are written off before the top-up lands.
                lapsed_at = as_utc(wallet.expires_at)
                key = _expiry_key(lapsed_at)
                if await _find_keyed_transaction(db, wallet.id, key) is not None:
                    key = f"{key}:{now.isoformat()}"
                db.add(_expiry_entry(wallet, ledger_balance, lapsed_at, key, now - timedelta(microseconds=1)))
                ledger_balance = 0
            next_expiry = expiry
        else:
            next_expiry = expiry if expiry is not None else as_utc(wallet.expires_at)
        if ledger_balance + credits > MAX_AMOUNT:
            raise ValidationError(
                f"Wallet balance would exceed {MAX_AMOUNT}.",
                details={"field": "amount", "balance": ledger_balance},
            )
        entry = await _write_entry(
            db,
            wallet,
            ledger_balance=ledger_balance,
            delta=credits,
            reason=note,
            booking_id=None,
            actor_id=actor_id,
            idempotency_key=idempotency_key,
            expires_at=next_expiry,
            now=now,
        )
        return entry, True

    entry, created = await _run_with_retries(db, "credit", _attempt)
    if created:
        logger.info(
            "ledger_credit owner=%s:%s type=%s amount=%s wallet=%s",
            owner.value,
            owner_key,
            kind.value,
            credits,
            entry.wallet_id,
        )
    return entry, created


async def credit(
    db: AsyncSession,
    *,
    owner_type: Any,
    owner_id: Any,
    credit_type: Any,
    amount: Any,
    reason: Any,
    actor_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
) -> CreditTransaction:
    entry, _ = await grant_credit(
        db,
        owner_type=owner_type,
        owner_id=owner_id,
        credit_type=credit_type,
        amount=amount,
        reason=reason,
        actor_id=actor_id,
        expires_at=expires_at,
        idempotency_key=idempotency_key,
    )
    return entry


async def debit(
    db: AsyncSession,
    *,
    owner_type: Any,
    owner_id: Any,
    credit_type: Any,
    amount: Any,
    reason: Any,
    booking_id: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> CreditTransaction:
    """Consume credits. Raises InsufficientBalance instead of going negative."""
    owner = parse_choice(OwnerType, owner_type, "owner_type")
    kind = parse_choice(CreditType, credit_type, "credit_type")
    owner_key = require_identifier(owner_id, "owner_id")
    credits = require_positive_amount(amount)
    note = normalize_reason(reason)
    booking_key = str(booking_id).strip() if booking_id else None

    async def _attempt() -> CreditTransaction:
        now = utcnow()
        wallet = await _find_wallet(db, owner, owner_key, kind, lock=True)
        if wallet is None:
            raise InsufficientBalance(required=credits, available=0)
        ledger_balance = await _ledger_balance(db, wallet)
        if _is_expired(wallet, now):
            raise InsufficientBalance(
                required=credits,
                available=0,
                message=f"Credits expired on {as_utc(wallet.expires_at).isoformat()}.",
            )
        if ledger_balance < credits:
            raise InsufficientBalance(required=credits, available=ledger_balance)
        return await _write_entry(
            db,
            wallet,
            ledger_balance=ledger_balance,
            delta=-credits,
            reason=note,
            booking_id=booking_key,
            actor_id=actor_id,
            idempotency_key=None,
            expires_at=as_utc(wallet.expires_at),
            now=now,
        )

    entry = await _run_with_retries(db, "debit", _attempt)
    logger.info(
        "ledger_debit owner=%s:%s type=%s amount=%s booking=%s wallet=%s",
        owner.value,
        owner_key,
        kind.value,
        credits,
        booking_key,
        entry.wallet_id,
    )
    return entry


async def history(
    db: AsyncSession,
    *,
    owner_type: Any,
    owner_id: Any,
    credit_type: Any,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
) -> HistoryPage:
    """Newest-first transactions for one wallet, restartable from ``cursor``."""
    owner = parse_choice(OwnerType, owner_type, "owner_type")
    kind = parse_choice(CreditType, credit_type, "credit_type")
    owner_key = require_identifier(owner_id, "owner_id")
    page_size = int(limit or settings.HISTORY_DEFAULT_LIMIT)
    page_size = max(1, min(page_size, int(settings.HISTORY_MAX_LIMIT)))
    boundary = decode_cursor(cursor) if cursor else None

    wallet = await _find_wallet(db, owner, owner_key, kind)
    if wallet is None:
        return HistoryPage()

    query = select(CreditTransaction).where(CreditTransaction.wallet_id == wallet.id)
    if boundary is not None:
        created_at, entry_id = boundary
        query = query.where(
            or_(
                CreditTransaction.created_at < created_at,
                and_(CreditTransaction.created_at == created_at, CreditTransaction.id < entry_id),
            )
        )
    query = query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc()).limit(page_size + 1)
    result = await db.execute(query)
    rows = list(result.scalars().all())

    next_cursor = None
    if len(rows) > page_size:
        rows = rows[:page_size]
        next_cursor = encode_cursor(rows[-1])
    return HistoryPage(items=rows, next_cursor=next_cursor)


async def verify_wallet(db: AsyncSession, wallet_id: str) -> Dict[str, Any]:
    """Compare a wallet's cached balance with the sum of its transactions."""
    result = await db.execute(
        select(CreditWallet).where(CreditWallet.id == wallet_id).execution_options(populate_existing=True)
    )
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise NotFound(f"Wallet {wallet_id} not found.", details={"wallet_id": wallet_id})

    count_result = await db.execute(
        select(func.count(CreditTransaction.id)).where(CreditTransaction.wallet_id == wallet.id)
    )
    ledger_balance = await _ledger_sum(db, wallet.id)
    cached_balance = int(wallet.balance or 0)
    return {
        "wallet_id": wallet.id,
        "owner_type": wallet.owner_type,
        "owner_id": wallet.owner_id,
        "credit_type": wallet.credit_type,
        "cached_balance": cached_balance,
        "ledger_balance": ledger_balance,
        "drift": cached_balance - ledger_balance,
        "transaction_count": int(count_result.scalar() or 0),
    }


async def expire_wallets(db: AsyncSession, now: Optional[datetime] = None) -> List[CreditTransaction]:
    """Zero out wallets whose expiry has passed with one expiry entry each."""
    current = as_utc(now) or utcnow()
    result = await db.execute(
        select(CreditWallet.id).where(
            CreditWallet.expires_at.is_not(None),
            CreditWallet.expires_at <= current,
            CreditWallet.balance > 0,
        )
    )
    wallet_ids = [row[0] for row in result.all()]
    entries: List[CreditTransaction] = []
    for wallet_id in wallet_ids:
        try:
            entry = await _expire_wallet(db, wallet_id, current)
        except LedgerError as exc:
            logger.warning("Wallet %s expiry skipped: %s", wallet_id, exc)
            continue
        if entry is not None:
            entries.append(entry)
    return entries


async def _expire_wallet(db: AsyncSession, wallet_id: str, now: datetime) -> Optional[CreditTransaction]:
    async def _attempt() -> Optional[CreditTransaction]:
        result = await db.execute(
            select(CreditWallet)
            .where(CreditWallet.id == wallet_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if wallet is None or not _is_expired(wallet, now):
            await db.commit()
            return None
        expires_at = as_utc(wallet.expires_at)
        key = _expiry_key(expires_at)
        if await _find_keyed_transaction(db, wallet.id, key) is not None:
            await db.commit()
            return None
        ledger_balance = await _ledger_balance(db, wallet)
        if ledger_balance <= 0:
            await db.commit()
            return None
        return await _write_entry(
            db,
            wallet,
            ledger_balance=ledger_balance,
            delta=-ledger_balance,
            reason=f"Credits expired on {expires_at.date().isoformat()}",
            booking_id=None,
            actor_id=None,
            idempotency_key=key,
            expires_at=expires_at,
            now=utcnow(),
        )

    entry = await _run_with_retries(db, "expire", _attempt)
    if entry is not None:
        logger.info("ledger_expire wallet=%s amount=%s", wallet_id, -entry.delta)
    return entry
