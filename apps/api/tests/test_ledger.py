import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, update
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.credit_wallet import CreditWallet
from services.errors import InsufficientBalance, StorageTimeout, TransientConflict, ValidationError
from services.ledger import (
    credit,
    debit,
    expire_wallets,
    get_balance,
    grant_credit,
    history,
    list_balances,
    utcnow,
    verify_wallet,
)
from services.validation import MAX_AMOUNT


OWNER = {"owner_type": "USER", "owner_id": "employee-1", "credit_type": "SESSION_1_1"}


@pytest.fixture
def ledger_db(sqlite_session_maker):
    return sqlite_session_maker


async def _deltas(session, wallet_id):
    result = await session.execute(
        select(CreditTransaction.delta).where(CreditTransaction.wallet_id == wallet_id)
    )
    return [row[0] for row in result.all()]


@pytest.mark.asyncio
async def test_missing_wallet_reads_zero_and_overdraft_keeps_balance(ledger_db):
    async with ledger_db() as session:
        balance = await get_balance(session, **OWNER)
        assert balance.balance == 0
        assert balance.expires_at is None

        await credit(session, **OWNER, amount=5, reason="signup bonus")
        assert (await get_balance(session, **OWNER)).balance == 5

        with pytest.raises(InsufficientBalance) as excinfo:
            await debit(session, **OWNER, amount=6, reason="booking")
        assert excinfo.value.required == 6
        assert excinfo.value.available == 5
        assert (await get_balance(session, **OWNER)).balance == 5


@pytest.mark.asyncio
async def test_credit_then_debit_leaves_zero_and_two_entries(ledger_db):
    async with ledger_db() as session:
        granted = await credit(session, owner_type="ORG", owner_id="org-1", credit_type="WEBINAR", amount=10, reason="top-up")
        spent = await debit(
            session,
            owner_type="ORG",
            owner_id="org-1",
            credit_type="WEBINAR",
            amount=10,
            reason="booking",
            booking_id="booking-77",
        )
        assert granted.wallet_id == spent.wallet_id
        assert spent.booking_id == "booking-77"

        balance = await get_balance(session, owner_type="ORG", owner_id="org-1", credit_type="WEBINAR")
        assert balance.balance == 0

        page = await history(session, owner_type="ORG", owner_id="org-1", credit_type="WEBINAR")
        assert [entry.delta for entry in page.items] == [-10, 10]
        assert page.next_cursor is None


@pytest.mark.asyncio
async def test_balance_tracks_sum_of_deltas_across_mixed_operations(ledger_db):
    async with ledger_db() as session:
        operations = [("credit", 7), ("debit", 3), ("credit", 4), ("debit", 8), ("credit", 1)]
        for kind, amount in operations:
            if kind == "credit":
                await credit(session, **OWNER, amount=amount, reason="grant")
            else:
                await debit(session, **OWNER, amount=amount, reason="booking")
        with pytest.raises(InsufficientBalance):
            await debit(session, **OWNER, amount=2, reason="booking")

        wallet = (await session.execute(select(CreditWallet))).scalar_one()
        deltas = await _deltas(session, wallet.id)
        report = await verify_wallet(session, wallet.id)

    assert sum(deltas) == 1
    assert report["cached_balance"] == 1
    assert report["ledger_balance"] == 1
    assert report["drift"] == 0
    assert report["transaction_count"] == len(operations)


@pytest.mark.asyncio
async def test_concurrent_debits_on_last_credit_only_one_wins(ledger_db):
    async with ledger_db() as session:
        await credit(session, **OWNER, amount=1, reason="grant")

    async def _book(booking_id):
        async with ledger_db() as session:
            try:
                await debit(session, **OWNER, amount=1, reason="booking", booking_id=booking_id)
            except InsufficientBalance:
                return "rejected"
            return "booked"

    outcomes = await asyncio.gather(_book("b-1"), _book("b-2"))
    assert sorted(outcomes) == ["booked", "rejected"]

    async with ledger_db() as session:
        assert (await get_balance(session, **OWNER)).balance == 0
        wallet = (await session.execute(select(CreditWallet))).scalar_one()
        assert sorted(await _deltas(session, wallet.id)) == [-1, 1]


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -3, "5", True, 2.5, 2**31])
async def test_invalid_amount_is_rejected_before_storage(ledger_db, amount):
    async with ledger_db() as session:
        with pytest.raises(ValidationError):
            await credit(session, **OWNER, amount=amount, reason="grant")
        with pytest.raises(ValidationError):
            await debit(session, **OWNER, amount=amount, reason="booking")
        count = await session.execute(select(func.count(CreditWallet.id)))
        assert count.scalar() == 0


@pytest.mark.asyncio
async def test_unknown_enum_values_are_rejected(ledger_db):
    async with ledger_db() as session:
        with pytest.raises(ValidationError):
            await credit(session, owner_type="TEAM", owner_id="x", credit_type="WEBINAR", amount=1, reason="grant")
        with pytest.raises(ValidationError):
            await get_balance(session, owner_type="USER", owner_id="x", credit_type="GROUP_CLASS")
        with pytest.raises(ValidationError):
            await credit(session, owner_type="USER", owner_id="  ", credit_type="WEBINAR", amount=1, reason="grant")


@pytest.mark.asyncio
async def test_debit_without_wallet_is_insufficient_and_creates_nothing(ledger_db):
    async with ledger_db() as session:
        with pytest.raises(InsufficientBalance) as excinfo:
            await debit(session, **OWNER, amount=1, reason="booking")
        assert excinfo.value.available == 0
        count = await session.execute(select(func.count(CreditWallet.id)))
        assert count.scalar() == 0


@pytest.mark.asyncio
async def test_idempotency_key_returns_existing_entry(ledger_db):
    async with ledger_db() as session:
        first, created_first = await grant_credit(
            session, **OWNER, amount=2, reason="monthly", idempotency_key="allocation:r1:2026-10-01"
        )
        second, created_second = await grant_credit(
            session, **OWNER, amount=2, reason="monthly", idempotency_key="allocation:r1:2026-10-01"
        )
        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert (await get_balance(session, **OWNER)).balance == 2


@pytest.mark.asyncio
async def test_history_pages_newest_first_with_cursor(ledger_db):
    async with ledger_db() as session:
        for amount in range(1, 6):
            await credit(session, **OWNER, amount=amount, reason=f"grant {amount}")

        seen = []
        cursor = None
        pages = 0
        while True:
            page = await history(session, **OWNER, limit=2, cursor=cursor)
            seen.extend(entry.delta for entry in page.items)
            pages += 1
            cursor = page.next_cursor
            if cursor is None:
                break

        assert pages == 3
        assert seen == [5, 4, 3, 2, 1]

        with pytest.raises(ValidationError):
            await history(session, **OWNER, cursor="not-a-cursor")


@pytest.mark.asyncio
async def test_list_balances_zero_fills_credit_types(ledger_db):
    async with ledger_db() as session:
        await credit(session, **OWNER, amount=3, reason="grant")
        balances = {row.credit_type: row.balance for row in await list_balances(session, owner_type="USER", owner_id="employee-1")}
    assert balances == {"SESSION_1_1": 3, "WEBINAR": 0}


@pytest.mark.asyncio
async def test_cached_balance_drift_is_ignored_and_repaired(ledger_db):
    async with ledger_db() as session:
        await credit(session, **OWNER, amount=3, reason="grant")
        await session.execute(update(CreditWallet).values(balance=99))
        await session.commit()

        with pytest.raises(InsufficientBalance) as excinfo:
            await debit(session, **OWNER, amount=5, reason="booking")
        assert excinfo.value.available == 3

        await credit(session, **OWNER, amount=1, reason="grant")
        wallet = (await session.execute(select(CreditWallet))).scalar_one()
        report = await verify_wallet(session, wallet.id)
    assert report["cached_balance"] == 4
    assert report["drift"] == 0


@pytest.mark.asyncio
async def test_expired_wallet_rejects_debits_and_expiry_zeroes_balance(ledger_db):
    now = utcnow()
    async with ledger_db() as session:
        await credit(
            session,
            owner_type="ORG",
            owner_id="org-1",
            credit_type="SESSION_1_1",
            amount=8,
            reason="Admin credit issuance",
            expires_at=now - timedelta(days=1),
        )
        with pytest.raises(InsufficientBalance):
            await debit(session, owner_type="ORG", owner_id="org-1", credit_type="SESSION_1_1", amount=1, reason="booking")

        expired = await expire_wallets(session, now)
        assert [entry.delta for entry in expired] == [-8]
        assert await expire_wallets(session, now) == []

        balance = await get_balance(session, owner_type="ORG", owner_id="org-1", credit_type="SESSION_1_1")
        assert balance.balance == 0

        await credit(session, owner_type="ORG", owner_id="org-1", credit_type="SESSION_1_1", amount=2, reason="top-up")
        reopened = await get_balance(session, owner_type="ORG", owner_id="org-1", credit_type="SESSION_1_1")
        assert reopened.balance == 2
        assert reopened.expires_at is None
        await debit(session, owner_type="ORG", owner_id="org-1", credit_type="SESSION_1_1", amount=2, reason="booking")

        wallet = (await session.execute(select(CreditWallet))).scalar_one()
        assert (await verify_wallet(session, wallet.id))["drift"] == 0


@pytest.mark.asyncio
async def test_lost_races_surface_transient_conflict_after_retries(ledger_db, monkeypatch):
    calls = {"count": 0}

    async def _always_stale(*args, **kwargs):
        calls["count"] += 1
        return False

    monkeypatch.setattr("services.ledger._compare_and_swap", _always_stale)
    async with ledger_db() as session:
        with pytest.raises(TransientConflict) as excinfo:
            await credit(session, **OWNER, amount=1, reason="grant")
        assert excinfo.value.retryable is True
        assert calls["count"] == settings.LEDGER_MAX_RETRIES
        assert (await session.execute(select(func.count(CreditTransaction.id)))).scalar() == 0


@pytest.mark.asyncio
async def test_slow_storage_surfaces_retryable_timeout(ledger_db, monkeypatch):
    async def _slow_sum(*args, **kwargs):
        await asyncio.sleep(1)
        return 0

    monkeypatch.setattr(settings, "LEDGER_STORAGE_TIMEOUT_SECONDS", 0.05)
    monkeypatch.setattr("services.ledger._ledger_sum", _slow_sum)
    async with ledger_db() as session:
        with pytest.raises(StorageTimeout) as excinfo:
            await credit(session, **OWNER, amount=1, reason="grant")
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_top_up_on_lapsed_wallet_writes_off_old_credits_first(ledger_db):
    now = utcnow()
    org_wallet = {"owner_type": "ORG", "owner_id": "org-1", "credit_type": "WEBINAR"}
    async with ledger_db() as session:
        await credit(session, **org_wallet, amount=8, reason="Admin credit issuance", expires_at=now - timedelta(days=1))
        with pytest.raises(InsufficientBalance):
            await debit(session, **org_wallet, amount=1, reason="webinar")

        await credit(session, **org_wallet, amount=2, reason="top-up")
        balance = await get_balance(session, **org_wallet)
        assert balance.balance == 2
        assert balance.expires_at is None

        with pytest.raises(InsufficientBalance) as excinfo:
            await debit(session, **org_wallet, amount=10, reason="webinar")
        assert excinfo.value.available == 2

        wallet = (await session.execute(select(CreditWallet))).scalar_one()
        assert sorted(await _deltas(session, wallet.id)) == [-8, 2, 8]
        written_off = (
            await session.execute(select(CreditTransaction).where(CreditTransaction.delta == -8))
        ).scalar_one()
        assert written_off.idempotency_key.startswith("expiry:")
        assert (await verify_wallet(session, wallet.id))["drift"] == 0
        assert await expire_wallets(session) == []


@pytest.mark.asyncio
async def test_credit_that_would_overflow_balance_is_rejected(ledger_db):
    async with ledger_db() as session:
        await credit(session, **OWNER, amount=MAX_AMOUNT, reason="bulk grant")
        with pytest.raises(ValidationError):
            await credit(session, **OWNER, amount=1, reason="grant")
        assert (await get_balance(session, **OWNER)).balance == MAX_AMOUNT


@pytest.mark.asyncio
async def test_lost_races_back_off_between_attempts(ledger_db, monkeypatch):
    waits = []

    async def _always_stale(*args, **kwargs):
        return False

    async def _record_backoff(attempt_number):
        waits.append(attempt_number)

    monkeypatch.setattr("services.ledger._compare_and_swap", _always_stale)
    monkeypatch.setattr("services.ledger._backoff", _record_backoff)
    async with ledger_db() as session:
        with pytest.raises(TransientConflict):
            await credit(session, **OWNER, amount=1, reason="grant")
    assert waits == list(range(1, settings.LEDGER_MAX_RETRIES))
