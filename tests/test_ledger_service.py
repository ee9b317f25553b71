import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from favilla_api.models.loyalty import LedgerEntry, LedgerEntryKind
from favilla_api.observability.loyalty import get_loyalty_store
from favilla_api.services.identity import IdentityResolver
from favilla_api.services.loyalty.errors import (
    AccountInactive,
    AlreadyReversed,
    ConflictError,
    InsufficientBalance,
    InvalidRequest,
    NotFound,
)
from favilla_api.services.loyalty.ledger_service import LedgerService, reversal_key


async def _account_with_points(session_factory, points: int = 0, legacy_id: str = "1001"):
    async with session_factory() as session:
        account_id = await IdentityResolver(session).resolve("legacy", legacy_id)
        if points:
            await LedgerService(session).earn(account_id, points, "seed", f"seed:{legacy_id}")
        await session.commit()
    return account_id


async def _entry_count(session, account_id) -> int:
    stmt = select(func.count(LedgerEntry.id)).where(LedgerEntry.account_id == account_id)
    return (await session.execute(stmt)).scalar_one()


@pytest.mark.asyncio
async def test_earn_is_idempotent(session_factory) -> None:
    account_id = await _account_with_points(session_factory)

    async with session_factory() as session:
        service = LedgerService(session)
        first = await service.earn(account_id, 25, "ORD-1", "order:ORD-1:earn")
        replay = await service.earn(account_id, 25, "ORD-1", "order:ORD-1:earn")
        await session.commit()

        assert first.balance == 25
        assert not first.replayed
        assert replay.replayed
        assert replay.entry_id == first.entry_id
        assert replay.balance == 25
        assert await _entry_count(session, account_id) == 1

    snapshot = get_loyalty_store().snapshot()
    assert snapshot.ledger["entries"]["earn"] == 1
    assert snapshot.ledger["replays"]["earn"] == 1


@pytest.mark.asyncio
async def test_key_reused_for_other_operation_conflicts(session_factory) -> None:
    account_id = await _account_with_points(session_factory, 100)

    async with session_factory() as session:
        service = LedgerService(session)
        await service.earn(account_id, 10, "ORD-2", "shared-key")
        await session.commit()

        with pytest.raises(ConflictError):
            await service.redeem(account_id, 10, "reward:free-pizza", "shared-key")


@pytest.mark.asyncio
async def test_redeem_rejects_overdraft(session_factory) -> None:
    account_id = await _account_with_points(session_factory, 30)

    async with session_factory() as session:
        service = LedgerService(session)
        with pytest.raises(InsufficientBalance) as excinfo:
            await service.redeem(account_id, 50, "reward:free-pizza", "redeem:overdraft")
        await session.rollback()

        assert excinfo.value.details == {"balance": 30, "requested": 50}
        assert await service.get_balance(account_id) == 30

    assert get_loyalty_store().snapshot().rejections["insufficient_balance"] == 1


@pytest.mark.asyncio
async def test_concurrent_redeems_never_overdraw(session_factory) -> None:
    account_id = await _account_with_points(session_factory, 100)

    async def attempt(index: int) -> str:
        async with session_factory() as session:
            try:
                await LedgerService(session).redeem(account_id, 60, "reward:large", f"redeem:race:{index}")
                await session.commit()
            except InsufficientBalance:
                await session.rollback()
                return "rejected"
            return "redeemed"

    outcomes = await asyncio.gather(attempt(1), attempt(2))
    assert sorted(outcomes) == ["redeemed", "rejected"]

    async with session_factory() as session:
        assert await LedgerService(session).get_balance(account_id) == 40


@pytest.mark.asyncio
async def test_reverse_earn_restores_balance_once(session_factory) -> None:
    account_id = await _account_with_points(session_factory)

    async with session_factory() as session:
        service = LedgerService(session)
        earned = await service.earn(account_id, 40, "ORD-3", "order:ORD-3:earn")
        reversed_result = await service.reverse(earned.entry_id, "Order refunded", actor="ops")
        await session.commit()

        assert reversed_result.balance == 0
        reversal = await service.store.get_entry(reversed_result.entry_id)
        assert reversal.kind == LedgerEntryKind.REVERSAL
        assert reversal.amount == -40
        assert reversal.reverses_entry_id == earned.entry_id
        assert reversal.idempotency_key == reversal_key(earned.entry_id)

        with pytest.raises(AlreadyReversed):
            await service.reverse(earned.entry_id, "Second attempt")
        await session.rollback()

        with pytest.raises(InvalidRequest):
            await service.reverse(reversed_result.entry_id, "Reverse the reversal")
        await session.rollback()

        with pytest.raises(NotFound):
            await service.reverse(uuid4(), "Missing")


@pytest.mark.asyncio
async def test_reverse_redeem_restores_points(session_factory) -> None:
    account_id = await _account_with_points(session_factory, 100)

    async with session_factory() as session:
        service = LedgerService(session)
        redeemed = await service.redeem(account_id, 60, "reward:free-pizza", "redeem:R1")
        result = await service.reverse(redeemed.entry_id, "Kitchen closed")
        await session.commit()

        assert redeemed.balance == 40
        assert result.balance == 100


@pytest.mark.asyncio
async def test_reverse_earn_cannot_go_negative(session_factory) -> None:
    account_id = await _account_with_points(session_factory)

    async with session_factory() as session:
        service = LedgerService(session)
        earned = await service.earn(account_id, 50, "ORD-4", "order:ORD-4:earn")
        await service.redeem(account_id, 40, "reward:free-pizza", "redeem:R2")
        await session.commit()

        with pytest.raises(InsufficientBalance):
            await service.reverse(earned.entry_id, "Chargeback")
        await session.rollback()

        assert await service.get_balance(account_id) == 10


@pytest.mark.asyncio
async def test_adjustment_requires_reason_and_actor(session_factory) -> None:
    account_id = await _account_with_points(session_factory, 20)

    async with session_factory() as session:
        service = LedgerService(session)
        with pytest.raises(InvalidRequest):
            await service.adjustment(account_id, 5, "", "ops")
        with pytest.raises(InvalidRequest):
            await service.adjustment(account_id, 5, "Goodwill", "  ")
        with pytest.raises(InvalidRequest):
            await service.adjustment(account_id, 0, "Goodwill", "ops")

        credit = await service.adjustment(account_id, 15, "Goodwill for late delivery", "ops")
        debit = await service.adjustment(account_id, -5, "Duplicate credit", "ops")
        await session.commit()

        assert credit.balance == 35
        assert debit.balance == 30
        entry = await service.store.get_entry(credit.entry_id)
        assert entry.kind == LedgerEntryKind.ADJUSTMENT
        assert entry.actor == "ops"
        assert entry.reason == "Goodwill for late delivery"
        assert entry.idempotency_key.startswith("adjustment:manual:")

        with pytest.raises(InsufficientBalance):
            await service.adjustment(account_id, -31, "Too much", "ops")


@pytest.mark.asyncio
async def test_adjustment_with_key_is_idempotent(session_factory) -> None:
    account_id = await _account_with_points(session_factory)

    async with session_factory() as session:
        service = LedgerService(session)
        key = "legacy-import:1001"
        first = await service.adjustment(account_id, 500, "Legacy import", "legacy-import", idempotency_key=key)
        second = await service.adjustment(account_id, 500, "Legacy import", "legacy-import", idempotency_key=key)
        await session.commit()

        assert second.replayed
        assert second.entry_id == first.entry_id
        assert second.balance == 500


@pytest.mark.asyncio
async def test_inactive_account_cannot_earn_or_redeem(session_factory) -> None:
    account_id = await _account_with_points(session_factory, 80)

    async with session_factory() as session:
        await IdentityResolver(session).deactivate(account_id, actor="ops")
        await session.commit()

        service = LedgerService(session)
        with pytest.raises(AccountInactive):
            await service.earn(account_id, 10, "ORD-5", "order:ORD-5:earn")
        with pytest.raises(AccountInactive):
            await service.redeem(account_id, 10, "reward:free-pizza", "redeem:inactive")

        result = await service.adjustment(account_id, -80, "Closing account", "ops")
        await session.commit()
        assert result.balance == 0


@pytest.mark.asyncio
async def test_invalid_amounts_rejected(session_factory) -> None:
    account_id = await _account_with_points(session_factory)

    async with session_factory() as session:
        service = LedgerService(session)
        for amount in (0, -5, 2.5, True):
            with pytest.raises(InvalidRequest):
                await service.earn(account_id, amount, "ORD-6", f"order:ORD-6:{amount}")
        with pytest.raises(InvalidRequest):
            await service.redeem(account_id, 10, "reward:x", "  ")


@pytest.mark.asyncio
async def test_rebuild_cached_balance_returns_totals(session_factory) -> None:
    account_id = await _account_with_points(session_factory, 45)

    async with session_factory() as session:
        totals = await LedgerService(session).rebuild_cached_balance(account_id)
        await session.commit()

    assert totals.balance == 45
    assert totals.entry_count == 1
