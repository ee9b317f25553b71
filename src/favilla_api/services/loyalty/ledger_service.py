"""Earn, redeem, reverse and adjust loyalty points."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Sequence, Tuple
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.db.session import atomic
from favilla_api.models.account import Account, AccountStatus
from favilla_api.models.loyalty import LedgerEntry, LedgerEntryKind
from favilla_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store
from favilla_api.observability.tracing import get_tracer
from favilla_api.services.loyalty.errors import (
    AccountInactive,
    AlreadyReversed,
    ConflictError,
    DuplicateIdempotencyKey,
    InsufficientBalance,
    InvalidRequest,
    LoyaltyError,
    NotFound,
)
from favilla_api.services.loyalty.ledger_store import LedgerStore, LedgerTotals, NewLedgerEntry
from favilla_api.services.loyalty.vouchers import VoucherIssuer


@dataclass(slots=True)
class LedgerResult:
    """Balance after an operation, plus the entry it recorded or replayed."""

    account_id: UUID
    balance: int
    entry_id: UUID | None = None
    replayed: bool = False


def reversal_key(entry_id: UUID) -> str:
    return f"reversal:{entry_id}"


def _require_positive(amount: int, field_name: str = "amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidRequest(f"{field_name} must be an integer number of points")
    if amount <= 0:
        raise InvalidRequest(f"{field_name} must be positive", amount=amount)
    return amount


def _require_text(value: str | None, field_name: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise InvalidRequest(f"{field_name} is required")
    return cleaned


class LedgerService:
    """Points operations, each one database transaction.

    Balances are derived from the ledger. Replaying an idempotency key never
    writes a second entry; ``earn``, ``redeem`` and ``adjustment`` answer a
    replay with the current balance and the original entry.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._store = LedgerStore(db_session)
        self._vouchers = VoucherIssuer(db_session)
        self._observability = get_loyalty_store()
        self._tracer = get_tracer()

    @property
    def store(self) -> LedgerStore:
        return self._store

    async def earn(
        self,
        account_id: UUID,
        amount: int,
        source_reference: str | None,
        idempotency_key: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerResult:
        with self._tracer.start_as_current_span("loyalty.earn"), _count_rejections(self._observability):
            _require_positive(amount)
            key = _require_text(idempotency_key, "idempotency_key")

            async with atomic(self._db):
                await self._require_active_account(account_id)
                try:
                    entry = await self._store.insert_entry(
                        NewLedgerEntry(
                            account_id=account_id,
                            kind=LedgerEntryKind.EARN,
                            amount=amount,
                            idempotency_key=key,
                            source_reference=source_reference,
                            metadata=metadata,
                        )
                    )
                except DuplicateIdempotencyKey as duplicate:
                    return await self._replay(duplicate.existing, account_id, LedgerEntryKind.EARN)

                balance = await self._store.get_derived_balance(account_id)

            self._observability.record_entry(LedgerEntryKind.EARN.value)
            return LedgerResult(account_id=account_id, balance=balance, entry_id=entry.id)

    async def redeem(
        self,
        account_id: UUID,
        amount: int,
        reward_reference: str | None,
        idempotency_key: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerResult:
        """Spend points; the balance check and the debit share one locked transaction."""

        with self._tracer.start_as_current_span("loyalty.redeem"), _count_rejections(self._observability):
            _require_positive(amount)
            key = _require_text(idempotency_key, "idempotency_key")

            async with atomic(self._db):
                await self._require_active_account(account_id)
                await self._store.lock_account(account_id)

                existing = await self._store.get_by_idempotency_key(key)
                if existing is not None:
                    return await self._replay(existing, account_id, LedgerEntryKind.REDEEM)

                balance = await self._store.get_derived_balance(account_id)
                if balance < amount:
                    raise InsufficientBalance(balance=balance, requested=amount)

                try:
                    entry = await self._store.insert_entry(
                        NewLedgerEntry(
                            account_id=account_id,
                            kind=LedgerEntryKind.REDEEM,
                            amount=-amount,
                            idempotency_key=key,
                            source_reference=reward_reference,
                            metadata=metadata,
                        )
                    )
                except DuplicateIdempotencyKey as duplicate:
                    return await self._replay(duplicate.existing, account_id, LedgerEntryKind.REDEEM)

                balance = await self._store.get_derived_balance(account_id)

            self._observability.record_entry(LedgerEntryKind.REDEEM.value)
            return LedgerResult(account_id=account_id, balance=balance, entry_id=entry.id)

    async def reverse(self, entry_id: UUID, reason: str, *, actor: str | None = None) -> LedgerResult:
        """Cancel an entry with an opposite ``reversal`` entry; each entry reverses once."""

        with self._tracer.start_as_current_span("loyalty.reverse"), _count_rejections(self._observability):
            reason = _require_text(reason, "reason")

            async with atomic(self._db):
                original = await self._store.get_entry(entry_id)
                if original is None:
                    raise NotFound(f"Ledger entry {entry_id} not found", entry_id=str(entry_id))
                if original.kind == LedgerEntryKind.REVERSAL:
                    raise InvalidRequest("Reversal entries cannot be reversed", entry_id=str(entry_id))

                account_id = original.account_id
                await self._store.lock_account(account_id)
                if await self._store.get_reversal_of(entry_id) is not None:
                    raise AlreadyReversed(f"Ledger entry {entry_id} was already reversed", entry_id=str(entry_id))

                delta = -int(original.amount)
                if delta < 0:
                    balance = await self._store.get_derived_balance(account_id)
                    if balance + delta < 0:
                        raise InsufficientBalance(
                            "Reversal would make the balance negative",
                            balance=balance,
                            requested=-delta,
                        )

                if original.kind == LedgerEntryKind.REDEEM:
                    await self._vouchers.revoke_for_redemption(entry_id)

                try:
                    entry = await self._store.insert_entry(
                        NewLedgerEntry(
                            account_id=account_id,
                            kind=LedgerEntryKind.REVERSAL,
                            amount=delta,
                            idempotency_key=reversal_key(entry_id),
                            source_reference=original.source_reference,
                            reverses_entry_id=entry_id,
                            reason=reason,
                            actor=actor,
                        )
                    )
                except DuplicateIdempotencyKey:
                    raise AlreadyReversed(
                        f"Ledger entry {entry_id} was already reversed", entry_id=str(entry_id)
                    ) from None

                balance = await self._store.get_derived_balance(account_id)

            self._observability.record_entry(LedgerEntryKind.REVERSAL.value)
            return LedgerResult(account_id=account_id, balance=balance, entry_id=entry.id)

    async def adjustment(
        self,
        account_id: UUID,
        amount: int,
        reason: str,
        actor: str,
        *,
        idempotency_key: str | None = None,
        source_reference: str | None = None,
    ) -> LedgerResult:
        """Manual correction with an audit trail; automated callers pass their own key."""

        with self._tracer.start_as_current_span("loyalty.adjustment"), _count_rejections(self._observability):
            if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
                raise InvalidRequest("Adjustments require a non-zero integer amount", amount=amount)
            reason = _require_text(reason, "reason")
            actor = _require_text(actor, "actor")
            key = (idempotency_key or "").strip() or f"adjustment:manual:{uuid4()}"

            async with atomic(self._db):
                await self._get_account(account_id)
                await self._store.lock_account(account_id)

                existing = await self._store.get_by_idempotency_key(key)
                if existing is not None:
                    return await self._replay(existing, account_id, LedgerEntryKind.ADJUSTMENT)

                if amount < 0:
                    balance = await self._store.get_derived_balance(account_id)
                    if balance + amount < 0:
                        raise InsufficientBalance(
                            "Adjustment would make the balance negative",
                            balance=balance,
                            requested=-amount,
                        )

                try:
                    entry = await self._store.insert_entry(
                        NewLedgerEntry(
                            account_id=account_id,
                            kind=LedgerEntryKind.ADJUSTMENT,
                            amount=amount,
                            idempotency_key=key,
                            source_reference=source_reference,
                            reason=reason,
                            actor=actor,
                        )
                    )
                except DuplicateIdempotencyKey as duplicate:
                    return await self._replay(duplicate.existing, account_id, LedgerEntryKind.ADJUSTMENT)

                balance = await self._store.get_derived_balance(account_id)

            logger.info(
                "Recorded manual adjustment",
                account_id=str(account_id),
                amount=amount,
                actor=actor,
                reason=reason,
            )
            self._observability.record_entry(LedgerEntryKind.ADJUSTMENT.value)
            return LedgerResult(account_id=account_id, balance=balance, entry_id=entry.id)

    async def get_balance(self, account_id: UUID) -> int:
        await self._get_account(account_id)
        return await self._store.get_derived_balance(account_id)

    async def rebuild_cached_balance(self, account_id: UUID) -> LedgerTotals:
        """Overwrite the cache row with the ledger sum."""

        async with atomic(self._db):
            await self._get_account(account_id)
            await self._store.lock_account(account_id)
            totals = await self._store.refresh_cached_balance(account_id, rebuilt=True)
        logger.info("Rebuilt cached balance", account_id=str(account_id), balance=totals.balance)
        return totals

    async def history(
        self,
        account_id: UUID,
        *,
        kinds: Sequence[LedgerEntryKind] | None = None,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
    ) -> tuple[list[LedgerEntry], Tuple[datetime, UUID] | None]:
        await self._get_account(account_id)
        return await self._store.list_entries(account_id, kinds=kinds, limit=limit, cursor=cursor)

    async def _replay(self, existing: LedgerEntry, account_id: UUID, kind: LedgerEntryKind) -> LedgerResult:
        if existing.account_id != account_id or existing.kind != kind:
            raise ConflictError(
                "Idempotency key was already used for a different operation",
                idempotency_key=existing.idempotency_key,
            )
        self._observability.record_replay(kind.value)
        logger.info(
            "Idempotent replay of ledger entry",
            account_id=str(account_id),
            entry_id=str(existing.id),
            idempotency_key=existing.idempotency_key,
        )
        balance = await self._store.get_derived_balance(account_id)
        return LedgerResult(account_id=account_id, balance=balance, entry_id=existing.id, replayed=True)

    async def _get_account(self, account_id: UUID) -> Account:
        account = await self._db.get(Account, account_id, populate_existing=True)
        if account is None:
            raise NotFound(f"Account {account_id} not found", account_id=str(account_id))
        return account

    async def _require_active_account(self, account_id: UUID) -> Account:
        account = await self._get_account(account_id)
        if account.status != AccountStatus.ACTIVE:
            raise AccountInactive(f"Account {account_id} is deactivated", account_id=str(account_id))
        return account


@contextmanager
def _count_rejections(observability: LoyaltyObservabilityStore) -> Iterator[None]:
    try:
        yield
    except LoyaltyError as exc:
        observability.record_rejection(exc.code)
        raise
