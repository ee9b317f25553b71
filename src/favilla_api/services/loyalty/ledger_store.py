"""Append-only storage for loyalty ledger entries."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.models.account import AccountBalance
from favilla_api.models.loyalty import LedgerEntry, LedgerEntryKind
from favilla_api.services.loyalty.errors import DuplicateIdempotencyKey, InvalidRequest, NotFound


@dataclass(slots=True)
class NewLedgerEntry:
    account_id: UUID
    kind: LedgerEntryKind
    amount: int
    idempotency_key: str
    source_reference: str | None = None
    reverses_entry_id: UUID | None = None
    reason: str | None = None
    actor: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class LedgerTotals:
    balance: int
    entry_count: int


class LedgerStore:
    """Insert and read ledger entries; keeps the balance cache in step.

    Entries are never updated or deleted. ``account_balances`` is written only
    here, recomputed from ``SUM(amount)`` in the same transaction as the
    insert that changed it.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def lock_account(self, account_id: UUID) -> None:
        """Serialize ledger writers for one account until the transaction ends."""

        result = await self._db.execute(
            update(AccountBalance)
            .where(AccountBalance.account_id == account_id)
            .values(version=AccountBalance.version + 1)
        )
        if result.rowcount == 0:
            raise NotFound(f"Account {account_id} not found", account_id=str(account_id))

    async def insert_entry(self, entry: NewLedgerEntry) -> LedgerEntry:
        """Append an entry, raising ``DuplicateIdempotencyKey`` on a replayed key."""

        if entry.amount == 0:
            raise InvalidRequest("Ledger entries require a non-zero amount")
        if not entry.idempotency_key:
            raise InvalidRequest("Ledger entries require an idempotency key")

        await self.lock_account(entry.account_id)

        row = LedgerEntry(
            account_id=entry.account_id,
            kind=entry.kind,
            amount=int(entry.amount),
            idempotency_key=entry.idempotency_key,
            source_reference=entry.source_reference,
            reverses_entry_id=entry.reverses_entry_id,
            reason=entry.reason,
            actor=entry.actor,
            metadata_json=entry.metadata or {},
        )
        try:
            async with self._db.begin_nested():
                self._db.add(row)
                await self._db.flush()
        except IntegrityError:
            existing = await self.get_by_idempotency_key(entry.idempotency_key)
            if existing is None:
                raise
            raise DuplicateIdempotencyKey(existing) from None

        await self.refresh_cached_balance(entry.account_id)
        logger.info(
            "Recorded ledger entry",
            account_id=str(entry.account_id),
            entry_id=str(row.id),
            kind=entry.kind.value,
            amount=entry.amount,
            idempotency_key=entry.idempotency_key,
        )
        return row

    async def get_entry(self, entry_id: UUID) -> LedgerEntry | None:
        return await self._db.get(LedgerEntry, entry_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> LedgerEntry | None:
        stmt = select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_reversal_of(self, entry_id: UUID) -> LedgerEntry | None:
        stmt = select(LedgerEntry).where(LedgerEntry.reverses_entry_id == entry_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_derived_balance(self, account_id: UUID) -> int:
        """Balance computed from the entries themselves, never from the cache."""

        return (await self.derive_totals(account_id)).balance

    async def derive_totals(self, account_id: UUID) -> LedgerTotals:
        stmt = select(
            func.coalesce(func.sum(LedgerEntry.amount), 0),
            func.count(LedgerEntry.id),
        ).where(LedgerEntry.account_id == account_id)
        total, count = (await self._db.execute(stmt)).one()
        return LedgerTotals(balance=int(total), entry_count=int(count))

    async def get_cached_balance(self, account_id: UUID) -> AccountBalance | None:
        stmt = (
            select(AccountBalance)
            .where(AccountBalance.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def refresh_cached_balance(self, account_id: UUID, *, rebuilt: bool = False) -> LedgerTotals:
        """Recompute the cache row from the ledger inside the caller's transaction."""

        totals = await self.derive_totals(account_id)
        values: dict[str, Any] = {"balance": totals.balance, "entry_count": totals.entry_count}
        if rebuilt:
            values["rebuilt_at"] = datetime.now(timezone.utc)
        await self._db.execute(
            update(AccountBalance).where(AccountBalance.account_id == account_id).values(**values)
        )
        return totals

    async def list_entries(
        self,
        account_id: UUID,
        *,
        kinds: Sequence[LedgerEntryKind] | None = None,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
    ) -> tuple[list[LedgerEntry], Tuple[datetime, UUID] | None]:
        """Return a newest-first page of entries and the cursor for the next page."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        )
        if kinds:
            stmt = stmt.where(LedgerEntry.kind.in_(list(kinds)))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    LedgerEntry.created_at < cursor_time,
                    and_(LedgerEntry.created_at == cursor_time, LedgerEntry.id < cursor_id),
                )
            )

        rows = list((await self._db.execute(stmt.limit(bounded_limit + 1))).scalars().all())
        entries = rows[:bounded_limit]
        next_cursor: Tuple[datetime, UUID] | None = None
        if len(rows) > bounded_limit and entries:
            tail = entries[-1]
            next_cursor = (tail.created_at, tail.id)
        return entries, next_cursor


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode pagination cursor into datetime and UUID parts."""

    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        timestamp_str, identifier_str = raw.split("|", 1)
        return datetime.fromisoformat(timestamp_str), UUID(identifier_str)
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidRequest("Malformed pagination cursor") from exc
