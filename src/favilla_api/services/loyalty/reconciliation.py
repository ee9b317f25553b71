"""Read-only comparison of cached balances against the ledger."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.models.account import Account, AccountBalance
from favilla_api.models.loyalty import LedgerEntry
from favilla_api.services.loyalty.errors import NotFound


@dataclass(slots=True)
class BalanceDrift:
    account_id: UUID
    ledger_balance: int
    cached_balance: int
    drift: int

    @property
    def in_sync(self) -> bool:
        return self.drift == 0

    def as_dict(self) -> dict[str, object]:
        return {
            "account_id": str(self.account_id),
            "ledger_balance": self.ledger_balance,
            "cached_balance": self.cached_balance,
            "drift": self.drift,
        }


class ReconciliationService:
    """Report drift between ``account_balances`` and ``SUM(ledger_entries.amount)``.

    Never writes. Cache drift is repaired with a balance rebuild; a wrong
    ledger is corrected with an audited adjustment.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def check(self, account_id: UUID | None = None) -> list[BalanceDrift]:
        ledger_totals = (
            select(
                LedgerEntry.account_id.label("account_id"),
                func.sum(LedgerEntry.amount).label("ledger_balance"),
            )
            .group_by(LedgerEntry.account_id)
            .subquery()
        )
        stmt = (
            select(
                Account.id,
                func.coalesce(ledger_totals.c.ledger_balance, 0),
                func.coalesce(AccountBalance.balance, 0),
            )
            .select_from(Account)
            .outerjoin(ledger_totals, ledger_totals.c.account_id == Account.id)
            .outerjoin(AccountBalance, AccountBalance.account_id == Account.id)
            .order_by(Account.created_at, Account.id)
        )
        if account_id is not None:
            if await self._db.get(Account, account_id) is None:
                raise NotFound(f"Account {account_id} not found", account_id=str(account_id))
            stmt = stmt.where(Account.id == account_id)

        rows = (await self._db.execute(stmt)).all()
        report = [
            BalanceDrift(
                account_id=row_account_id,
                ledger_balance=int(ledger_balance),
                cached_balance=int(cached_balance),
                drift=int(cached_balance) - int(ledger_balance),
            )
            for row_account_id, ledger_balance, cached_balance in rows
        ]
        logger.info(
            "Checked balance cache against ledger",
            accounts=len(report),
            drifting=sum(1 for item in report if not item.in_sync),
        )
        return report

    async def drifting(self, account_id: UUID | None = None) -> list[BalanceDrift]:
        return [item for item in await self.check(account_id) if not item.in_sync]
