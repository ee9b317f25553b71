import sqlite3
from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from favilla_api.models.loyalty import LedgerEntry
from favilla_api.observability.loyalty import get_loyalty_store
from favilla_api.services.identity import IdentityResolver
from favilla_api.services.loyalty.errors import TransactionTimeout
from favilla_api.services.loyalty.ledger_service import LedgerService
from favilla_api.services.loyalty.ledger_store import LedgerStore


def _lock_contention(monkeypatch) -> None:
    async def locked(self, account_id, *, rebuilt=False):
        raise OperationalError(
            "UPDATE account_balances",
            {},
            sqlite3.OperationalError("database is locked"),
        )

    monkeypatch.setattr(LedgerStore, "refresh_cached_balance", locked)


async def _account(session_factory) -> UUID:
    async with session_factory() as session:
        account_id = await IdentityResolver(session).resolve("legacy", "8100")
        await session.commit()
    return account_id


@pytest.mark.asyncio
async def test_lock_timeout_rolls_back_and_raises_transaction_timeout(session_factory, monkeypatch) -> None:
    account_id = await _account(session_factory)
    _lock_contention(monkeypatch)

    async with session_factory() as session:
        with pytest.raises(TransactionTimeout) as excinfo:
            await LedgerService(session).earn(account_id, 30, "ORD-LOCK", "order:ORD-LOCK:earn")

        count = await session.scalar(select(func.count(LedgerEntry.id)).where(LedgerEntry.account_id == account_id))

    assert "database is locked" in excinfo.value.message
    assert count == 0
    assert get_loyalty_store().snapshot().as_dict()["rejections"] == {"transaction_timeout": 1}


@pytest.mark.asyncio
async def test_timeout_is_reported_as_retryable_503(app_with_db, admin_headers, monkeypatch) -> None:
    app, session_factory = app_with_db
    account_id = await _account(session_factory)
    _lock_contention(monkeypatch)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            f"/api/v1/admin/loyalty/accounts/{account_id}/adjustments",
            json={"amount": 10, "reason": "Goodwill"},
            headers=admin_headers,
        )

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    assert response.json()["error"] == {
        "code": "transaction_timeout",
        "message": TransactionTimeout.public_message,
        "details": {},
    }
