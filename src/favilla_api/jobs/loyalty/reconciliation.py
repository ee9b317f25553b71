"""Nightly drift report between cached balances and the points ledger."""

from __future__ import annotations

from typing import Any, Dict
from uuid import UUID

from loguru import logger

from favilla_api.observability.loyalty import get_loyalty_store
from favilla_api.services.loyalty.reconciliation import ReconciliationService

from ._session import SessionFactory, open_session


async def run_points_reconciliation(
    *,
    session_factory: SessionFactory,
    account_id: UUID | str | None = None,
) -> Dict[str, Any]:
    """Check every account (or one) and report drift; never corrects anything."""

    target = UUID(str(account_id)) if account_id else None
    async with await open_session(session_factory) as session:
        report = await ReconciliationService(session).check(target)
        # read-only: release the snapshot without writing
        await session.rollback()

    drifting = [item for item in report if not item.in_sync]
    for item in drifting:
        logger.error("Loyalty balance drift detected", **item.as_dict())

    get_loyalty_store().record_reconciliation(
        checked=len(report),
        drifting_accounts=[str(item.account_id) for item in drifting],
    )
    summary = {
        "accounts_checked": len(report),
        "drift_count": len(drifting),
        "total_drift": sum(item.drift for item in drifting),
    }
    logger.bind(summary=summary).info("Loyalty points reconciliation completed")
    return summary


__all__ = ["run_points_reconciliation"]
