"""Expire vouchers that outlived their validity window."""

from __future__ import annotations

import datetime as dt
from typing import Any, Dict

from loguru import logger

from favilla_api.services.loyalty.vouchers import VoucherIssuer

from ._session import SessionFactory, open_session


async def expire_loyalty_vouchers(*, session_factory: SessionFactory) -> Dict[str, Any]:
    now = dt.datetime.now(dt.timezone.utc)
    async with await open_session(session_factory) as session:
        expired = await VoucherIssuer(session).expire_sweep(now)
        await session.commit()

    summary = {"expired_vouchers": expired, "cutoff": now.isoformat()}
    logger.bind(summary=summary).info("Loyalty voucher expiry sweep completed")
    return summary


__all__ = ["expire_loyalty_vouchers"]
