"""Spend points on a catalog reward and hand back its voucher."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.db.session import atomic
from favilla_api.models.loyalty import Voucher
from favilla_api.services.loyalty.errors import ConflictError
from favilla_api.services.loyalty.ledger_service import LedgerResult, LedgerService
from favilla_api.services.loyalty.rewards import RewardCatalog
from favilla_api.services.loyalty.vouchers import RewardSpec, VoucherIssuer


@dataclass(slots=True)
class RedemptionOutcome:
    ledger: LedgerResult
    voucher: Voucher


class RewardRedemptionService:
    """Debit points and mint the voucher in a single transaction."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._catalog = RewardCatalog(db_session)
        self._ledger = LedgerService(db_session)
        self._vouchers = VoucherIssuer(db_session)

    async def redeem_reward(self, account_id: UUID, reward_slug: str, idempotency_key: str) -> RedemptionOutcome:
        async with atomic(self._db):
            reward = await self._catalog.get_available(reward_slug)
            result = await self._ledger.redeem(
                account_id,
                int(reward.points_required),
                f"reward:{reward.slug}",
                idempotency_key,
                metadata={"reward_slug": reward.slug, "reward_id": str(reward.id)},
            )

            if result.replayed:
                voucher = await self._vouchers.get_for_redemption(result.entry_id)
                if voucher is None:
                    raise ConflictError(
                        "Idempotency key belongs to a redemption without a voucher",
                        idempotency_key=idempotency_key,
                    )
                return RedemptionOutcome(ledger=result, voucher=voucher)

            voucher = await self._vouchers.issue(account_id, RewardSpec.from_reward(reward), result.entry_id)

        logger.info(
            "Redeemed loyalty reward",
            account_id=str(account_id),
            reward=reward.slug,
            entry_id=str(result.entry_id),
            voucher_id=str(voucher.id),
        )
        return RedemptionOutcome(ledger=result, voucher=voucher)
