"""Points awarded for paid orders."""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.core.settings import Settings, settings as default_settings
from favilla_api.services.loyalty.errors import InvalidRequest
from favilla_api.services.loyalty.ledger_service import LedgerResult, LedgerService


def order_earn_key(order_id: str) -> str:
    return f"order:{order_id}:earn"


def points_for_order(order_total: Decimal, config: Settings | None = None) -> int:
    """Points for an order total under the configured award rate."""

    config = config or default_settings
    total = Decimal(str(order_total))
    if total < 0:
        raise InvalidRequest("Order total cannot be negative", order_total=str(total))

    points = total * Decimal(config.loyalty_points_per_dollar)
    threshold = config.loyalty_bonus_threshold
    if threshold is not None and total >= Decimal(str(threshold)):
        points *= Decimal(str(config.loyalty_bonus_multiplier))
    return int(points.to_integral_value(rounding=ROUND_FLOOR))


class OrderRewardsService:
    def __init__(self, db_session: AsyncSession, *, config: Settings | None = None) -> None:
        self._ledger = LedgerService(db_session)
        self._config = config or default_settings

    async def award_order_points(
        self,
        account_id: UUID,
        order_id: str,
        order_total: Decimal,
        payment_event_id: str | None = None,
    ) -> LedgerResult | None:
        """Credit an order once, however many times its payment event arrives."""

        order_id = str(order_id).strip()
        if not order_id:
            raise InvalidRequest("Order id is required")

        points = points_for_order(order_total, self._config)
        if points <= 0:
            logger.info("Order earns no points", account_id=str(account_id), order_id=order_id)
            return None

        return await self._ledger.earn(
            account_id,
            points,
            order_id,
            order_earn_key(order_id),
            metadata={
                "order_total": str(order_total),
                "points_per_dollar": self._config.loyalty_points_per_dollar,
                "payment_event_id": payment_event_id,
            },
        )
