"""Turn verified Stripe events into loyalty awards."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.models.account import IdentityScheme
from favilla_api.services.identity.resolver import IdentityResolver
from favilla_api.services.loyalty.errors import InvalidRequest
from favilla_api.services.payments.order_rewards import OrderRewardsService

PAYMENT_SUCCEEDED = "payment_intent.succeeded"


@dataclass(slots=True)
class PaymentEventOutcome:
    status: str
    order_id: str | None = None
    account_id: UUID | None = None
    points_balance: int | None = None
    entry_id: UUID | None = None


def _order_total(payment: Mapping[str, Any], metadata: Mapping[str, Any]) -> Decimal | None:
    raw = metadata.get("order_total")
    try:
        if raw not in (None, ""):
            total = Decimal(str(raw))
        elif payment.get("amount_received") is not None:
            total = Decimal(int(payment["amount_received"])) / Decimal(100)
        else:
            return None
    except (InvalidOperation, TypeError, ValueError):
        return None
    # NaN, infinite and negative totals earn nothing
    if not total.is_finite() or total < 0:
        return None
    return total


def _customer_identity(metadata: Mapping[str, Any]) -> tuple[IdentityScheme, str] | None:
    legacy_id = str(metadata.get("legacy_user_id") or "").strip()
    if legacy_id:
        return IdentityScheme.LEGACY, legacy_id
    auth_id = str(metadata.get("auth_user_id") or "").strip()
    if auth_id:
        return IdentityScheme.AUTHPROVIDER, auth_id
    return None


class StripeLoyaltyEventHandler:
    """Award points for succeeded payment intents; ignore everything else."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._resolver = IdentityResolver(db_session)
        self._order_rewards = OrderRewardsService(db_session)

    async def handle(self, event: Mapping[str, Any]) -> PaymentEventOutcome:
        event_id = str(event.get("id") or "")
        event_type = event.get("type")
        if event_type != PAYMENT_SUCCEEDED:
            logger.debug("Ignoring Stripe event", event_id=event_id, event_type=event_type)
            return PaymentEventOutcome(status="ignored")

        payment: Mapping[str, Any] = (event.get("data") or {}).get("object") or {}
        metadata: Mapping[str, Any] = payment.get("metadata") or {}
        order_id = str(metadata.get("order_id") or "").strip()
        if not order_id:
            logger.warning("Payment succeeded without an order id", event_id=event_id)
            return PaymentEventOutcome(status="ignored")

        identity = _customer_identity(metadata)
        if identity is None:
            logger.info("Guest order, no points awarded", event_id=event_id, order_id=order_id)
            return PaymentEventOutcome(status="guest", order_id=order_id)

        total = _order_total(payment, metadata)
        if total is None:
            logger.warning("Payment succeeded without a usable order total", event_id=event_id, order_id=order_id)
            return PaymentEventOutcome(status="ignored", order_id=order_id)

        try:
            account_id = await self._resolver.resolve(*identity)
        except InvalidRequest as exc:
            logger.warning(
                "Payment succeeded with an unusable customer id",
                event_id=event_id,
                order_id=order_id,
                error=exc.message,
            )
            return PaymentEventOutcome(status="ignored", order_id=order_id)

        result = await self._order_rewards.award_order_points(account_id, order_id, total, event_id)
        if result is None:
            return PaymentEventOutcome(status="no_points", order_id=order_id, account_id=account_id)

        return PaymentEventOutcome(
            status="duplicate" if result.replayed else "awarded",
            order_id=order_id,
            account_id=account_id,
            points_balance=result.balance,
            entry_id=result.entry_id,
        )
