"""Voucher issuance, checkout consumption and expiry."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.core.settings import settings
from favilla_api.db.session import atomic
from favilla_api.models.loyalty import DiscountType, LoyaltyReward, Voucher, VoucherStatus
from favilla_api.observability.loyalty import get_loyalty_store
from favilla_api.services.loyalty.errors import (
    AlreadyUsed,
    Expired,
    InvalidRequest,
    MinOrderNotMet,
    NotFound,
)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_PREFIXES = {
    DiscountType.FIXED: "SAVE",
    DiscountType.PERCENTAGE: "PCT",
    DiscountType.DELIVERY_FEE: "SHIP",
}
_CENTS = Decimal("0.01")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive values; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class RewardSpec:
    """What a voucher is worth and for how long."""

    name: str
    discount_type: DiscountType
    discount_value: Decimal
    min_order_amount: Decimal = Decimal("0")
    validity_days: int = 30
    reward_id: UUID | None = None

    @classmethod
    def from_reward(cls, reward: LoyaltyReward) -> "RewardSpec":
        return cls(
            name=reward.name,
            discount_type=DiscountType(reward.discount_type),
            discount_value=Decimal(reward.discount_value),
            min_order_amount=Decimal(reward.min_order_amount or 0),
            validity_days=int(reward.validity_days),
            reward_id=reward.id,
        )


@dataclass(slots=True)
class OrderContext:
    order_id: str
    subtotal: Decimal
    delivery_fee: Decimal = Decimal("0")


@dataclass(slots=True)
class DiscountApplication:
    voucher_id: UUID
    code: str
    order_id: str
    discount_type: DiscountType
    discount_amount: Decimal
    applied_at: datetime | None


def generate_voucher_code(discount_type: DiscountType, value: Decimal, *, length: int | None = None) -> str:
    """Build codes such as ``SAVE10-7KQ2M9XA`` from a CSPRNG."""

    suffix_length = length or settings.voucher_code_length
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(suffix_length))
    return f"{CODE_PREFIXES[discount_type]}{int(value)}-{suffix}"


def compute_discount(discount_type: DiscountType, value: Decimal, order: OrderContext) -> Decimal:
    subtotal = Decimal(order.subtotal)
    if discount_type == DiscountType.FIXED:
        amount = min(Decimal(value), subtotal)
    elif discount_type == DiscountType.PERCENTAGE:
        amount = min(subtotal * Decimal(value) / Decimal(100), subtotal)
    else:
        amount = min(Decimal(value), Decimal(order.delivery_fee))
    return max(amount, Decimal("0")).quantize(_CENTS, rounding=ROUND_HALF_UP)


def validate_reward_spec(spec: RewardSpec) -> None:
    if spec.validity_days <= 0:
        raise InvalidRequest("Voucher validity must be at least one day")
    if spec.discount_value <= 0:
        raise InvalidRequest("Discount value must be positive")
    if spec.discount_type == DiscountType.PERCENTAGE and spec.discount_value > 100:
        raise InvalidRequest("Percentage discounts cannot exceed 100")
    if spec.min_order_amount < 0:
        raise InvalidRequest("Minimum order amount cannot be negative")


class VoucherIssuer:
    """Mint one-time discount codes and enforce their single use."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._observability = get_loyalty_store()

    async def issue(
        self,
        account_id: UUID,
        reward_spec: RewardSpec,
        redemption_entry_id: UUID,
        *,
        now: datetime | None = None,
    ) -> Voucher:
        validate_reward_spec(reward_spec)
        issued_at = now or _utcnow()
        max_attempts = max(settings.voucher_code_max_attempts, 1)

        async with atomic(self._db):
            for attempt in range(1, max_attempts + 1):
                code = generate_voucher_code(reward_spec.discount_type, reward_spec.discount_value)
                voucher = Voucher(
                    account_id=account_id,
                    code=code,
                    reward_id=reward_spec.reward_id,
                    reward_name=reward_spec.name,
                    discount_type=reward_spec.discount_type,
                    discount_value=reward_spec.discount_value,
                    min_order_amount=reward_spec.min_order_amount,
                    status=VoucherStatus.ACTIVE,
                    expires_at=issued_at + timedelta(days=reward_spec.validity_days),
                    redemption_entry_id=redemption_entry_id,
                    used_at=None,
                    applied_order_id=None,
                )
                try:
                    async with self._db.begin_nested():
                        self._db.add(voucher)
                        await self._db.flush()
                except IntegrityError:
                    if await self.get_by_code(code) is None:
                        raise
                    logger.warning("Voucher code collision, retrying", attempt=attempt)
                    continue
                break
            else:
                raise RuntimeError(f"Could not allocate a unique voucher code after {max_attempts} attempts")

        self._observability.record_voucher_event("issued")
        logger.info(
            "Issued voucher",
            account_id=str(account_id),
            voucher_id=str(voucher.id),
            redemption_entry_id=str(redemption_entry_id),
            expires_at=voucher.expires_at.isoformat(),
        )
        return voucher

    async def consume(
        self,
        code: str,
        account_id: UUID,
        order: OrderContext,
        *,
        now: datetime | None = None,
    ) -> DiscountApplication:
        """Apply a voucher to an order; it can never be applied again."""

        applied_at = now or _utcnow()
        async with atomic(self._db):
            voucher = await self._load_for_account(code, account_id, lock=True)
            self._check_usable(voucher, order, applied_at)
            discount = compute_discount(voucher.discount_type, voucher.discount_value, order)

            result = await self._db.execute(
                update(Voucher)
                .where(Voucher.id == voucher.id, Voucher.status == VoucherStatus.ACTIVE)
                .values(status=VoucherStatus.USED, used_at=applied_at, applied_order_id=order.order_id)
            )
            if result.rowcount == 0:
                raise AlreadyUsed(code=voucher.code)

        self._observability.record_voucher_event("consumed")
        logger.info(
            "Consumed voucher",
            account_id=str(account_id),
            voucher_id=str(voucher.id),
            order_id=order.order_id,
            discount=str(discount),
        )
        return DiscountApplication(
            voucher_id=voucher.id,
            code=voucher.code,
            order_id=order.order_id,
            discount_type=DiscountType(voucher.discount_type),
            discount_amount=discount,
            applied_at=applied_at,
        )

    async def preview(
        self,
        code: str,
        account_id: UUID,
        order: OrderContext,
        *,
        now: datetime | None = None,
    ) -> DiscountApplication:
        """Run the consume checks and price the discount without using the voucher."""

        voucher = await self._load_for_account(code, account_id, lock=False)
        self._check_usable(voucher, order, now or _utcnow())
        return DiscountApplication(
            voucher_id=voucher.id,
            code=voucher.code,
            order_id=order.order_id,
            discount_type=DiscountType(voucher.discount_type),
            discount_amount=compute_discount(voucher.discount_type, voucher.discount_value, order),
            applied_at=None,
        )

    async def expire_sweep(self, now: datetime | None = None) -> int:
        """Move active vouchers past their expiry to ``expired``; safe to repeat."""

        cutoff = now or _utcnow()
        async with atomic(self._db):
            result = await self._db.execute(
                update(Voucher)
                .where(Voucher.status == VoucherStatus.ACTIVE, Voucher.expires_at < cutoff)
                .values(status=VoucherStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
        count = int(result.rowcount or 0)
        if count:
            self._observability.record_voucher_event("expired", count)
        logger.info("Expired loyalty vouchers", count=count, cutoff=cutoff.isoformat())
        return count

    async def revoke_for_redemption(self, redemption_entry_id: UUID) -> Voucher | None:
        """Expire the active voucher minted by a redemption that is being reversed."""

        stmt = (
            select(Voucher)
            .where(Voucher.redemption_entry_id == redemption_entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        voucher = (await self._db.execute(stmt)).scalar_one_or_none()
        if voucher is None:
            return None
        if voucher.status == VoucherStatus.USED:
            raise AlreadyUsed(
                "Voucher from this redemption was already used",
                code=voucher.code,
                order_id=voucher.applied_order_id,
            )
        if voucher.status == VoucherStatus.ACTIVE:
            await self._db.execute(
                update(Voucher)
                .where(Voucher.id == voucher.id, Voucher.status == VoucherStatus.ACTIVE)
                .values(status=VoucherStatus.EXPIRED)
            )
            self._observability.record_voucher_event("revoked")
            logger.info("Revoked voucher after reversal", voucher_id=str(voucher.id))
        return voucher

    async def get_by_code(self, code: str) -> Voucher | None:
        stmt = select(Voucher).where(Voucher.code == code.strip().upper()).execution_options(populate_existing=True)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def get_for_redemption(self, redemption_entry_id: UUID) -> Voucher | None:
        stmt = select(Voucher).where(Voucher.redemption_entry_id == redemption_entry_id).execution_options(populate_existing=True)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def list_for_account(
        self,
        account_id: UUID,
        *,
        statuses: Sequence[VoucherStatus] | None = None,
    ) -> list[Voucher]:
        stmt = (
            select(Voucher)
            .where(Voucher.account_id == account_id)
            .order_by(Voucher.created_at.desc())
            .execution_options(populate_existing=True)
        )
        if statuses:
            stmt = stmt.where(Voucher.status.in_(list(statuses)))
        return list((await self._db.execute(stmt)).scalars().all())

    async def _load_for_account(self, code: str, account_id: UUID, *, lock: bool) -> Voucher:
        stmt = select(Voucher).where(Voucher.code == code.strip().upper()).execution_options(populate_existing=True)
        if lock:
            stmt = stmt.with_for_update()
        voucher = (await self._db.execute(stmt)).scalar_one_or_none()
        if voucher is None or voucher.account_id != account_id:
            raise NotFound("Voucher not found", code=code)
        return voucher

    @staticmethod
    def _check_usable(voucher: Voucher, order: OrderContext, now: datetime) -> None:
        if voucher.status == VoucherStatus.USED:
            raise AlreadyUsed(code=voucher.code)
        if voucher.status == VoucherStatus.EXPIRED or _as_aware(now) > _as_aware(voucher.expires_at):
            raise Expired(code=voucher.code, expires_at=_as_aware(voucher.expires_at).isoformat())
        minimum = Decimal(voucher.min_order_amount or 0)
        if Decimal(order.subtotal) < minimum:
            raise MinOrderNotMet(
                f"Order subtotal must be at least {minimum}",
                code=voucher.code,
                min_order_amount=str(minimum),
                subtotal=str(order.subtotal),
            )
