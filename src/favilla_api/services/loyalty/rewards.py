"""Reward catalog maintained by admins and browsed by members."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.db.session import atomic
from favilla_api.models.loyalty import DiscountType, LoyaltyReward
from favilla_api.services.loyalty.errors import ConflictError, InvalidRequest, NotFound
from favilla_api.services.loyalty.vouchers import RewardSpec, validate_reward_spec

_EDITABLE_FIELDS = {
    "name",
    "description",
    "points_required",
    "discount_type",
    "discount_value",
    "min_order_amount",
    "validity_days",
    "is_active",
}


def _validate(reward: LoyaltyReward) -> None:
    if not reward.slug or not reward.slug.strip():
        raise InvalidRequest("Reward slug is required")
    if int(reward.points_required or 0) <= 0:
        raise InvalidRequest("Rewards must cost a positive number of points")
    validate_reward_spec(
        RewardSpec(
            name=reward.name,
            discount_type=DiscountType(reward.discount_type),
            discount_value=Decimal(reward.discount_value),
            min_order_amount=Decimal(reward.min_order_amount or 0),
            validity_days=int(reward.validity_days),
        )
    )


class RewardCatalog:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def list_rewards(self, *, include_inactive: bool = False) -> list[LoyaltyReward]:
        stmt = select(LoyaltyReward).order_by(LoyaltyReward.points_required, LoyaltyReward.slug)
        if not include_inactive:
            stmt = stmt.where(LoyaltyReward.is_active.is_(True))
        return list((await self._db.execute(stmt)).scalars().all())

    async def get(self, slug: str) -> LoyaltyReward | None:
        stmt = select(LoyaltyReward).where(LoyaltyReward.slug == slug)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def get_available(self, slug: str) -> LoyaltyReward:
        reward = await self.get(slug)
        if reward is None or not reward.is_active:
            raise NotFound("Reward is not available", reward=slug)
        return reward

    async def create(self, *, slug: str, **fields: Any) -> LoyaltyReward:
        fields.setdefault("description", None)
        reward = LoyaltyReward(slug=slug.strip().lower(), **fields)
        if reward.min_order_amount is None:
            reward.min_order_amount = Decimal("0")
        if reward.validity_days is None:
            reward.validity_days = 30
        if reward.is_active is None:
            reward.is_active = True
        _validate(reward)

        async with atomic(self._db):
            try:
                async with self._db.begin_nested():
                    self._db.add(reward)
                    await self._db.flush()
            except IntegrityError:
                raise ConflictError("Reward slug already exists", reward=reward.slug) from None

        logger.info("Created loyalty reward", reward=reward.slug, points_required=reward.points_required)
        return reward

    async def update(self, slug: str, /, **changes: Any) -> LoyaltyReward:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise InvalidRequest("Unknown reward fields", fields=sorted(unknown))

        async with atomic(self._db):
            reward = await self.get(slug)
            if reward is None:
                raise NotFound("Reward not found", reward=slug)
            for key, value in changes.items():
                setattr(reward, key, value)
            _validate(reward)
            await self._db.flush()

        await self._db.refresh(reward)
        logger.info("Updated loyalty reward", reward=slug, fields=sorted(changes))
        return reward
