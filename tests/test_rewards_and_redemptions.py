from decimal import Decimal

import pytest

from favilla_api.models.loyalty import DiscountType, VoucherStatus
from favilla_api.services.identity import IdentityResolver
from favilla_api.services.loyalty.errors import ConflictError, InsufficientBalance, InvalidRequest, NotFound
from favilla_api.services.loyalty.ledger_service import LedgerService
from favilla_api.services.loyalty.redemptions import RewardRedemptionService
from favilla_api.services.loyalty.rewards import RewardCatalog
from favilla_api.services.loyalty.vouchers import VoucherIssuer


@pytest.mark.asyncio
async def test_catalog_create_update_and_listing(session_factory) -> None:
    async with session_factory() as session:
        catalog = RewardCatalog(session)
        await catalog.create(
            slug="Garlic-Knots",
            name="Garlic knots",
            points_required=20,
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("6.00"),
        )
        await session.commit()

        with pytest.raises(ConflictError):
            await catalog.create(
                slug="garlic-knots",
                name="Duplicate",
                points_required=10,
                discount_type=DiscountType.FIXED,
                discount_value=Decimal("1.00"),
            )
        await session.rollback()

        updated = await catalog.update("garlic-knots", points_required=25, is_active=False)
        await session.commit()

        assert updated.points_required == 25
        assert await catalog.list_rewards() == []
        assert [reward.slug for reward in await catalog.list_rewards(include_inactive=True)] == ["garlic-knots"]

        with pytest.raises(NotFound):
            await catalog.get_available("garlic-knots")
        with pytest.raises(InvalidRequest):
            await catalog.update("garlic-knots", slug="renamed")


@pytest.mark.asyncio
async def test_catalog_rejects_invalid_rewards(session_factory) -> None:
    async with session_factory() as session:
        catalog = RewardCatalog(session)
        with pytest.raises(InvalidRequest):
            await catalog.create(
                slug="half-off",
                name="Half off",
                points_required=0,
                discount_type=DiscountType.PERCENTAGE,
                discount_value=Decimal("50"),
            )
        with pytest.raises(InvalidRequest):
            await catalog.create(
                slug="too-generous",
                name="Too generous",
                points_required=10,
                discount_type=DiscountType.PERCENTAGE,
                discount_value=Decimal("120"),
            )


@pytest.mark.asyncio
async def test_redeem_reward_debits_and_issues_voucher(session_factory, free_pizza_reward) -> None:
    async with session_factory() as session:
        account_id = await IdentityResolver(session).resolve("authprovider", "auth0|redeemer")
        await LedgerService(session).earn(account_id, 70, "ORD-9", "order:ORD-9:earn")
        await session.commit()

        service = RewardRedemptionService(session)
        outcome = await service.redeem_reward(account_id, "free-pizza", "redeem:free-pizza:1")
        await session.commit()

        assert outcome.ledger.balance == 20
        assert outcome.voucher.status == VoucherStatus.ACTIVE
        assert outcome.voucher.redemption_entry_id == outcome.ledger.entry_id
        assert outcome.voucher.reward_name == "Free medium pizza"

        replay = await service.redeem_reward(account_id, "free-pizza", "redeem:free-pizza:1")
        await session.commit()
        assert replay.ledger.replayed
        assert replay.voucher.id == outcome.voucher.id
        assert len(await VoucherIssuer(session).list_for_account(account_id)) == 1

        with pytest.raises(InsufficientBalance):
            await service.redeem_reward(account_id, "free-pizza", "redeem:free-pizza:2")
        await session.rollback()

        with pytest.raises(NotFound):
            await service.redeem_reward(account_id, "unknown-reward", "redeem:unknown:1")
