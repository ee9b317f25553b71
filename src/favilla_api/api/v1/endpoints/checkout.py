"""Voucher validation and consumption for the checkout flow."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.api.dependencies.security import require_checkout_api_key
from favilla_api.db.session import get_session
from favilla_api.schemas.loyalty import DiscountResponse, VoucherCheckoutRequest
from favilla_api.services.loyalty.vouchers import VoucherIssuer


router = APIRouter(
    prefix="/checkout/vouchers",
    tags=["checkout"],
    dependencies=[Depends(require_checkout_api_key)],
)


@router.post("/validate", response_model=DiscountResponse)
async def validate_voucher(
    request: VoucherCheckoutRequest,
    db: AsyncSession = Depends(get_session),
) -> DiscountResponse:
    """Price a voucher against an order without using it."""

    application = await VoucherIssuer(db).preview(request.code, request.accountId, request.order.to_context())
    return DiscountResponse.from_application(application)


@router.post("/consume", response_model=DiscountResponse)
async def consume_voucher(
    request: VoucherCheckoutRequest,
    db: AsyncSession = Depends(get_session),
) -> DiscountResponse:
    """Apply a voucher to an order. A voucher is consumed at most once."""

    application = await VoucherIssuer(db).consume(request.code, request.accountId, request.order.to_context())
    await db.commit()
    return DiscountResponse.from_application(application)
