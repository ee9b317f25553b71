"""Stripe webhook that awards points for paid orders."""

from __future__ import annotations

import json
from typing import Any

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from favilla_api.core.settings import settings
from favilla_api.db.session import get_session
from favilla_api.services.payments import StripeLoyaltyEventHandler

router = APIRouter(prefix="/payments/webhooks", tags=["payments"])


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    """Verify a Stripe delivery and award order points once per order."""

    secret = settings.stripe_webhook_secret
    if not secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe webhook secret not configured")

    payload_text = (await request.body()).decode("utf-8")
    signature = request.headers.get("Stripe-Signature")
    if not signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe signature header")

    try:
        stripe.Webhook.construct_event(payload=payload_text, sig_header=signature, secret=secret)
    except stripe.SignatureVerificationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe signature") from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body") from exc

    try:
        event: dict[str, Any] = json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body") from exc

    outcome = await StripeLoyaltyEventHandler(db).handle(event)
    await db.commit()
    logger.info(
        "Processed Stripe webhook",
        event_id=event.get("id"),
        event_type=event.get("type"),
        outcome=outcome.status,
    )
    return {
        "status": outcome.status,
        "orderId": outcome.order_id,
        "accountId": str(outcome.account_id) if outcome.account_id else None,
        "pointsBalance": outcome.points_balance,
    }
