import hashlib
import hmac
import json
import time

import pytest
from httpx import ASGITransport, AsyncClient

from favilla_api.core.settings import settings
from favilla_api.services.identity import IdentityResolver
from favilla_api.services.payments import StripeLoyaltyEventHandler

WEBHOOK_URL = "/api/v1/payments/webhooks/stripe"


def _signed(event: dict) -> tuple[str, dict[str, str]]:
    payload = json.dumps(event)
    timestamp = int(time.time())
    digest = hmac.new(
        settings.stripe_webhook_secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return payload, {"Stripe-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"}


def _payment_event(event_id: str, order_id: str, **metadata: str) -> dict:
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": f"pi_{order_id}",
                "amount_received": 4275,
                "metadata": {"order_id": order_id, **metadata},
            }
        },
    }


@pytest.mark.asyncio
async def test_paid_order_awards_points_once(app_with_db) -> None:
    app, _ = app_with_db
    event = _payment_event("evt_1", "ORD-900", legacy_user_id="9001")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        payload, headers = _signed(event)
        first = await client.post(WEBHOOK_URL, content=payload, headers=headers)
        redelivered = await client.post(WEBHOOK_URL, content=payload, headers=headers)
        payload, headers = _signed({**event, "id": "evt_2"})
        second_event = await client.post(WEBHOOK_URL, content=payload, headers=headers)

    assert first.status_code == 200
    assert first.json()["status"] == "awarded"
    assert first.json()["pointsBalance"] == 42
    assert redelivered.json()["status"] == "duplicate"
    assert second_event.json()["status"] == "duplicate"
    assert second_event.json()["pointsBalance"] == 42


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(app_with_db) -> None:
    app, _ = app_with_db
    payload = json.dumps(_payment_event("evt_3", "ORD-901", legacy_user_id="9002"))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        forged = await client.post(
            WEBHOOK_URL,
            content=payload,
            headers={"Stripe-Signature": f"t={int(time.time())},v1=deadbeef"},
        )
        unsigned = await client.post(WEBHOOK_URL, content=payload)

    assert forged.status_code == 400
    assert unsigned.status_code == 400


@pytest.mark.asyncio
async def test_guest_and_unrelated_events_are_ignored(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        payload, headers = _signed(_payment_event("evt_4", "ORD-902"))
        guest = await client.post(WEBHOOK_URL, content=payload, headers=headers)
        payload, headers = _signed({"id": "evt_5", "type": "charge.refunded", "data": {"object": {}}})
        unrelated = await client.post(WEBHOOK_URL, content=payload, headers=headers)

    assert guest.json()["status"] == "guest"
    assert unrelated.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_handler_prefers_metadata_total_and_auth_identity(session_factory) -> None:
    event = _payment_event("evt_6", "ORD-903", auth_user_id="auth0|sofia", order_total="19.99")

    async with session_factory() as session:
        outcome = await StripeLoyaltyEventHandler(session).handle(event)
        await session.commit()

    assert outcome.status == "awarded"
    assert outcome.points_balance == 19
    assert outcome.order_id == "ORD-903"


@pytest.mark.asyncio
async def test_webhook_unavailable_without_secret(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    payload, headers = _signed(_payment_event("evt_7", "ORD-904", legacy_user_id="9003"))
    monkeypatch.setattr(settings, "stripe_webhook_secret", "")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(WEBHOOK_URL, content=payload, headers=headers)

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_unusable_totals_and_customer_ids_are_acknowledged(app_with_db) -> None:
    app, session_factory = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        payload, headers = _signed(_payment_event("evt_8", "ORD-905", legacy_user_id="9004", order_total="-12.00"))
        negative = await client.post(WEBHOOK_URL, content=payload, headers=headers)
        payload, headers = _signed(_payment_event("evt_9", "ORD-906", legacy_user_id="abc"))
        bad_customer = await client.post(WEBHOOK_URL, content=payload, headers=headers)

    assert negative.status_code == 200
    assert negative.json()["status"] == "ignored"
    assert bad_customer.status_code == 200
    assert bad_customer.json()["status"] == "ignored"

    async with session_factory() as session:
        assert await IdentityResolver(session).lookup("legacy", "9004") is None
