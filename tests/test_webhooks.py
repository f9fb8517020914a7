"""
Tests for the Stripe webhook endpoint.
"""
from unittest.mock import patch

import stripe
from sqlalchemy import select

from iplicensing.models import OnboardingStatus, Payout, PayoutStatus, ProcessedWebhookEvent
from iplicensing.services.stripe_service import StripeService

WEBHOOK_URL = "/api/v1/webhooks/stripe"
HEADERS = {"stripe-signature": "t=1,v1=abc"}


def _event(event_id: str, event_type: str, obj: dict, **extra) -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}, **extra}


def verified(event: dict):
    return patch.object(StripeService, "construct_webhook_event", return_value=event)


async def test_missing_signature_rejected(client):
    response = await client.post(WEBHOOK_URL, content=b"{}")
    assert response.status_code == 400


async def test_invalid_signature_rejected(client):
    error = stripe.SignatureVerificationError("bad signature", "t=1,v1=abc")
    with patch.object(StripeService, "construct_webhook_event", side_effect=error):
        response = await client.post(WEBHOOK_URL, content=b"{}", headers=HEADERS)
    assert response.status_code == 400


async def test_unhandled_event_ignored(client):
    with verified(_event("evt_ignored", "customer.created", {"id": "cus_1"})):
        response = await client.post(WEBHOOK_URL, content=b"{}", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


async def test_account_updated_completes_onboarding(client, db_session, factory):
    creator = await factory.creator(stripe_account_id="acct_webhook", onboarding_status=OnboardingStatus.IN_PROGRESS)
    event = _event("evt_account", "account.updated", {"id": "acct_webhook", "details_submitted": True})

    with verified(event):
        response = await client.post(WEBHOOK_URL, content=b"{}", headers=HEADERS)
    assert response.json()["status"] == "ok"

    await db_session.refresh(creator)
    assert creator.onboarding_status == OnboardingStatus.COMPLETED
    assert await db_session.get(ProcessedWebhookEvent, "evt_account") is not None


async def test_replayed_event_is_acknowledged_once(client, db_session, factory):
    creator = await factory.onboarded_creator()
    db_session.add(Payout(
        creator_id=creator.id,
        amount_cents=6000,
        status=PayoutStatus.PROCESSING,
        stripe_transfer_id="tr_webhook",
        idempotency_key="payout_webhook",
        statement_ids=[],
    ))
    await db_session.commit()
    event = _event("evt_transfer", "transfer.paid", {"id": "tr_webhook"})

    with verified(event):
        first = await client.post(WEBHOOK_URL, content=b"{}", headers=HEADERS)
        second = await client.post(WEBHOOK_URL, content=b"{}", headers=HEADERS)

    assert first.json()["status"] == "ok"
    assert second.json()["status"] == "duplicate"

    payout = await db_session.scalar(
        select(Payout).where(Payout.stripe_transfer_id == "tr_webhook").execution_options(populate_existing=True)
    )
    assert payout.status == PayoutStatus.COMPLETED


async def test_handler_failure_is_not_recorded(client, db_session):
    event = _event("evt_broken", "account.updated", {})

    with verified(event):
        response = await client.post(WEBHOOK_URL, content=b"{}", headers=HEADERS)

    assert response.status_code == 500
    assert await db_session.get(ProcessedWebhookEvent, "evt_broken") is None
