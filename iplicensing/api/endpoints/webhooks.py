"""
Stripe webhook endpoint for Connect accounts and payout transfers

Events handled:
- account.updated - creator onboarding progress
- transfer.created / transfer.paid - payout completed
- transfer.failed / transfer.reversed - payout failed, statements payable again
- payout.failed - a creator's bank payout bounced

Event ids are recorded in `processed_webhook_events` so that Stripe
retries of an already handled event are acknowledged without effect.
"""
from collections.abc import Awaitable, Callable

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.database import get_db
from iplicensing.models.payout import ProcessedWebhookEvent
from iplicensing.services.connect_service import ConnectService
from iplicensing.services.payout_service import PayoutService
from iplicensing.services.stripe_service import StripeService

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

WebhookHandler = Callable[[dict, AsyncSession], Awaitable[None]]


# ============================================================================
# WEBHOOK HANDLERS
# ============================================================================


async def handle_account_updated(event: dict, db: AsyncSession) -> None:
    await ConnectService(db).handle_account_updated(event["data"]["object"])


async def handle_transfer_event(event: dict, db: AsyncSession) -> None:
    await PayoutService(db).handle_transfer_event(event["type"], event["data"]["object"])


async def handle_payout_failed(event: dict, db: AsyncSession) -> None:
    # Connect events carry the connected account id at the top level
    await PayoutService(db).handle_bank_payout_failed(event.get("account"), event["data"]["object"])


WEBHOOK_HANDLERS: dict[str, WebhookHandler] = {
    "account.updated": handle_account_updated,
    "transfer.created": handle_transfer_event,
    "transfer.paid": handle_transfer_event,
    "transfer.failed": handle_transfer_event,
    "transfer.reversed": handle_transfer_event,
    "payout.failed": handle_payout_failed,
}


# ============================================================================
# WEBHOOK ENDPOINT
# ============================================================================


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    Handle Stripe webhook events.

    **Security:**
    - Verifies the signature with STRIPE_WEBHOOK_SECRET
    - Rejects events with a missing or invalid signature
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        logger.warning("webhook_missing_signature")
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    try:
        event = StripeService.construct_webhook_event(payload, signature)
    except stripe.SignatureVerificationError:
        logger.error("webhook_signature_invalid")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError:
        logger.error("webhook_payload_invalid")
        raise HTTPException(status_code=400, detail="Invalid payload")

    event_type = event["type"]
    event_id = event["id"]

    logger.info("webhook_received", event_type=event_type, event_id=event_id)

    if await db.get(ProcessedWebhookEvent, event_id):
        logger.info("webhook_duplicate", event_type=event_type, event_id=event_id)
        return {"status": "duplicate", "event_type": event_type, "event_id": event_id}

    handler = WEBHOOK_HANDLERS.get(event_type)
    if not handler:
        logger.info("webhook_event_ignored", event_type=event_type)
        return {"status": "ignored", "event_type": event_type, "event_id": event_id}

    try:
        await handler(event, db)
        db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type))
        await db.commit()
    except Exception as e:
        logger.error(
            "webhook_processing_error",
            event_type=event_type,
            event_id=event_id,
            error=str(e),
        )
        # Not recorded as processed, so Stripe's retry runs it again
        raise HTTPException(status_code=500, detail=f"Error processing webhook: {str(e)}")

    logger.info("webhook_processed", event_type=event_type, event_id=event_id)
    return {"status": "ok", "event_type": event_type, "event_id": event_id}
