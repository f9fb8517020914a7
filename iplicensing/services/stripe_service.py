"""
Stripe Connect integration for creator accounts and transfers
"""
from typing import Any

import stripe
import structlog

from iplicensing.config import settings

logger = structlog.get_logger()

# Initialize Stripe
stripe.api_key = settings.stripe_secret_key


class StripeService:
    """Thin wrappers around the Stripe API calls the platform makes."""

    @staticmethod
    async def create_express_account(creator_id: str, email: str) -> stripe.Account:
        """Create an Express connected account able to receive transfers."""
        try:
            account = stripe.Account.create(
                type="express",
                country="US",
                email=email,
                capabilities={"transfers": {"requested": True}},
                business_type="individual",
                metadata={"creator_id": creator_id},
            )
            logger.info("stripe_account_created", creator_id=creator_id, account_id=account.id)
            return account
        except stripe.StripeError as e:
            logger.error("stripe_account_creation_failed", creator_id=creator_id, error=str(e))
            raise

    @staticmethod
    async def create_account_link(account_id: str) -> stripe.AccountLink:
        """Create a hosted onboarding link for a connected account."""
        try:
            return stripe.AccountLink.create(
                account=account_id,
                refresh_url=settings.stripe_connect_refresh_url,
                return_url=settings.stripe_connect_return_url,
                type="account_onboarding",
            )
        except stripe.StripeError as e:
            logger.error("stripe_account_link_failed", account_id=account_id, error=str(e))
            raise

    @staticmethod
    async def retrieve_account(account_id: str) -> stripe.Account:
        try:
            return stripe.Account.retrieve(account_id)
        except stripe.StripeError as e:
            logger.error("stripe_account_retrieve_failed", account_id=account_id, error=str(e))
            raise

    @staticmethod
    async def delete_account(account_id: str) -> None:
        try:
            stripe.Account.delete(account_id)
            logger.info("stripe_account_deleted", account_id=account_id)
        except stripe.StripeError as e:
            logger.error("stripe_account_delete_failed", account_id=account_id, error=str(e))
            raise

    @staticmethod
    async def create_transfer(
        amount_cents: int,
        destination: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
        currency: str = "usd",
    ) -> stripe.Transfer:
        """Move funds from the platform balance to a connected account."""
        try:
            transfer = stripe.Transfer.create(
                amount=amount_cents,
                currency=currency,
                destination=destination,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
            logger.info(
                "stripe_transfer_created",
                transfer_id=transfer.id,
                destination=destination,
                amount_cents=amount_cents,
            )
            return transfer
        except stripe.StripeError as e:
            logger.error(
                "stripe_transfer_failed",
                destination=destination,
                amount_cents=amount_cents,
                error=str(e),
            )
            raise

    @staticmethod
    def construct_webhook_event(payload: bytes, signature: str) -> stripe.Event:
        """Verify a webhook payload against the endpoint secret."""
        return stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)


def account_requirements(account: Any) -> dict[str, Any]:
    requirements = account.get("requirements") or {}
    return {
        "currently_due": list(requirements.get("currently_due") or []),
        "past_due": list(requirements.get("past_due") or []),
        "errors": [
            error.get("reason") or error.get("code")
            for error in (requirements.get("errors") or [])
        ],
    }
