"""
Creator Stripe Connect onboarding
"""
from typing import Any

import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.errors import NotFoundError, PayoutIneligibleError
from iplicensing.models.user import Creator, OnboardingStatus, User
from iplicensing.services.stripe_service import StripeService, account_requirements

logger = structlog.get_logger()


class ConnectService:
    """Service for creator connected accounts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_creator(self, creator_id: str) -> Creator:
        creator = await self.db.get(Creator, creator_id)
        if not creator:
            raise NotFoundError(f"Creator {creator_id} not found", code="creator.not_found")
        return creator

    async def get_creator_for_user(self, user: User) -> Creator:
        creator = await self.db.scalar(select(Creator).where(Creator.user_id == user.id))
        if not creator:
            raise NotFoundError("No creator profile for this user", code="creator.not_found")
        return creator

    async def create_account(self, creator: Creator, email: str) -> str:
        """Create the creator's Express account, or return the one already linked."""
        if creator.stripe_account_id:
            return creator.stripe_account_id

        account = await StripeService.create_express_account(creator.id, email)
        creator.stripe_account_id = account.id
        creator.onboarding_status = OnboardingStatus.PENDING
        await self.db.flush()
        return account.id

    async def get_onboarding_link(self, creator: Creator, email: str) -> str:
        account_id = await self.create_account(creator, email)
        link = await StripeService.create_account_link(account_id)
        creator.onboarding_status = OnboardingStatus.IN_PROGRESS
        await self.db.flush()
        logger.info("stripe_onboarding_link_created", creator_id=creator.id)
        return link.url

    async def get_account_status(self, creator: Creator) -> dict[str, Any]:
        if not creator.stripe_account_id:
            return {
                "has_account": False,
                "onboarding_status": None,
                "charges_enabled": False,
                "payouts_enabled": False,
                "requires_action": True,
                "currently_due": [],
                "errors": [],
            }

        account = await StripeService.retrieve_account(creator.stripe_account_id)
        requirements = account_requirements(account)
        return {
            "has_account": True,
            "onboarding_status": creator.onboarding_status.value if creator.onboarding_status else None,
            "charges_enabled": bool(account.get("charges_enabled")),
            "payouts_enabled": bool(account.get("payouts_enabled")),
            "requires_action": bool(requirements["currently_due"] or requirements["past_due"]),
            "currently_due": requirements["currently_due"],
            "errors": requirements["errors"],
        }

    def _apply_account_state(self, creator: Creator, account: Any) -> None:
        if account.get("details_submitted"):
            creator.onboarding_status = OnboardingStatus.COMPLETED
        elif creator.onboarding_status in (None, OnboardingStatus.PENDING):
            creator.onboarding_status = OnboardingStatus.IN_PROGRESS

    async def sync_account_status(self, creator: Creator) -> Creator:
        if not creator.stripe_account_id:
            raise NotFoundError("Creator has no connected account", code="connect.no_account")
        try:
            account = await StripeService.retrieve_account(creator.stripe_account_id)
        except stripe.StripeError:
            creator.onboarding_status = OnboardingStatus.FAILED
            await self.db.flush()
            raise

        self._apply_account_state(creator, account)
        await self.db.flush()
        logger.info(
            "stripe_account_synced",
            creator_id=creator.id,
            onboarding_status=creator.onboarding_status.value,
        )
        return creator

    async def handle_account_updated(self, account: Any) -> Creator | None:
        """Apply an `account.updated` webhook payload to the linked creator."""
        creator = await self.db.scalar(select(Creator).where(Creator.stripe_account_id == account["id"]))
        if not creator:
            logger.warning("stripe_account_unknown", account_id=account["id"])
            return None
        self._apply_account_state(creator, account)
        await self.db.flush()
        return creator

    async def delete_account(self, creator: Creator) -> None:
        if not creator.stripe_account_id:
            raise NotFoundError("Creator has no connected account", code="connect.no_account")
        await StripeService.delete_account(creator.stripe_account_id)
        creator.stripe_account_id = None
        creator.onboarding_status = None
        await self.db.flush()

    async def validate_payout_eligibility(self, creator: Creator) -> str:
        """Return the destination account id, or raise when the creator cannot be paid."""
        if not creator.stripe_account_id:
            raise PayoutIneligibleError("Creator has no connected Stripe account", code="payout.no_account")
        if creator.onboarding_status != OnboardingStatus.COMPLETED:
            raise PayoutIneligibleError("Stripe onboarding is not complete", code="payout.onboarding_incomplete")

        account = await StripeService.retrieve_account(creator.stripe_account_id)
        if not account.get("payouts_enabled"):
            raise PayoutIneligibleError("Payouts are not enabled on the Stripe account", code="payout.disabled")
        return creator.stripe_account_id
