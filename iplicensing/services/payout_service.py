"""
Royalty payouts to creators over Stripe Connect transfers
"""
from datetime import timedelta
from typing import Any

import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.config import settings
from iplicensing.errors import ConflictError, NotFoundError, PaymentError, ValidationError
from iplicensing.models.notification import NotificationPriority, NotificationType
from iplicensing.models.payout import Payout, PayoutStatus
from iplicensing.models.royalty import RoyaltyStatement, RoyaltyStatementStatus
from iplicensing.models.user import Creator
from iplicensing.services.connect_service import ConnectService
from iplicensing.services.notification_service import NotificationService
from iplicensing.services.stripe_service import StripeService
from iplicensing.utils.financial import format_cents_to_dollars
from iplicensing.utils.time import utc_now

logger = structlog.get_logger()

DUPLICATE_WINDOW = timedelta(minutes=5)
PAYABLE_STATUSES = (
    RoyaltyStatementStatus.PENDING,
    RoyaltyStatementStatus.REVIEWED,
    RoyaltyStatementStatus.RESOLVED,
)
NON_RETRYABLE_CODES = {"account_invalid", "balance_insufficient"}


def is_retryable_stripe_error(error: Exception) -> bool:
    """Transient network, API and rate-limit failures are worth retrying; request problems are not."""
    if getattr(error, "code", None) in NON_RETRYABLE_CODES:
        return False
    if isinstance(error, (stripe.InvalidRequestError, stripe.PermissionError, stripe.AuthenticationError)):
        return False
    return isinstance(error, (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError))


class PayoutService:
    """Service for paying out creator statements."""

    def __init__(self, db: AsyncSession, notifications: NotificationService | None = None):
        self.db = db
        self.connect = ConnectService(db)
        self.notifications = notifications or NotificationService(db)

    async def get_payout(self, payout_id: str) -> Payout:
        payout = await self.db.get(Payout, payout_id)
        if not payout:
            raise NotFoundError(f"Payout {payout_id} not found", code="payout.not_found")
        return payout

    async def list_payouts(
        self,
        creator_id: str | None = None,
        status: PayoutStatus | None = None,
        limit: int = 50,
    ) -> list[Payout]:
        stmt = select(Payout).order_by(Payout.created_at.desc()).limit(limit)
        if creator_id:
            stmt = stmt.where(Payout.creator_id == creator_id)
        if status:
            stmt = stmt.where(Payout.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def unpaid_statements(self, creator_id: str) -> list[RoyaltyStatement]:
        result = await self.db.execute(
            select(RoyaltyStatement)
            .where(
                RoyaltyStatement.creator_id == creator_id,
                RoyaltyStatement.status.in_(PAYABLE_STATUSES),
                RoyaltyStatement.below_threshold.is_(False),
                RoyaltyStatement.carried_into_statement_id.is_(None),
            )
            .order_by(RoyaltyStatement.created_at)
        )
        return list(result.scalars().all())

    async def _notify_creator(self, creator_id: str, title: str, message: str, priority: NotificationPriority) -> None:
        user_id = await self.db.scalar(select(Creator.user_id).where(Creator.id == creator_id))
        if user_id:
            await self.notifications.create(
                user_id=user_id,
                type=NotificationType.PAYOUT,
                title=title,
                message=message,
                priority=priority,
                action_url="/payouts",
            )

    async def _check_duplicate(self, creator_id: str, amount_cents: int) -> None:
        recent = await self.db.scalar(
            select(Payout.id).where(
                Payout.creator_id == creator_id,
                Payout.amount_cents == amount_cents,
                Payout.status.in_([PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.COMPLETED]),
                Payout.created_at >= utc_now() - DUPLICATE_WINDOW,
            ).limit(1)
        )
        if recent:
            raise ConflictError(
                "An identical payout was created in the last 5 minutes",
                code="payout.duplicate",
                meta={"payout_id": recent},
            )

    async def _send_transfer(self, payout: Payout, destination: str) -> Payout:
        try:
            transfer = await StripeService.create_transfer(
                amount_cents=payout.amount_cents,
                destination=destination,
                idempotency_key=payout.idempotency_key,
                metadata={"payout_id": payout.id, "creator_id": payout.creator_id},
                currency=payout.currency,
            )
        except stripe.StripeError as e:
            retryable = is_retryable_stripe_error(e)
            payout.status = PayoutStatus.FAILED
            payout.failed_reason = str(e)
            await self._notify_creator(
                payout.creator_id,
                "Payout failed",
                f"Your payout of {format_cents_to_dollars(payout.amount_cents)} could not be sent",
                NotificationPriority.URGENT,
            )
            # The failed attempt is kept even though the request fails
            await self.db.commit()
            logger.error(
                "payout_failed",
                payout_id=payout.id,
                creator_id=payout.creator_id,
                retryable=retryable,
                error=str(e),
            )
            raise PaymentError(
                "Payout transfer failed",
                retryable=retryable,
                meta={"payout_id": payout.id},
            ) from e

        payout.status = PayoutStatus.PROCESSING
        payout.stripe_transfer_id = transfer.id
        payout.failed_reason = None

        result = await self.db.execute(
            select(RoyaltyStatement).where(RoyaltyStatement.id.in_(payout.statement_ids))
        )
        now = utc_now()
        for statement in result.scalars().all():
            statement.status = RoyaltyStatementStatus.PAID
            statement.paid_at = now
            statement.payment_reference = transfer.id
        await self.db.flush()

        await self._notify_creator(
            payout.creator_id,
            "Payout sent",
            f"{format_cents_to_dollars(payout.amount_cents)} is on its way to your account",
            NotificationPriority.HIGH,
        )
        logger.info(
            "payout_processing",
            payout_id=payout.id,
            transfer_id=transfer.id,
            amount_cents=payout.amount_cents,
        )
        return payout

    async def process_payout(self, creator_id: str) -> Payout:
        creator = await self.connect.get_creator(creator_id)
        destination = await self.connect.validate_payout_eligibility(creator)

        statements = await self.unpaid_statements(creator_id)
        amount = sum(s.total_earnings_cents for s in statements)
        if amount < settings.minimum_payout_cents:
            raise ValidationError(
                f"Balance {format_cents_to_dollars(amount)} is below the "
                f"{format_cents_to_dollars(settings.minimum_payout_cents)} minimum",
                code="payout.below_minimum",
            )
        await self._check_duplicate(creator_id, amount)

        now = utc_now()
        payout = Payout(
            creator_id=creator_id,
            amount_cents=amount,
            currency="usd",
            status=PayoutStatus.PENDING,
            idempotency_key=f"payout_{creator_id}_{int(now.timestamp() * 1000)}",
            statement_ids=[s.id for s in statements],
            retry_count=0,
        )
        self.db.add(payout)
        await self.db.flush()
        logger.info("payout_created", payout_id=payout.id, creator_id=creator_id, amount_cents=amount)

        return await self._send_transfer(payout, destination)

    async def retry_payout(self, payout_id: str) -> Payout:
        payout = await self.get_payout(payout_id)
        if payout.status != PayoutStatus.FAILED:
            raise ConflictError("Only failed payouts can be retried", code="payout.invalid_status")

        result = await self.db.execute(
            select(RoyaltyStatement.id).where(
                RoyaltyStatement.id.in_(payout.statement_ids),
                RoyaltyStatement.status == RoyaltyStatementStatus.PAID,
            )
        )
        if result.first():
            raise ConflictError("Statements on this payout were already paid", code="payout.already_paid")

        creator = await self.connect.get_creator(payout.creator_id)
        destination = await self.connect.validate_payout_eligibility(creator)

        payout.retry_count += 1
        payout.status = PayoutStatus.PENDING
        await self.db.flush()
        logger.info("payout_retrying", payout_id=payout.id, retry_count=payout.retry_count)

        return await self._send_transfer(payout, destination)

    # Webhooks

    async def handle_transfer_event(self, event_type: str, transfer: dict[str, Any]) -> Payout | None:
        payout = await self.db.scalar(select(Payout).where(Payout.stripe_transfer_id == transfer["id"]))
        if not payout:
            logger.warning("payout_unknown_transfer", transfer_id=transfer["id"], event_type=event_type)
            return None

        if event_type in ("transfer.paid", "transfer.created"):
            payout.status = PayoutStatus.COMPLETED
            payout.processed_at = utc_now()
        elif event_type in ("transfer.failed", "transfer.reversed"):
            payout.status = PayoutStatus.FAILED
            payout.failed_reason = transfer.get("failure_message") or event_type
            # Money did not arrive, so the statements become payable again
            result = await self.db.execute(
                select(RoyaltyStatement).where(RoyaltyStatement.id.in_(payout.statement_ids))
            )
            for statement in result.scalars().all():
                statement.status = RoyaltyStatementStatus.PENDING
                statement.paid_at = None
                statement.payment_reference = None
            await self._notify_creator(
                payout.creator_id,
                "Payout failed",
                f"Your payout of {format_cents_to_dollars(payout.amount_cents)} was returned",
                NotificationPriority.URGENT,
            )
        await self.db.flush()

        logger.info("payout_transfer_event", payout_id=payout.id, event_type=event_type, status=payout.status.value)
        return payout

    async def handle_bank_payout_failed(self, account_id: str | None, stripe_payout: dict[str, Any]) -> None:
        """A connected account's own bank payout failed; the creator has to fix their bank details."""
        if not account_id:
            return
        creator_id = await self.db.scalar(select(Creator.id).where(Creator.stripe_account_id == account_id))
        if not creator_id:
            return
        await self._notify_creator(
            creator_id,
            "Bank payout failed",
            stripe_payout.get("failure_message") or "Please check your bank details in Stripe",
            NotificationPriority.URGENT,
        )
        logger.warning("stripe_bank_payout_failed", creator_id=creator_id, account_id=account_id)
