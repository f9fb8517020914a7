"""
Tests for Connect onboarding and royalty payouts.

Stripe calls are patched on StripeService; nothing leaves the process.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from sqlalchemy import select

from iplicensing.errors import ConflictError, NotFoundError, PaymentError, PayoutIneligibleError, ValidationError
from iplicensing.models import (
    Notification,
    NotificationPriority,
    OnboardingStatus,
    Payout,
    PayoutStatus,
    RoyaltyRun,
    RoyaltyRunStatus,
    RoyaltyStatement,
    RoyaltyStatementStatus,
)
from iplicensing.services.connect_service import ConnectService
from iplicensing.services.payout_service import PayoutService, is_retryable_stripe_error
from iplicensing.services.stripe_service import StripeService, account_requirements
from iplicensing.utils.periods import monthly_period

ENABLED_ACCOUNT = {"id": "acct_test", "payouts_enabled": True, "charges_enabled": True}


async def _statements(db_session, creator, *amounts: int, **kwargs) -> list[RoyaltyStatement]:
    period = monthly_period(2030, 1)
    run = RoyaltyRun(
        period_start=period.start,
        period_end=period.end,
        status=RoyaltyRunStatus.CALCULATED,
    )
    db_session.add(run)
    await db_session.flush()
    statements = [
        RoyaltyStatement(
            royalty_run_id=run.id,
            creator_id=creator.id,
            total_earnings_cents=amount,
            status=kwargs.get("status", RoyaltyStatementStatus.PENDING),
            below_threshold=kwargs.get("below_threshold", False),
        )
        for amount in amounts
    ]
    db_session.add_all(statements)
    await db_session.commit()
    return statements


def stripe_patch(**methods):
    """Patch StripeService static methods with AsyncMocks."""
    return patch.multiple(StripeService, **{name: AsyncMock(**options) for name, options in methods.items()})


class TestRetryableErrors:
    def test_transient_errors_are_retryable(self):
        assert is_retryable_stripe_error(stripe.APIConnectionError("network down"))
        assert is_retryable_stripe_error(stripe.RateLimitError("slow down"))

    def test_request_errors_are_not(self):
        assert not is_retryable_stripe_error(stripe.InvalidRequestError("bad amount", param="amount"))
        assert not is_retryable_stripe_error(stripe.AuthenticationError("bad key"))
        assert not is_retryable_stripe_error(stripe.APIError("broke", code="balance_insufficient"))
        assert not is_retryable_stripe_error(ValueError("not stripe"))

    def test_account_requirements(self):
        account = {
            "requirements": {
                "currently_due": ["external_account"],
                "errors": [{"code": "invalid_address"}, {"reason": "ID mismatch", "code": "x"}],
            }
        }
        assert account_requirements(account) == {
            "currently_due": ["external_account"],
            "past_due": [],
            "errors": ["invalid_address", "ID mismatch"],
        }


class TestConnect:
    async def test_create_account_once(self, db_session, factory):
        creator = await factory.creator()
        service = ConnectService(db_session)

        with stripe_patch(create_express_account={"return_value": SimpleNamespace(id="acct_new")}):
            account_id = await service.create_account(creator, "creator@example.com")
            again = await service.create_account(creator, "creator@example.com")
            assert StripeService.create_express_account.await_count == 1

        assert account_id == again == "acct_new"
        assert creator.onboarding_status == OnboardingStatus.PENDING

    async def test_onboarding_link(self, db_session, factory):
        creator = await factory.creator(stripe_account_id="acct_existing")
        with stripe_patch(create_account_link={"return_value": SimpleNamespace(url="https://connect.stripe.com/x")}):
            url = await ConnectService(db_session).get_onboarding_link(creator, "c@example.com")
        assert url == "https://connect.stripe.com/x"
        assert creator.onboarding_status == OnboardingStatus.IN_PROGRESS

    async def test_account_status(self, db_session, factory):
        service = ConnectService(db_session)
        no_account = await factory.creator()
        status = await service.get_account_status(no_account)
        assert status["has_account"] is False
        assert status["requires_action"] is True

        creator = await factory.onboarded_creator()
        account = {**ENABLED_ACCOUNT, "requirements": {"currently_due": []}}
        with stripe_patch(retrieve_account={"return_value": account}):
            status = await service.get_account_status(creator)
        assert status["payouts_enabled"] is True
        assert status["requires_action"] is False
        assert status["onboarding_status"] == "completed"

    async def test_sync_marks_completed_or_failed(self, db_session, factory):
        service = ConnectService(db_session)
        creator = await factory.creator(stripe_account_id="acct_sync", onboarding_status=OnboardingStatus.PENDING)

        with stripe_patch(retrieve_account={"return_value": {"details_submitted": False}}):
            await service.sync_account_status(creator)
        assert creator.onboarding_status == OnboardingStatus.IN_PROGRESS

        with stripe_patch(retrieve_account={"return_value": {"details_submitted": True}}):
            await service.sync_account_status(creator)
        assert creator.onboarding_status == OnboardingStatus.COMPLETED

        with stripe_patch(retrieve_account={"side_effect": stripe.APIConnectionError("down")}):
            with pytest.raises(stripe.APIConnectionError):
                await service.sync_account_status(creator)
        assert creator.onboarding_status == OnboardingStatus.FAILED

    async def test_account_updated_webhook(self, db_session, factory):
        service = ConnectService(db_session)
        creator = await factory.creator(stripe_account_id="acct_hook", onboarding_status=OnboardingStatus.IN_PROGRESS)

        updated = await service.handle_account_updated({"id": "acct_hook", "details_submitted": True})
        assert updated.id == creator.id
        assert creator.onboarding_status == OnboardingStatus.COMPLETED
        assert await service.handle_account_updated({"id": "acct_unknown"}) is None

    async def test_delete_account(self, db_session, factory):
        service = ConnectService(db_session)
        creator = await factory.onboarded_creator()
        with stripe_patch(delete_account={"return_value": None}):
            await service.delete_account(creator)
        assert creator.stripe_account_id is None
        assert creator.onboarding_status is None

        with pytest.raises(NotFoundError):
            await service.delete_account(creator)


class TestEligibility:
    async def test_requires_account_onboarding_and_payouts(self, db_session, factory):
        service = ConnectService(db_session)

        with pytest.raises(PayoutIneligibleError) as exc:
            await service.validate_payout_eligibility(await factory.creator())
        assert exc.value.code == "payout.no_account"

        pending = await factory.creator(stripe_account_id="acct_pending", onboarding_status=OnboardingStatus.IN_PROGRESS)
        with pytest.raises(PayoutIneligibleError) as exc:
            await service.validate_payout_eligibility(pending)
        assert exc.value.code == "payout.onboarding_incomplete"

        onboarded = await factory.onboarded_creator()
        with stripe_patch(retrieve_account={"return_value": {"payouts_enabled": False}}):
            with pytest.raises(PayoutIneligibleError) as exc:
                await service.validate_payout_eligibility(onboarded)
        assert exc.value.code == "payout.disabled"
        assert exc.value.status_code == 402


class TestProcessPayout:
    async def test_pays_all_payable_statements(self, db_session, factory):
        creator = await factory.onboarded_creator()
        paid_later = await _statements(db_session, creator, 6000, 4000)
        held = await _statements(db_session, creator, 3000, status=RoyaltyStatementStatus.REVIEWED, below_threshold=True)

        with stripe_patch(
            retrieve_account={"return_value": ENABLED_ACCOUNT},
            create_transfer={"return_value": SimpleNamespace(id="tr_1")},
        ):
            payout = await PayoutService(db_session).process_payout(creator.id)
            kwargs = StripeService.create_transfer.await_args.kwargs

        assert payout.status == PayoutStatus.PROCESSING
        assert payout.amount_cents == 10000
        assert payout.stripe_transfer_id == "tr_1"
        assert kwargs["amount_cents"] == 10000
        assert kwargs["destination"] == creator.stripe_account_id
        assert kwargs["idempotency_key"] == payout.idempotency_key
        assert set(payout.statement_ids) == {s.id for s in paid_later}
        for statement in paid_later:
            assert statement.status == RoyaltyStatementStatus.PAID
            assert statement.payment_reference == "tr_1"
        assert held[0].status == RoyaltyStatementStatus.REVIEWED

    async def test_below_minimum(self, db_session, factory):
        creator = await factory.onboarded_creator()
        await _statements(db_session, creator, 4999)
        with stripe_patch(retrieve_account={"return_value": ENABLED_ACCOUNT}):
            with pytest.raises(ValidationError) as exc:
                await PayoutService(db_session).process_payout(creator.id)
        assert exc.value.code == "payout.below_minimum"

    async def test_duplicate_within_window(self, db_session, factory):
        creator = await factory.onboarded_creator()
        await _statements(db_session, creator, 8000)
        db_session.add(Payout(
            creator_id=creator.id,
            amount_cents=8000,
            status=PayoutStatus.PROCESSING,
            idempotency_key="payout_existing",
            statement_ids=[],
        ))
        await db_session.commit()

        with stripe_patch(retrieve_account={"return_value": ENABLED_ACCOUNT}):
            with pytest.raises(ConflictError) as exc:
                await PayoutService(db_session).process_payout(creator.id)
        assert exc.value.code == "payout.duplicate"

    async def test_transfer_failure_is_recorded_and_retried(self, db_session, factory):
        creator = await factory.onboarded_creator()
        statements = await _statements(db_session, creator, 7000)
        service = PayoutService(db_session)

        with stripe_patch(
            retrieve_account={"return_value": ENABLED_ACCOUNT},
            create_transfer={"side_effect": stripe.APIConnectionError("network down")},
        ):
            with pytest.raises(PaymentError) as exc:
                await service.process_payout(creator.id)
        assert exc.value.retryable is True
        payout_id = exc.value.meta["payout_id"]

        failed = await service.get_payout(payout_id)
        assert failed.status == PayoutStatus.FAILED
        assert "network down" in failed.failed_reason
        assert statements[0].status == RoyaltyStatementStatus.PENDING

        urgent = await db_session.scalar(
            select(Notification).where(Notification.priority == NotificationPriority.URGENT)
        )
        assert urgent is not None

        with stripe_patch(
            retrieve_account={"return_value": ENABLED_ACCOUNT},
            create_transfer={"return_value": SimpleNamespace(id="tr_retry")},
        ):
            retried = await service.retry_payout(payout_id)
            assert StripeService.create_transfer.await_args.kwargs["idempotency_key"] == failed.idempotency_key
        assert retried.status == PayoutStatus.PROCESSING
        assert retried.retry_count == 1
        assert statements[0].status == RoyaltyStatementStatus.PAID

        with pytest.raises(ConflictError):
            await service.retry_payout(payout_id)


class TestTransferWebhooks:
    async def _processing_payout(self, db_session, factory):
        creator = await factory.onboarded_creator()
        statements = await _statements(db_session, creator, 9000, status=RoyaltyStatementStatus.PAID)
        payout = Payout(
            creator_id=creator.id,
            amount_cents=9000,
            status=PayoutStatus.PROCESSING,
            stripe_transfer_id="tr_hook",
            idempotency_key="payout_hook",
            statement_ids=[s.id for s in statements],
        )
        db_session.add(payout)
        await db_session.commit()
        return payout, statements

    async def test_paid_completes_payout(self, db_session, factory):
        payout, _ = await self._processing_payout(db_session, factory)
        result = await PayoutService(db_session).handle_transfer_event("transfer.paid", {"id": "tr_hook"})
        assert result.id == payout.id
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.processed_at is not None

    async def test_reversal_makes_statements_payable_again(self, db_session, factory):
        payout, statements = await self._processing_payout(db_session, factory)
        await PayoutService(db_session).handle_transfer_event(
            "transfer.reversed", {"id": "tr_hook", "failure_message": "Account closed"},
        )
        assert payout.status == PayoutStatus.FAILED
        assert payout.failed_reason == "Account closed"
        assert statements[0].status == RoyaltyStatementStatus.PENDING
        assert statements[0].payment_reference is None

    async def test_unknown_transfer_is_ignored(self, db_session):
        assert await PayoutService(db_session).handle_transfer_event("transfer.paid", {"id": "tr_nope"}) is None

    async def test_bank_payout_failure_notifies_creator(self, db_session, factory):
        creator = await factory.onboarded_creator()
        await PayoutService(db_session).handle_bank_payout_failed(
            creator.stripe_account_id, {"failure_message": "Bank account closed"},
        )
        notification = await db_session.scalar(
            select(Notification).where(Notification.message == "Bank account closed")
        )
        assert notification is not None
