"""
Tests for royalty runs, statements, carry-over and disputes.
"""
from datetime import datetime

import pytest
from sqlalchemy import select

from iplicensing.errors import ConflictError, PermissionDeniedError, ValidationError
from iplicensing.models import (
    LicenseUsageEvent,
    Notification,
    NotificationType,
    RoyaltyLine,
    RoyaltyLineType,
    RoyaltyRunStatus,
    RoyaltyStatementStatus,
)
from iplicensing.services.royalty_service import RoyaltyService
from iplicensing.utils.periods import monthly_period

JANUARY = monthly_period(2030, 1)
FEBRUARY = monthly_period(2030, 2)
YEAR_START = datetime(2030, 1, 1)
YEAR_END = datetime(2030, 12, 31)


@pytest.fixture
async def split_catalog(factory, db_session):
    """Two creators owning 60/40 of an asset licensed for all of 2030 with usage in January."""
    first = await factory.creator()
    second = await factory.creator()
    asset = await factory.asset(owners=[(first, 6000), (second, 4000)])
    brand = await factory.brand()
    license = await factory.license(
        asset, brand,
        start_date=YEAR_START, end_date=YEAR_END,
        fee_cents=365000, rev_share_bps=1000,
    )
    db_session.add(LicenseUsageEvent(
        license_id=license.id,
        occurred_at=datetime(2030, 1, 15),
        revenue_cents=10000,
    ))
    await db_session.commit()
    return {"first": first, "second": second, "license": license}


@pytest.fixture
async def small_catalog(factory):
    """A sole creator whose monthly earnings stay under the payout minimum."""
    creator = await factory.creator()
    asset = await factory.asset(owners=[(creator, 10000)])
    await factory.license(
        asset, await factory.brand(),
        start_date=YEAR_START, end_date=YEAR_END, fee_cents=36500,
    )
    return creator


async def _calculated_run(service: RoyaltyService, db_session, admin, period=JANUARY):
    run = await service.create_run(admin, period.start, period.end)
    await db_session.commit()
    return await service.calculate_run(run.id)


async def _statement_for(service: RoyaltyService, admin, run_id: str, creator_id: str):
    statements = await service.list_statements(admin, creator_id=creator_id, run_id=run_id)
    assert len(statements) == 1
    return statements[0]


class TestRuns:
    async def test_create_run_validates_period(self, db_session, admin_user):
        service = RoyaltyService(db_session)
        with pytest.raises(ValidationError):
            await service.create_run(admin_user, JANUARY.end, JANUARY.start)
        with pytest.raises(ValidationError):
            await service.create_run(admin_user, JANUARY.start, JANUARY.start)

    async def test_overlapping_runs_rejected(self, db_session, admin_user):
        service = RoyaltyService(db_session)
        await service.create_run(admin_user, JANUARY.start, JANUARY.end)
        with pytest.raises(ConflictError) as exc:
            await service.create_run(admin_user, datetime(2030, 1, 15), datetime(2030, 2, 15))
        assert exc.value.code == "royalty_run.overlap"

        run = await service.create_run(admin_user, FEBRUARY.start, FEBRUARY.end)
        assert run.status == RoyaltyRunStatus.DRAFT

    async def test_calculation_splits_fee_and_usage_revenue(self, db_session, admin_user, split_catalog):
        service = RoyaltyService(db_session)
        run = await _calculated_run(service, db_session, admin_user)

        # 31 of 365 days of a 365000 fee plus 10000 of usage revenue
        assert run.status == RoyaltyRunStatus.CALCULATED
        assert run.total_revenue_cents == 41000
        assert run.total_royalties_cents == 41000
        assert run.processed_at is not None

        first = await _statement_for(service, admin_user, run.id, split_catalog["first"].id)
        second = await _statement_for(service, admin_user, run.id, split_catalog["second"].id)
        assert first.total_earnings_cents == 24600
        assert second.total_earnings_cents == 16400
        assert first.status == RoyaltyStatementStatus.PENDING
        assert not first.below_threshold

        _, lines = await service.get_statement(admin_user, first.id)
        assert [(line.line_type, line.share_bps, line.revenue_cents) for line in lines] == [
            (RoyaltyLineType.EARNING, 6000, 41000),
        ]

        notified = (await db_session.execute(
            select(Notification).where(Notification.type == NotificationType.ROYALTY)
        )).scalars().all()
        assert len(notified) == 2

    async def test_only_draft_runs_calculate(self, db_session, admin_user, split_catalog):
        service = RoyaltyService(db_session)
        run = await _calculated_run(service, db_session, admin_user)
        with pytest.raises(ConflictError):
            await service.calculate_run(run.id)

    async def test_broken_ownership_fails_run(self, db_session, factory, admin_user):
        creator = await factory.creator()
        asset = await factory.asset(owners=[(creator, 6000)])
        await factory.license(asset, await factory.brand(), start_date=YEAR_START, end_date=YEAR_END)
        service = RoyaltyService(db_session)
        run = await service.create_run(admin_user, JANUARY.start, JANUARY.end)
        await db_session.commit()
        run_id = run.id

        with pytest.raises(ValidationError) as exc:
            await service.calculate_run(run_id)
        assert exc.value.code == "royalty.invalid_ownership"

        failed = await service.get_run(run_id)
        assert failed.status == RoyaltyRunStatus.FAILED
        assert "6000" in failed.error

        # A failed run does not block recalculating the same period
        await db_session.refresh(admin_user)
        retry = await service.create_run(admin_user, JANUARY.start, JANUARY.end)
        assert retry.id != run_id


class TestCarryOver:
    async def test_small_balance_is_held_then_carried(self, db_session, factory, admin_user):
        creator = await factory.creator()
        asset = await factory.asset(owners=[(creator, 10000)])
        await factory.license(
            asset, await factory.brand(),
            start_date=YEAR_START, end_date=YEAR_END, fee_cents=36500,
        )
        service = RoyaltyService(db_session)

        january_run = await _calculated_run(service, db_session, admin_user, JANUARY)
        january = await _statement_for(service, admin_user, january_run.id, creator.id)
        assert january.total_earnings_cents == 3100
        assert january.status == RoyaltyStatementStatus.REVIEWED
        assert january.below_threshold
        _, lines = await service.get_statement(admin_user, january.id)
        assert {line.line_type for line in lines} == {RoyaltyLineType.EARNING, RoyaltyLineType.THRESHOLD_NOTE}

        february_run = await _calculated_run(service, db_session, admin_user, FEBRUARY)
        february = await _statement_for(service, admin_user, february_run.id, creator.id)
        assert february.total_earnings_cents == 5900
        assert february.status == RoyaltyStatementStatus.PENDING
        assert not february.below_threshold
        assert january.carried_into_statement_id == february.id

        carryover = await db_session.scalar(
            select(RoyaltyLine).where(
                RoyaltyLine.royalty_statement_id == february.id,
                RoyaltyLine.line_type == RoyaltyLineType.CARRYOVER,
            )
        )
        assert carryover.calculated_royalty_cents == 3100
        assert carryover.metadata_ == {"statement_ids": [january.id]}

        summary = await service.creator_earnings_summary(creator.id)
        assert summary["lifetime_earnings_cents"] == 5900
        assert summary["pending_cents"] == 5900
        assert [row["period"] for row in summary["by_run"]] == ["February 2030", "January 2030"]

    async def test_resolved_small_balance_is_still_carried(self, db_session, factory, admin_user, small_catalog):
        service = RoyaltyService(db_session)
        creator_user = await factory.user_of(small_catalog)

        january_run = await _calculated_run(service, db_session, admin_user, JANUARY)
        january = await _statement_for(service, admin_user, january_run.id, small_catalog.id)
        await service.dispute_statement(creator_user, january.id, "January usage is missing from this")
        resolved = await service.resolve_dispute(admin_user, january.id, "Figures confirmed")
        assert resolved.status == RoyaltyStatementStatus.RESOLVED
        assert resolved.below_threshold

        february_run = await _calculated_run(service, db_session, admin_user, FEBRUARY)
        february = await _statement_for(service, admin_user, february_run.id, small_catalog.id)
        assert february.total_earnings_cents == 5900
        assert february.status == RoyaltyStatementStatus.PENDING
        assert january.carried_into_statement_id == february.id

    async def test_carried_statement_cannot_change(self, db_session, admin_user, small_catalog):
        service = RoyaltyService(db_session)
        january_run = await _calculated_run(service, db_session, admin_user, JANUARY)
        january = await _statement_for(service, admin_user, january_run.id, small_catalog.id)
        february_run = await _calculated_run(service, db_session, admin_user, FEBRUARY)
        february = await _statement_for(service, admin_user, february_run.id, small_catalog.id)

        with pytest.raises(ConflictError) as exc:
            await service.apply_adjustment(admin_user, january.id, 500, "Late usage report")
        assert exc.value.code == "statement.carried"
        with pytest.raises(ConflictError) as exc:
            await service.dispute_statement(admin_user, january.id, "Balance looks understated")
        assert exc.value.code == "statement.carried"
        assert january.total_earnings_cents == 3100

        adjusted = await service.apply_adjustment(admin_user, february.id, 500, "Late usage report")
        assert adjusted.total_earnings_cents == 6400


class TestStatementWorkflow:
    async def test_review_then_dispute_then_resolve(self, db_session, factory, admin_user, split_catalog):
        service = RoyaltyService(db_session)
        run = await _calculated_run(service, db_session, admin_user)
        statement = await _statement_for(service, admin_user, run.id, split_catalog["first"].id)
        creator_user = await factory.user_of(split_catalog["first"])
        other_user = await factory.user_of(split_catalog["second"])

        reviewed = await service.review_statement(statement.id)
        assert reviewed.status == RoyaltyStatementStatus.REVIEWED
        with pytest.raises(ConflictError):
            await service.review_statement(statement.id)

        with pytest.raises(ValidationError):
            await service.dispute_statement(creator_user, statement.id, "too short")
        with pytest.raises(PermissionDeniedError):
            await service.dispute_statement(other_user, statement.id, "This is not my statement at all")

        disputed = await service.dispute_statement(creator_user, statement.id, "Usage revenue looks understated")
        assert disputed.status == RoyaltyStatementStatus.DISPUTED

        with pytest.raises(ConflictError) as exc:
            await service.lock_run(run.id)
        assert exc.value.code == "royalty_run.has_disputes"

        resolved = await service.resolve_dispute(admin_user, statement.id, "Added missing usage", adjustment_cents=500)
        assert resolved.status == RoyaltyStatementStatus.RESOLVED
        assert resolved.total_earnings_cents == 25100
        assert run.total_royalties_cents == 41500

        locked = await service.lock_run(run.id)
        assert locked.status == RoyaltyRunStatus.LOCKED

    async def test_adjustments(self, db_session, admin_user, split_catalog):
        service = RoyaltyService(db_session)
        run = await _calculated_run(service, db_session, admin_user)
        statement = await _statement_for(service, admin_user, run.id, split_catalog["second"].id)

        credited = await service.apply_adjustment(admin_user, statement.id, 1000, "Late usage report")
        assert credited.total_earnings_cents == 17400

        debited = await service.apply_adjustment(admin_user, statement.id, 800, "Refund", adjustment_type="DEBIT")
        assert debited.total_earnings_cents == 16600
        assert run.total_royalties_cents == 41200

        with pytest.raises(ValidationError):
            await service.apply_adjustment(admin_user, statement.id, 999999, "Too much", adjustment_type="DEBIT")
        with pytest.raises(ValidationError):
            await service.apply_adjustment(admin_user, statement.id, 100, "Bonus", adjustment_type="BONUS")

        await service.lock_run(run.id)
        with pytest.raises(ConflictError):
            await service.apply_adjustment(admin_user, statement.id, 100, "After lock")

    async def test_creators_see_only_their_statements(self, db_session, factory, admin_user, split_catalog):
        service = RoyaltyService(db_session)
        run = await _calculated_run(service, db_session, admin_user)
        creator_user = await factory.user_of(split_catalog["first"])
        other = await _statement_for(service, admin_user, run.id, split_catalog["second"].id)

        own = await service.list_statements(creator_user)
        assert [s.creator_id for s in own] == [split_catalog["first"].id]

        with pytest.raises(PermissionDeniedError):
            await service.list_statements(creator_user, creator_id=split_catalog["second"].id)
        with pytest.raises(PermissionDeniedError):
            await service.get_statement(creator_user, other.id)

        outsider = await factory.user()
        assert await service.list_statements(outsider) == []
