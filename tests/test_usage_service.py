"""
Tests for usage reporting.
"""
from datetime import datetime, timedelta, timezone

import pytest

from iplicensing.errors import ConflictError, PermissionDeniedError, ValidationError
from iplicensing.models import LicenseStatus
from iplicensing.services.usage_service import UsageService


@pytest.fixture
async def active_license(factory):
    brand = await factory.brand()
    asset = await factory.asset(owners=[(await factory.creator(), 10000)])
    license = await factory.license(asset, brand, rev_share_bps=1000)
    return license, await factory.user_of(brand)


async def test_brand_records_usage(db_session, active_license):
    license, brand_user = active_license
    event = await UsageService(db_session).record_usage(
        brand_user,
        license.id,
        datetime(2026, 3, 1, 12, tzinfo=timezone(timedelta(hours=2))),
        revenue_cents=12500,
        usage_type="sale",
        quantity=5,
    )
    assert event.occurred_at == datetime(2026, 3, 1, 10)
    assert event.reported_by == brand_user.id


async def test_other_brand_cannot_report(db_session, factory, active_license):
    license, _ = active_license
    other = await factory.user_of(await factory.brand())
    with pytest.raises(PermissionDeniedError):
        await UsageService(db_session).record_usage(other, license.id, datetime(2026, 3, 1), 100)


async def test_inactive_license_rejects_usage(db_session, factory, active_license):
    license, brand_user = active_license
    license.status = LicenseStatus.TERMINATED
    await db_session.commit()
    with pytest.raises(ConflictError):
        await UsageService(db_session).record_usage(brand_user, license.id, datetime(2026, 3, 1), 100)


@pytest.mark.parametrize("revenue_cents, quantity", [(-1, 1), (100, 0)])
async def test_invalid_amounts(db_session, active_license, revenue_cents, quantity):
    license, brand_user = active_license
    with pytest.raises(ValidationError):
        await UsageService(db_session).record_usage(
            brand_user, license.id, datetime(2026, 3, 1), revenue_cents, quantity=quantity,
        )


async def test_summary_and_period_revenue(db_session, active_license):
    license, brand_user = active_license
    service = UsageService(db_session)
    await service.record_usage(brand_user, license.id, datetime(2026, 1, 10), 1000, "sale", 2)
    await service.record_usage(brand_user, license.id, datetime(2026, 1, 20), 3000, "sale", 1)
    await service.record_usage(brand_user, license.id, datetime(2026, 1, 25), 0, "impression", 500)
    await service.record_usage(brand_user, license.id, datetime(2026, 2, 5), 7000, "sale", 1)

    assert await service.revenue_in_period(license.id, datetime(2026, 1, 1), datetime(2026, 1, 31)) == 4000

    summary = await service.usage_summary(license.id, datetime(2026, 1, 1), datetime(2026, 1, 31))
    assert summary["total_events"] == 3
    assert summary["total_quantity"] == 503
    assert summary["total_revenue_cents"] == 4000
    assert summary["by_type"]["sale"] == {"events": 2, "quantity": 3, "revenue_cents": 4000}

    everything = await service.usage_summary(license.id)
    assert everything["total_revenue_cents"] == 11000

    with pytest.raises(ValidationError):
        await service.usage_summary(license.id, datetime(2026, 2, 1), datetime(2026, 1, 1))
