"""
Usage reporting service for licensed assets
"""
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from iplicensing.models.license import License, LicenseStatus
from iplicensing.models.usage import LicenseUsageEvent
from iplicensing.models.user import Brand, User
from iplicensing.utils.time import to_naive_utc

logger = structlog.get_logger()

REPORTABLE_STATUSES = (LicenseStatus.ACTIVE, LicenseStatus.EXPIRING_SOON)


class UsageService:
    """Service for recording and summarizing license usage."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_license_for_brand(self, user: User, license_id: str) -> License:
        license = await self.db.scalar(
            select(License).where(License.id == license_id, License.deleted_at.is_(None))
        )
        if not license:
            raise NotFoundError(f"License {license_id} not found", code="license.not_found")
        if not user.is_admin:
            brand_id = await self.db.scalar(select(Brand.id).where(Brand.user_id == user.id))
            if brand_id != license.brand_id:
                raise PermissionDeniedError("Only the licensee brand can report usage")
        return license

    async def record_usage(
        self,
        user: User,
        license_id: str,
        occurred_at: datetime,
        revenue_cents: int,
        usage_type: str = "sale",
        quantity: int = 1,
    ) -> LicenseUsageEvent:
        """Record a usage event; revenue feeds the royalty run for its period."""
        if revenue_cents < 0:
            raise ValidationError("Revenue must be non-negative")
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        license = await self._get_license_for_brand(user, license_id)
        if license.status not in REPORTABLE_STATUSES:
            raise ConflictError(
                f"Cannot report usage on a license in status {license.status.value}",
                code="license.not_active",
            )

        event = LicenseUsageEvent(
            license_id=license.id,
            occurred_at=to_naive_utc(occurred_at),
            usage_type=usage_type,
            quantity=quantity,
            revenue_cents=revenue_cents,
            reported_by=user.id,
        )
        self.db.add(event)
        await self.db.flush()

        logger.info(
            "usage_recorded",
            license_id=license.id,
            usage_type=usage_type,
            quantity=quantity,
            revenue_cents=revenue_cents,
        )
        return event

    async def revenue_in_period(self, license_id: str, start: datetime, end: datetime) -> int:
        total = await self.db.scalar(
            select(func.coalesce(func.sum(LicenseUsageEvent.revenue_cents), 0)).where(
                LicenseUsageEvent.license_id == license_id,
                LicenseUsageEvent.occurred_at >= start,
                LicenseUsageEvent.occurred_at <= end,
            )
        )
        return int(total or 0)

    async def usage_summary(
        self,
        license_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict:
        """Aggregate usage per type for a license, optionally within a date range."""
        start = to_naive_utc(start) if start else None
        end = to_naive_utc(end) if end else None
        if start and end and end < start:
            raise ValidationError("End date must not be before start date")

        conditions = [LicenseUsageEvent.license_id == license_id]
        if start:
            conditions.append(LicenseUsageEvent.occurred_at >= start)
        if end:
            conditions.append(LicenseUsageEvent.occurred_at <= end)

        result = await self.db.execute(
            select(
                LicenseUsageEvent.usage_type,
                func.count(),
                func.coalesce(func.sum(LicenseUsageEvent.quantity), 0),
                func.coalesce(func.sum(LicenseUsageEvent.revenue_cents), 0),
            )
            .where(*conditions)
            .group_by(LicenseUsageEvent.usage_type)
        )
        by_type = {
            usage_type: {"events": events, "quantity": int(quantity), "revenue_cents": int(revenue)}
            for usage_type, events, quantity, revenue in result.all()
        }
        return {
            "license_id": license_id,
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
            "total_events": sum(v["events"] for v in by_type.values()),
            "total_quantity": sum(v["quantity"] for v in by_type.values()),
            "total_revenue_cents": sum(v["revenue_cents"] for v in by_type.values()),
            "by_type": by_type,
        }
