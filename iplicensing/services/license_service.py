"""
License management service
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.config import settings
from iplicensing.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from iplicensing.models.ip_asset import IpAsset, IpOwnership
from iplicensing.models.license import (
    BLOCKING_STATUSES,
    STATUS_TRANSITIONS,
    BillingFrequency,
    License,
    LicenseStatus,
    LicenseStatusHistory,
    LicenseType,
)
from iplicensing.models.notification import NotificationPriority, NotificationType
from iplicensing.models.user import Brand, Creator, User
from iplicensing.services.fee_calculator import FeeCalculation, calculate_fee
from iplicensing.services.notification_service import NotificationService
from iplicensing.services.revenue_share import RevenueShareValidation, validate_revenue_share
from iplicensing.utils.time import to_naive_utc, utc_now

logger = structlog.get_logger()

EDITABLE_STATUSES = (LicenseStatus.DRAFT, LicenseStatus.PENDING_APPROVAL)
DELETABLE_STATUSES = (LicenseStatus.DRAFT, LicenseStatus.CANCELED)
RENEWABLE_STATUSES = (LicenseStatus.ACTIVE, LicenseStatus.EXPIRING_SOON, LicenseStatus.EXPIRED)

# Status changes either party may make directly
PARTY_TRANSITIONS = {
    (LicenseStatus.DRAFT, LicenseStatus.PENDING_APPROVAL),
    (LicenseStatus.DRAFT, LicenseStatus.CANCELED),
    (LicenseStatus.PENDING_APPROVAL, LicenseStatus.CANCELED),
    (LicenseStatus.PENDING_SIGNATURE, LicenseStatus.CANCELED),
}


@dataclass
class LicenseConflict:
    reason: str
    license_id: str
    message: str


@dataclass
class LicenseListFilters:
    status: LicenseStatus | None = None
    ip_asset_id: str | None = None
    brand_id: str | None = None
    license_type: LicenseType | None = None
    expiring_within_days: int | None = None


def can_transition(current: LicenseStatus, new: LicenseStatus) -> bool:
    return new in STATUS_TRANSITIONS.get(current, set())


def _territories(scope: dict[str, Any] | None) -> set[str]:
    geographic = (scope or {}).get("geographic") or {}
    return set(geographic.get("territories") or [])


def territories_overlap(first: set[str], second: set[str]) -> bool:
    """Territories overlap when they share a code; GLOBAL (or no restriction) overlaps everything."""
    if not first or not second or "GLOBAL" in first or "GLOBAL" in second:
        return True
    return bool(first & second)


class LicenseService:
    """Service for managing licenses."""

    def __init__(self, db: AsyncSession, notifications: NotificationService | None = None):
        self.db = db
        self.notifications = notifications or NotificationService(db)

    async def _get_license(self, license_id: str) -> License:
        result = await self.db.execute(
            select(License).where(License.id == license_id, License.deleted_at.is_(None))
        )
        license = result.scalar_one_or_none()
        if not license:
            raise NotFoundError(f"License {license_id} not found", code="license.not_found")
        return license

    async def _brand_for_user(self, user: User) -> Brand | None:
        result = await self.db.execute(select(Brand).where(Brand.user_id == user.id))
        return result.scalar_one_or_none()

    async def _owner_user_ids(self, asset_id: str) -> list[str]:
        result = await self.db.execute(
            select(Creator.user_id)
            .join(IpOwnership, IpOwnership.creator_id == Creator.id)
            .where(IpOwnership.ip_asset_id == asset_id)
        )
        return list(dict.fromkeys(result.scalars().all()))

    async def _can_view(self, user: User, license: License) -> bool:
        if user.is_admin:
            return True
        brand = await self._brand_for_user(user)
        if brand and brand.id == license.brand_id:
            return True
        return user.id in await self._owner_user_ids(license.ip_asset_id)

    async def _notify_parties(
        self,
        license: License,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
    ) -> None:
        recipients = await self._owner_user_ids(license.ip_asset_id)
        brand_user_id = await self.db.scalar(select(Brand.user_id).where(Brand.id == license.brand_id))
        if brand_user_id:
            recipients.append(brand_user_id)
        for user_id in dict.fromkeys(recipients):
            await self.notifications.create(
                user_id=user_id,
                type=NotificationType.LICENSE,
                title=title,
                message=message,
                priority=priority,
                action_url=f"/licenses/{license.id}",
                metadata={"license_id": license.id, "status": license.status.value},
            )

    # Conflicts

    async def check_conflicts(
        self,
        ip_asset_id: str,
        license_type: LicenseType,
        start_date: datetime,
        end_date: datetime,
        territories: list[str] | None = None,
        brand_id: str | None = None,
        exclusivity: dict[str, Any] | None = None,
        exclude_license_id: str | None = None,
    ) -> list[LicenseConflict]:
        """Find licenses on the same asset whose rights collide with the requested ones."""
        start_date, end_date = to_naive_utc(start_date), to_naive_utc(end_date)
        conditions = [
            License.ip_asset_id == ip_asset_id,
            License.status.in_(BLOCKING_STATUSES),
            License.deleted_at.is_(None),
            License.start_date <= end_date,
            License.end_date >= start_date,
        ]
        if exclude_license_id:
            conditions.append(License.id != exclude_license_id)

        result = await self.db.execute(select(License).where(*conditions))
        existing_licenses = list(result.scalars().all())

        requested_territories = set(territories or [])
        requested_category = (exclusivity or {}).get("category")
        requested_competitors = set((exclusivity or {}).get("competitors") or [])

        conflicts: list[LicenseConflict] = []
        for existing in existing_licenses:
            if LicenseType.EXCLUSIVE in (license_type, existing.license_type):
                conflicts.append(LicenseConflict(
                    "EXCLUSIVE_OVERLAP",
                    existing.id,
                    "An exclusive license overlaps this period",
                ))
                continue

            if (
                LicenseType.EXCLUSIVE_TERRITORY in (license_type, existing.license_type)
                and territories_overlap(requested_territories, set(existing.territories))
            ):
                conflicts.append(LicenseConflict(
                    "TERRITORY_OVERLAP",
                    existing.id,
                    "A territory-exclusive license covers the same territory",
                ))
                continue

            existing_exclusivity = (existing.scope or {}).get("exclusivity") or {}
            existing_category = existing_exclusivity.get("category")
            same_category = bool(requested_category) and requested_category == existing_category
            if brand_id and same_category and (
                brand_id in (existing_exclusivity.get("competitors") or [])
                or existing.brand_id in requested_competitors
            ):
                conflicts.append(LicenseConflict(
                    "COMPETITOR_BLOCKED",
                    existing.id,
                    "A competitor holds category exclusivity on this asset",
                ))
                continue

            if brand_id and existing.brand_id == brand_id:
                conflicts.append(LicenseConflict(
                    "DATE_OVERLAP",
                    existing.id,
                    "This brand already holds a license on the asset for overlapping dates",
                ))

        return conflicts

    # CRUD

    async def create_license(
        self,
        user: User,
        ip_asset_id: str,
        brand_id: str,
        license_type: LicenseType,
        start_date: datetime,
        end_date: datetime,
        fee_cents: int,
        rev_share_bps: int = 0,
        scope: dict[str, Any] | None = None,
        payment_terms: str | None = None,
        billing_frequency: BillingFrequency | None = None,
        auto_renew: bool = False,
        project_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> License:
        start_date, end_date = to_naive_utc(start_date), to_naive_utc(end_date)
        if end_date <= start_date:
            raise ValidationError("End date must be after start date")
        if fee_cents < 0:
            raise ValidationError("Fee must be non-negative")
        if rev_share_bps < 0 or rev_share_bps > 10000:
            raise ValidationError("Revenue share must be between 0 and 10000 basis points")

        asset = await self.db.scalar(
            select(IpAsset).where(IpAsset.id == ip_asset_id, IpAsset.deleted_at.is_(None))
        )
        if not asset:
            raise NotFoundError(f"Asset {ip_asset_id} not found", code="asset.not_found")
        brand = await self.db.get(Brand, brand_id)
        if not brand:
            raise NotFoundError(f"Brand {brand_id} not found", code="brand.not_found")
        if not user.is_admin and brand.user_id != user.id:
            raise PermissionDeniedError("Cannot create licenses for another brand")

        scope = scope or {}
        conflicts = await self.check_conflicts(
            ip_asset_id,
            license_type,
            start_date,
            end_date,
            territories=list(_territories(scope)),
            brand_id=brand_id,
            exclusivity=scope.get("exclusivity"),
        )
        if conflicts:
            raise ConflictError(
                "License conflicts with existing licenses",
                code="license.conflict",
                meta={"conflicts": [c.__dict__ for c in conflicts]},
            )

        license = License(
            ip_asset_id=ip_asset_id,
            brand_id=brand_id,
            project_id=project_id,
            license_type=license_type,
            status=LicenseStatus.DRAFT,
            start_date=start_date,
            end_date=end_date,
            fee_cents=fee_cents,
            rev_share_bps=rev_share_bps,
            scope=scope,
            payment_terms=payment_terms,
            billing_frequency=billing_frequency,
            auto_renew=auto_renew,
            metadata_=metadata,
            created_by=user.id,
        )
        self.db.add(license)
        await self.db.flush()

        logger.info(
            "license_created",
            license_id=license.id,
            ip_asset_id=ip_asset_id,
            brand_id=brand_id,
            license_type=license_type.value,
            fee_cents=fee_cents,
        )
        return license

    async def get_license(self, user: User, license_id: str) -> License:
        license = await self._get_license(license_id)
        if not await self._can_view(user, license):
            raise PermissionDeniedError(f"Access denied to license {license_id}", code="license.access_denied")
        return license

    async def list_licenses(
        self,
        user: User,
        filters: LicenseListFilters | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[License], dict[str, int]]:
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if page_size < 1 or page_size > 100:
            raise ValidationError("Page size must be between 1 and 100")

        filters = filters or LicenseListFilters()
        conditions = [License.deleted_at.is_(None)]

        if not user.is_admin:
            brand = await self._brand_for_user(user)
            visibility = []
            if brand:
                visibility.append(License.brand_id == brand.id)
            owned_assets = (
                select(IpOwnership.ip_asset_id)
                .join(Creator, Creator.id == IpOwnership.creator_id)
                .where(Creator.user_id == user.id)
            )
            visibility.append(License.ip_asset_id.in_(owned_assets))
            conditions.append(or_(*visibility))

        if filters.status:
            conditions.append(License.status == filters.status)
        if filters.ip_asset_id:
            conditions.append(License.ip_asset_id == filters.ip_asset_id)
        if filters.brand_id:
            conditions.append(License.brand_id == filters.brand_id)
        if filters.license_type:
            conditions.append(License.license_type == filters.license_type)
        if filters.expiring_within_days is not None:
            now = utc_now()
            conditions.append(License.end_date >= now)
            conditions.append(License.end_date <= now + timedelta(days=filters.expiring_within_days))

        total = int(await self.db.scalar(select(func.count()).select_from(License).where(*conditions)) or 0)
        result = await self.db.execute(
            select(License)
            .where(*conditions)
            .order_by(License.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        meta = {
            "page": page,
            "page_size": page_size,
            "total": total,
            "total_pages": math.ceil(total / page_size) if total else 0,
        }
        return list(result.scalars().all()), meta

    async def update_license(self, user: User, license_id: str, **changes: Any) -> License:
        license = await self.get_license(user, license_id)
        if license.status not in EDITABLE_STATUSES:
            raise ConflictError(
                f"License in status {license.status.value} cannot be edited",
                code="license.not_editable",
            )

        for key in ("start_date", "end_date"):
            if changes.get(key) is not None:
                changes[key] = to_naive_utc(changes[key])
        start_date = changes.get("start_date") or license.start_date
        end_date = changes.get("end_date") or license.end_date
        if end_date <= start_date:
            raise ValidationError("End date must be after start date")
        fee_cents = changes.get("fee_cents")
        if fee_cents is not None and fee_cents < 0:
            raise ValidationError("Fee must be non-negative")
        rev_share_bps = changes.get("rev_share_bps")
        if rev_share_bps is not None and (rev_share_bps < 0 or rev_share_bps > 10000):
            raise ValidationError("Revenue share must be between 0 and 10000 basis points")

        allowed = {
            "start_date", "end_date", "fee_cents", "rev_share_bps", "scope",
            "payment_terms", "billing_frequency", "auto_renew",
        }
        for key, value in changes.items():
            if key in allowed and value is not None:
                setattr(license, key, value)
        if changes.get("metadata") is not None:
            license.metadata_ = {**(license.metadata_ or {}), **changes["metadata"]}

        if {"start_date", "end_date", "scope"} & {k for k, v in changes.items() if v is not None}:
            conflicts = await self.check_conflicts(
                license.ip_asset_id,
                license.license_type,
                license.start_date,
                license.end_date,
                territories=license.territories,
                brand_id=license.brand_id,
                exclusivity=(license.scope or {}).get("exclusivity"),
                exclude_license_id=license.id,
            )
            if conflicts:
                raise ConflictError(
                    "License conflicts with existing licenses",
                    code="license.conflict",
                    meta={"conflicts": [c.__dict__ for c in conflicts]},
                )

        await self.db.flush()
        logger.info("license_updated", license_id=license.id, fields=sorted(changes))
        return license

    async def delete_license(self, user: User, license_id: str) -> None:
        license = await self.get_license(user, license_id)
        if license.status not in DELETABLE_STATUSES:
            raise ConflictError(
                f"License in status {license.status.value} cannot be deleted",
                code="license.not_deletable",
            )
        license.deleted_at = utc_now()
        await self.db.flush()
        logger.info("license_deleted", license_id=license_id, user_id=user.id)

    # Status

    async def _apply_transition(
        self,
        license: License,
        new_status: LicenseStatus,
        changed_by: str | None,
        reason: str | None = None,
    ) -> License:
        if not can_transition(license.status, new_status):
            raise ValidationError(
                f"Invalid status transition from {license.status.value} to {new_status.value}",
                code="license.invalid_transition",
            )

        old_status = license.status
        license.status = new_status
        if new_status == LicenseStatus.ACTIVE and license.signed_at is None:
            license.signed_at = utc_now()

        self.db.add(LicenseStatusHistory(
            license_id=license.id,
            from_status=old_status,
            to_status=new_status,
            reason=reason,
            changed_by=changed_by,
            changed_at=utc_now(),
        ))
        await self.db.flush()

        logger.info(
            "license_status_changed",
            license_id=license.id,
            old_status=old_status.value,
            new_status=new_status.value,
        )
        return license

    async def transition_status(
        self,
        user: User,
        license_id: str,
        new_status: LicenseStatus,
        reason: str | None = None,
    ) -> License:
        """Change a license's status.

        Approval and signing go through `approve` and `sign` so their role
        checks apply. Parties may submit a draft or cancel a license that is
        not yet active; every other change is reserved for admins.
        """
        license = await self.get_license(user, license_id)
        if new_status == LicenseStatus.PENDING_SIGNATURE:
            return await self.approve(user, license_id)
        if new_status == LicenseStatus.ACTIVE and license.status == LicenseStatus.PENDING_SIGNATURE:
            return await self.sign(user, license_id)
        if not user.is_admin and (license.status, new_status) not in PARTY_TRANSITIONS:
            raise PermissionDeniedError(
                f"Only an admin can move a license from {license.status.value} to {new_status.value}",
                code="license.transition_forbidden",
            )

        await self._apply_transition(license, new_status, user.id, reason)
        await self._notify_parties(
            license,
            "License status updated",
            f"License {license.id} is now {new_status.value}",
        )
        return license

    async def approve(self, user: User, license_id: str) -> License:
        license = await self.get_license(user, license_id)
        if not user.is_admin and user.id not in await self._owner_user_ids(license.ip_asset_id):
            raise PermissionDeniedError("Only the asset owner or an admin can approve a license")

        await self._apply_transition(license, LicenseStatus.PENDING_SIGNATURE, user.id, "approved")
        await self._notify_parties(
            license,
            "License approved",
            "The license was approved and is awaiting signature",
        )
        return license

    async def sign(self, user: User, license_id: str) -> License:
        license = await self.get_license(user, license_id)
        brand = await self._brand_for_user(user)
        if not user.is_admin and not (brand and brand.id == license.brand_id):
            raise PermissionDeniedError("Only the licensee brand can sign a license")

        await self._apply_transition(license, LicenseStatus.ACTIVE, user.id, "signed")
        if license.fee_cents and brand:
            brand.total_spent_cents += license.fee_cents
            await self.db.flush()
        await self._notify_parties(
            license,
            "License signed",
            "The license is now active",
            priority=NotificationPriority.HIGH,
        )
        return license

    async def terminate(self, user: User, license_id: str, reason: str) -> License:
        if not reason or not reason.strip():
            raise ValidationError("A termination reason is required")
        license = await self.get_license(user, license_id)
        await self._apply_transition(license, LicenseStatus.TERMINATED, user.id, reason)
        await self._notify_parties(
            license,
            "License terminated",
            f"The license was terminated: {reason}",
            priority=NotificationPriority.HIGH,
        )
        return license

    # Renewals

    async def generate_renewal(
        self,
        user: User,
        license_id: str,
        duration_days: int | None = None,
        fee_adjustment_percent: float = 0,
        rev_share_adjustment_bps: int = 0,
    ) -> License:
        source = await self.get_license(user, license_id)
        if source.status not in RENEWABLE_STATUSES:
            raise ConflictError(
                f"License in status {source.status.value} cannot be renewed",
                code="license.not_renewable",
            )
        if duration_days is not None and duration_days < 1:
            raise ValidationError("Renewal duration must be at least one day")

        duration = timedelta(days=duration_days) if duration_days else source.end_date - source.start_date
        start_date = source.end_date + timedelta(days=1)
        end_date = start_date + duration

        renewal = License(
            ip_asset_id=source.ip_asset_id,
            brand_id=source.brand_id,
            project_id=source.project_id,
            license_type=source.license_type,
            status=LicenseStatus.DRAFT,
            start_date=start_date,
            end_date=end_date,
            fee_cents=max(0, round(source.fee_cents * (1 + fee_adjustment_percent / 100))),
            rev_share_bps=min(10000, max(0, source.rev_share_bps + rev_share_adjustment_bps)),
            scope=dict(source.scope or {}),
            payment_terms=source.payment_terms,
            billing_frequency=source.billing_frequency,
            auto_renew=source.auto_renew,
            metadata_={"renewal_of": source.id},
            parent_license_id=source.id,
            created_by=user.id,
        )
        self.db.add(renewal)
        await self.db.flush()

        logger.info(
            "license_renewal_generated",
            license_id=renewal.id,
            parent_license_id=source.id,
            fee_cents=renewal.fee_cents,
        )
        return renewal

    # Pricing

    async def estimate_fee(
        self,
        ip_asset_id: str,
        license_type: LicenseType,
        scope: dict[str, Any],
        duration_days: int,
        brand_id: str | None = None,
    ) -> FeeCalculation:
        asset = await self.db.scalar(
            select(IpAsset).where(IpAsset.id == ip_asset_id, IpAsset.deleted_at.is_(None))
        )
        if not asset:
            raise NotFoundError(f"Asset {ip_asset_id} not found", code="asset.not_found")
        if duration_days < 1:
            raise ValidationError("Duration must be at least one day")

        total_spent = 0
        if brand_id:
            brand = await self.db.get(Brand, brand_id)
            total_spent = brand.total_spent_cents if brand else 0
        return calculate_fee(asset.type, license_type, scope, duration_days, total_spent)

    async def validate_revenue_share(
        self,
        ip_asset_id: str,
        fee_cents: int,
        rev_share_bps: int,
    ) -> RevenueShareValidation:
        moment = utc_now()
        result = await self.db.execute(
            select(IpOwnership.share_bps).where(
                IpOwnership.ip_asset_id == ip_asset_id,
                IpOwnership.start_date <= moment,
                or_(IpOwnership.end_date.is_(None), IpOwnership.end_date >= moment),
            )
        )
        return validate_revenue_share(fee_cents, rev_share_bps, list(result.scalars().all()))

    # Stats and scheduled maintenance

    async def get_stats(self) -> dict[str, Any]:
        result = await self.db.execute(
            select(License.status, func.count())
            .where(License.deleted_at.is_(None))
            .group_by(License.status)
        )
        by_status = {status.value: count for status, count in result.all()}

        active_statuses = (LicenseStatus.ACTIVE, LicenseStatus.EXPIRING_SOON)
        active_revenue = await self.db.scalar(
            select(func.coalesce(func.sum(License.fee_cents), 0))
            .where(License.status.in_(active_statuses), License.deleted_at.is_(None))
        )
        now = utc_now()
        expiring = await self.db.scalar(
            select(func.count())
            .select_from(License)
            .where(
                License.status.in_(active_statuses),
                License.deleted_at.is_(None),
                License.end_date >= now,
                License.end_date <= now + timedelta(days=settings.license_expiring_window_days),
            )
        )
        average_fee = await self.db.scalar(
            select(func.avg(License.fee_cents)).where(License.deleted_at.is_(None))
        )

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "active_revenue_cents": int(active_revenue or 0),
            "expiring_in_30_days": int(expiring or 0),
            "average_fee_cents": round(float(average_fee or 0)),
        }

    async def mark_expiring(self, window_days: int | None = None) -> int:
        """Move ACTIVE licenses ending within the window to EXPIRING_SOON."""
        now = utc_now()
        window = window_days if window_days is not None else settings.license_expiring_window_days
        result = await self.db.execute(
            select(License).where(
                License.status == LicenseStatus.ACTIVE,
                License.deleted_at.is_(None),
                License.end_date >= now,
                License.end_date <= now + timedelta(days=window),
            )
        )
        licenses = list(result.scalars().all())
        for license in licenses:
            await self._apply_transition(license, LicenseStatus.EXPIRING_SOON, None, "expiry window reached")
            await self._notify_parties(
                license,
                "License expiring soon",
                f"License {license.id} expires in {license.days_remaining} days",
                priority=NotificationPriority.HIGH,
            )

        logger.info("licenses_marked_expiring", count=len(licenses))
        return len(licenses)

    async def expire_licenses(self) -> int:
        """Expire licenses whose end date has passed."""
        now = utc_now()
        result = await self.db.execute(
            select(License).where(
                License.status.in_([LicenseStatus.ACTIVE, LicenseStatus.EXPIRING_SOON]),
                License.deleted_at.is_(None),
                License.end_date < now,
            )
        )
        expired = 0
        for license in result.scalars().all():
            if license.status == LicenseStatus.ACTIVE:
                await self._apply_transition(license, LicenseStatus.EXPIRING_SOON, None, "end date passed")
            await self._apply_transition(license, LicenseStatus.EXPIRED, None, "end date passed")
            expired += 1

        logger.info("licenses_expired", count=expired)
        return expired
