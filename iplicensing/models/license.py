"""
License model for brand usage rights on an IP asset
"""
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from iplicensing.database import Base
from iplicensing.models.base import IdMixin, SoftDeleteMixin, TimestampMixin
from iplicensing.utils.time import utc_now


class LicenseStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    PENDING_SIGNATURE = "PENDING_SIGNATURE"
    ACTIVE = "ACTIVE"
    EXPIRING_SOON = "EXPIRING_SOON"
    EXPIRED = "EXPIRED"
    RENEWED = "RENEWED"
    TERMINATED = "TERMINATED"
    DISPUTED = "DISPUTED"
    SUSPENDED = "SUSPENDED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"


class LicenseType(str, Enum):
    EXCLUSIVE = "EXCLUSIVE"
    EXCLUSIVE_TERRITORY = "EXCLUSIVE_TERRITORY"
    NON_EXCLUSIVE = "NON_EXCLUSIVE"


class BillingFrequency(str, Enum):
    ONE_TIME = "ONE_TIME"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUALLY = "ANNUALLY"


# Allowed status transitions; anything not listed is rejected
STATUS_TRANSITIONS: dict[LicenseStatus, set[LicenseStatus]] = {
    LicenseStatus.DRAFT: {LicenseStatus.PENDING_APPROVAL, LicenseStatus.CANCELED},
    LicenseStatus.PENDING_APPROVAL: {
        LicenseStatus.PENDING_SIGNATURE,
        LicenseStatus.DRAFT,
        LicenseStatus.REJECTED,
        LicenseStatus.CANCELED,
    },
    LicenseStatus.PENDING_SIGNATURE: {
        LicenseStatus.ACTIVE,
        LicenseStatus.PENDING_APPROVAL,
        LicenseStatus.CANCELED,
    },
    LicenseStatus.ACTIVE: {
        LicenseStatus.EXPIRING_SOON,
        LicenseStatus.TERMINATED,
        LicenseStatus.DISPUTED,
        LicenseStatus.SUSPENDED,
    },
    LicenseStatus.EXPIRING_SOON: {
        LicenseStatus.EXPIRED,
        LicenseStatus.RENEWED,
        LicenseStatus.TERMINATED,
        LicenseStatus.ACTIVE,
        LicenseStatus.SUSPENDED,
    },
    LicenseStatus.EXPIRED: {LicenseStatus.RENEWED},
    LicenseStatus.DISPUTED: {
        LicenseStatus.ACTIVE,
        LicenseStatus.TERMINATED,
        LicenseStatus.SUSPENDED,
    },
    LicenseStatus.SUSPENDED: {LicenseStatus.ACTIVE, LicenseStatus.TERMINATED},
    LicenseStatus.RENEWED: set(),
    LicenseStatus.TERMINATED: set(),
    LicenseStatus.CANCELED: set(),
    LicenseStatus.REJECTED: set(),
}

# Statuses that still hold rights over the asset for conflict checks
BLOCKING_STATUSES = (
    LicenseStatus.PENDING_APPROVAL,
    LicenseStatus.PENDING_SIGNATURE,
    LicenseStatus.ACTIVE,
    LicenseStatus.EXPIRING_SOON,
    LicenseStatus.DISPUTED,
    LicenseStatus.SUSPENDED,
)


class License(IdMixin, TimestampMixin, SoftDeleteMixin, Base):
    """
    A brand's license to use an IP asset.

    Money is stored as integer cents and revenue share as basis points
    (10000 = 100%). `scope` holds media, placement, territory,
    exclusivity, cutdown and attribution terms.
    """

    __tablename__ = "licenses"

    ip_asset_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("ip_assets.id"),
        nullable=False,
        index=True,
    )
    brand_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("brands.id"),
        nullable=False,
        index=True,
    )
    project_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)

    license_type: Mapped[LicenseType] = mapped_column(
        SQLEnum(LicenseType),
        nullable=False,
        default=LicenseType.NON_EXCLUSIVE,
    )
    status: Mapped[LicenseStatus] = mapped_column(
        SQLEnum(LicenseStatus),
        nullable=False,
        default=LicenseStatus.DRAFT,
    )

    # Term
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Money
    fee_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    rev_share_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    billing_frequency: Mapped[BillingFrequency | None] = mapped_column(
        SQLEnum(BillingFrequency),
        nullable=True,
    )

    scope: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    # Renewals point at the license they extend
    parent_license_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("licenses.id"),
        nullable=True,
    )

    created_by: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)

    __table_args__ = (
        Index("idx_license_asset_status", "ip_asset_id", "status"),
        Index("idx_license_status", "status"),
        Index("idx_license_end_date", "end_date"),
    )

    def __repr__(self) -> str:
        return f"<License {self.id} {self.license_type.value} ({self.status.value})>"

    @property
    def fee_dollars(self) -> float:
        return self.fee_cents / 100

    @property
    def rev_share_percent(self) -> float:
        return self.rev_share_bps / 100

    @property
    def term_days(self) -> int:
        return max(1, (self.end_date - self.start_date).days)

    @property
    def territories(self) -> list[str]:
        geographic = (self.scope or {}).get("geographic") or {}
        return list(geographic.get("territories") or [])

    @property
    def days_remaining(self) -> int:
        delta = self.end_date - utc_now()
        return max(0, delta.days)


class LicenseStatusHistory(IdMixin, Base):
    """Audit row written on every license status change."""

    __tablename__ = "license_status_history"

    license_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("licenses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_status: Mapped[LicenseStatus] = mapped_column(SQLEnum(LicenseStatus), nullable=False)
    to_status: Mapped[LicenseStatus] = mapped_column(SQLEnum(LicenseStatus), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_by: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return f"<LicenseStatusHistory {self.from_status.value} -> {self.to_status.value}>"
