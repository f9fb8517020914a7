"""
Usage events reported against a license
"""
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from iplicensing.database import Base
from iplicensing.models.base import IdMixin, TimestampMixin


class LicenseUsageEvent(IdMixin, TimestampMixin, Base):
    """
    A usage report for a license.

    Brands report impressions, sales or other usage together with the
    revenue attributable to it. Reported revenue feeds the royalty run
    for the period the event falls in.
    """

    __tablename__ = "license_usage_events"

    license_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("licenses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    usage_type: Mapped[str] = mapped_column(String(50), nullable=False, default="sale")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    revenue_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    reported_by: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)

    __table_args__ = (
        Index("idx_usage_license_occurred", "license_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<LicenseUsageEvent {self.license_id} {self.usage_type} {self.revenue_cents}c>"
