"""
Royalty run, statement and line models
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
from iplicensing.models.base import IdMixin, TimestampMixin


class RoyaltyRunStatus(str, Enum):
    DRAFT = "DRAFT"
    CALCULATING = "CALCULATING"
    CALCULATED = "CALCULATED"
    LOCKED = "LOCKED"
    FAILED = "FAILED"


class RoyaltyStatementStatus(str, Enum):
    PENDING = "PENDING"
    REVIEWED = "REVIEWED"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"
    PAID = "PAID"


class RoyaltyLineType(str, Enum):
    EARNING = "EARNING"
    CARRYOVER = "CARRYOVER"
    THRESHOLD_NOTE = "THRESHOLD_NOTE"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"
    DISPUTE_RESOLUTION = "DISPUTE_RESOLUTION"


class RoyaltyRun(IdMixin, TimestampMixin, Base):
    """One royalty calculation over a period."""

    __tablename__ = "royalty_runs"

    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[RoyaltyRunStatus] = mapped_column(
        SQLEnum(RoyaltyRunStatus),
        nullable=False,
        default=RoyaltyRunStatus.DRAFT,
    )
    total_revenue_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_royalties_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_royalty_run_period", "period_start", "period_end"),
    )

    def __repr__(self) -> str:
        return f"<RoyaltyRun {self.period_start.date()}..{self.period_end.date()} ({self.status.value})>"


class RoyaltyStatement(IdMixin, TimestampMixin, Base):
    """A creator's earnings for one run."""

    __tablename__ = "royalty_statements"

    royalty_run_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("royalty_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    creator_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("creators.id"),
        nullable=False,
        index=True,
    )
    total_earnings_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[RoyaltyStatementStatus] = mapped_column(
        SQLEnum(RoyaltyStatementStatus),
        nullable=False,
        default=RoyaltyStatementStatus.PENDING,
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Held statements stay below the payout minimum until a later run carries them
    below_threshold: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Set when the balance has been carried into a later statement
    carried_into_statement_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)

    __table_args__ = (
        Index("idx_statement_creator_status", "creator_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<RoyaltyStatement {self.creator_id} {self.total_earnings_cents}c ({self.status.value})>"


class RoyaltyLine(IdMixin, Base):
    __tablename__ = "royalty_lines"

    royalty_statement_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("royalty_statements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    line_type: Mapped[RoyaltyLineType] = mapped_column(
        SQLEnum(RoyaltyLineType),
        nullable=False,
        default=RoyaltyLineType.EARNING,
    )
    license_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    ip_asset_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    revenue_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    share_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    calculated_royalty_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    period_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<RoyaltyLine {self.line_type.value} {self.calculated_royalty_cents}c>"
