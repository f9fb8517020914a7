"""
Creator payouts and processed webhook events
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, BigInteger, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from iplicensing.database import Base
from iplicensing.models.base import IdMixin, TimestampMixin
from iplicensing.utils.time import utc_now


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Payout(IdMixin, TimestampMixin, Base):
    """
    A transfer of royalty earnings to a creator's Connect account.

    The idempotency key is sent to Stripe, so retrying a failed payout
    can never move the same money twice.
    """

    __tablename__ = "payouts"

    creator_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("creators.id"),
        nullable=False,
        index=True,
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[PayoutStatus] = mapped_column(
        SQLEnum(PayoutStatus),
        nullable=False,
        default=PayoutStatus.PENDING,
    )
    stripe_transfer_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    statement_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_payout_creator_status", "creator_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Payout {self.creator_id} {self.amount_cents}c ({self.status.value})>"


class ProcessedWebhookEvent(Base):
    """Stripe event ids already handled, used to drop replays."""

    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
