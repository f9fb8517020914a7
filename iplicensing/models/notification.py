"""
In-app notifications and per-user delivery preferences
"""
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Enum as SQLEnum, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from iplicensing.database import Base
from iplicensing.models.base import IdMixin, TimestampMixin
from iplicensing.utils.time import utc_now


class NotificationType(str, Enum):
    LICENSE = "LICENSE"
    PAYOUT = "PAYOUT"
    ROYALTY = "ROYALTY"
    MESSAGE = "MESSAGE"
    SYSTEM = "SYSTEM"
    ASSET = "ASSET"


class NotificationPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class DigestFrequency(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    NEVER = "NEVER"


class Notification(IdMixin, Base):
    __tablename__ = "notifications"

    user_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[NotificationType] = mapped_column(SQLEnum(NotificationType), nullable=False)
    priority: Mapped[NotificationPriority] = mapped_column(
        SQLEnum(NotificationPriority),
        nullable=False,
        default=NotificationPriority.MEDIUM,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    action_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_notification_user_created", "user_id", "created_at"),
        Index("idx_notification_user_read", "user_id", "read"),
    )

    def __repr__(self) -> str:
        return f"<Notification {self.type.value} to {self.user_id}>"


class NotificationPreference(IdMixin, TimestampMixin, Base):
    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    enabled_types: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=lambda: [t.value for t in NotificationType],
    )
    digest_frequency: Mapped[DigestFrequency] = mapped_column(
        SQLEnum(DigestFrequency),
        nullable=False,
        default=DigestFrequency.IMMEDIATE,
    )
    email_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def allows(self, notification_type: NotificationType) -> bool:
        return notification_type.value in (self.enabled_types or [])
