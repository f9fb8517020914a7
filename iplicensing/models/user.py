"""
User accounts and the creator / brand profiles attached to them
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Enum as SQLEnum, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from iplicensing.database import Base
from iplicensing.models.base import IdMixin, TimestampMixin


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    CREATOR = "CREATOR"
    BRAND = "BRAND"
    VIEWER = "VIEWER"


class OnboardingStatus(str, Enum):
    """Stripe Connect onboarding progress."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class User(IdMixin, TimestampMixin, Base):
    """
    An authenticated platform account.

    Creators own IP and receive royalties, brands license IP, admins
    operate the platform.
    """

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole),
        nullable=False,
        default=UserRole.VIEWER,
    )

    # Account status
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Refresh token for token rotation
    refresh_token_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    creator: Mapped[Optional["Creator"]] = relationship(back_populates="user", uselist=False)
    brand: Mapped[Optional["Brand"]] = relationship(back_populates="user", uselist=False)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role.value})>"

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Creator(IdMixin, TimestampMixin, Base):
    """Creator profile, the payee side of royalties and payouts."""

    __tablename__ = "creators"

    user_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    stage_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Stripe Connect
    stripe_account_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
    )
    onboarding_status: Mapped[OnboardingStatus | None] = mapped_column(
        SQLEnum(OnboardingStatus),
        nullable=True,
    )

    user: Mapped[User] = relationship(back_populates="creator")

    def __repr__(self) -> str:
        return f"<Creator {self.stage_name}>"


class Brand(IdMixin, TimestampMixin, Base):
    """Brand profile, the licensee side."""

    __tablename__ = "brands"

    user_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Lifetime spend drives the market adjustment on license fees
    total_spent_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    user: Mapped[User] = relationship(back_populates="brand")

    def __repr__(self) -> str:
        return f"<Brand {self.company_name}>"
