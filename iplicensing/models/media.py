"""
Platform media library model
"""
from enum import Enum

from sqlalchemy import JSON, BigInteger, Enum as SQLEnum, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from iplicensing.database import Base
from iplicensing.models.base import IdMixin, SoftDeleteMixin, TimestampMixin


class MediaCategory(str, Enum):
    BRAND_ASSETS = "BRAND_ASSETS"
    MARKETING = "MARKETING"
    TEMPLATES = "TEMPLATES"
    STOCK = "STOCK"
    UI_ELEMENTS = "UI_ELEMENTS"
    OTHER = "OTHER"


class MediaStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class MediaUsage(str, Enum):
    PUBLIC = "PUBLIC"
    INTERNAL = "INTERNAL"
    RESTRICTED = "RESTRICTED"


class MediaItem(IdMixin, TimestampMixin, SoftDeleteMixin, Base):
    """An admin-managed file in the shared media library."""

    __tablename__ = "media_items"

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    alt_text: Mapped[str | None] = mapped_column(String(500), nullable=True)
    category: Mapped[MediaCategory] = mapped_column(
        SQLEnum(MediaCategory),
        nullable=False,
        default=MediaCategory.OTHER,
    )
    status: Mapped[MediaStatus] = mapped_column(
        SQLEnum(MediaStatus),
        nullable=False,
        default=MediaStatus.DRAFT,
    )
    usage: Mapped[MediaUsage] = mapped_column(
        SQLEnum(MediaUsage),
        nullable=False,
        default=MediaUsage.INTERNAL,
    )

    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(127), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    uploaded_by: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("users.id"),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_media_category_status", "category", "status"),
    )

    def __repr__(self) -> str:
        return f"<MediaItem {self.title} ({self.status.value})>"
