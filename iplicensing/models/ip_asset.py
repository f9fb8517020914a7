"""
IP asset and ownership models
"""
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from iplicensing.database import Base
from iplicensing.models.base import IdMixin, SoftDeleteMixin, TimestampMixin
from iplicensing.utils.time import utc_now


class AssetType(str, Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    DOCUMENT = "DOCUMENT"
    MODEL_3D = "MODEL_3D"
    OTHER = "OTHER"


class AssetStatus(str, Enum):
    DRAFT = "DRAFT"
    PROCESSING = "PROCESSING"
    REVIEW = "REVIEW"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"
    ARCHIVED = "ARCHIVED"


class ScanStatus(str, Enum):
    PENDING = "PENDING"
    SCANNING = "SCANNING"
    CLEAN = "CLEAN"
    INFECTED = "INFECTED"
    ERROR = "ERROR"


class OwnershipType(str, Enum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"
    DERIVATIVE = "DERIVATIVE"


class IpAsset(IdMixin, TimestampMixin, SoftDeleteMixin, Base):
    """
    A piece of creator IP that brands can license.

    Derivatives point at their source through `parent_asset_id`.
    """

    __tablename__ = "ip_assets"

    project_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[AssetType] = mapped_column(SQLEnum(AssetType), nullable=False)

    # File
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(127), nullable=False)
    thumbnail_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    preview_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    parent_asset_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("ip_assets.id"),
        nullable=True,
        index=True,
    )
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    status: Mapped[AssetStatus] = mapped_column(
        SQLEnum(AssetStatus),
        nullable=False,
        default=AssetStatus.DRAFT,
    )
    scan_status: Mapped[ScanStatus] = mapped_column(
        SQLEnum(ScanStatus),
        nullable=False,
        default=ScanStatus.PENDING,
    )

    created_by: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    updated_by: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)

    ownerships: Mapped[list["IpOwnership"]] = relationship(
        back_populates="asset",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_ip_asset_status", "status"),
        Index("idx_ip_asset_type", "type"),
    )

    def __repr__(self) -> str:
        return f"<IpAsset {self.title} ({self.status.value})>"


class IpOwnership(IdMixin, TimestampMixin, Base):
    """A creator's share of an asset, in basis points."""

    __tablename__ = "ip_ownerships"

    ip_asset_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("ip_assets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    creator_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("creators.id"),
        nullable=False,
        index=True,
    )
    share_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    ownership_type: Mapped[OwnershipType] = mapped_column(
        SQLEnum(OwnershipType),
        nullable=False,
        default=OwnershipType.SECONDARY,
    )
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    contract_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)

    asset: Mapped[IpAsset] = relationship(back_populates="ownerships")

    def __repr__(self) -> str:
        return f"<IpOwnership asset={self.ip_asset_id} creator={self.creator_id} {self.share_bps}bps>"

    def is_active_at(self, moment: datetime) -> bool:
        if self.start_date and self.start_date > moment:
            return False
        return self.end_date is None or self.end_date >= moment
