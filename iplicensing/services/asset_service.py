"""
IP asset management service
"""
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.auth.signed_urls import build_signed_url
from iplicensing.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from iplicensing.models.ip_asset import AssetStatus, AssetType, IpAsset, IpOwnership, OwnershipType
from iplicensing.models.license import License, LicenseStatus
from iplicensing.models.user import Creator, User
from iplicensing.utils.time import utc_now

logger = structlog.get_logger()

MAX_FILE_SIZE = 100 * 1024 * 1024
FILE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\-_. ]+$")
MAX_BULK_STATUS_UPDATE = 100

ALLOWED_MIME_TYPES: dict[str, AssetType] = {
    "image/jpeg": AssetType.IMAGE,
    "image/png": AssetType.IMAGE,
    "image/gif": AssetType.IMAGE,
    "image/webp": AssetType.IMAGE,
    "image/svg+xml": AssetType.IMAGE,
    "image/tiff": AssetType.IMAGE,
    "video/mp4": AssetType.VIDEO,
    "video/quicktime": AssetType.VIDEO,
    "video/x-msvideo": AssetType.VIDEO,
    "video/x-matroska": AssetType.VIDEO,
    "video/webm": AssetType.VIDEO,
    "audio/mpeg": AssetType.AUDIO,
    "audio/wav": AssetType.AUDIO,
    "audio/ogg": AssetType.AUDIO,
    "audio/flac": AssetType.AUDIO,
    "audio/aac": AssetType.AUDIO,
    "application/pdf": AssetType.DOCUMENT,
    "application/msword": AssetType.DOCUMENT,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": AssetType.DOCUMENT,
    "text/plain": AssetType.DOCUMENT,
    "model/gltf-binary": AssetType.MODEL_3D,
    "model/gltf+json": AssetType.MODEL_3D,
    "model/obj": AssetType.MODEL_3D,
}

STATUS_TRANSITIONS: dict[AssetStatus, set[AssetStatus]] = {
    AssetStatus.DRAFT: {AssetStatus.REVIEW, AssetStatus.ARCHIVED},
    AssetStatus.PROCESSING: {AssetStatus.DRAFT, AssetStatus.REVIEW},
    AssetStatus.REVIEW: {AssetStatus.APPROVED, AssetStatus.REJECTED, AssetStatus.DRAFT},
    AssetStatus.APPROVED: {AssetStatus.PUBLISHED, AssetStatus.ARCHIVED},
    AssetStatus.PUBLISHED: {AssetStatus.ARCHIVED},
    AssetStatus.REJECTED: {AssetStatus.DRAFT},
    AssetStatus.ARCHIVED: set(),
}

SORT_FIELDS = {
    "created_at": IpAsset.created_at,
    "updated_at": IpAsset.updated_at,
    "title": IpAsset.title,
}


def validate_upload(file_name: str, file_size: int, mime_type: str) -> AssetType:
    """Validate an upload request and return the asset type implied by its MIME type."""
    if not file_name or len(file_name) > 255:
        raise ValidationError("File name must be 1-255 characters")
    if not FILE_NAME_PATTERN.match(file_name):
        raise ValidationError("Invalid file name characters")
    if file_size <= 0:
        raise ValidationError("File size must be positive")
    if file_size > MAX_FILE_SIZE:
        raise ValidationError("File size exceeds 100MB limit")
    asset_type = ALLOWED_MIME_TYPES.get(mime_type.lower())
    if asset_type is None:
        raise ValidationError(f"File type not supported: {mime_type}")
    return asset_type


def can_transition(current: AssetStatus, new: AssetStatus) -> bool:
    return new in STATUS_TRANSITIONS.get(current, set())


@dataclass
class AssetListFilters:
    project_id: str | None = None
    type: AssetType | None = None
    status: AssetStatus | None = None
    created_by: str | None = None
    search: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None


class AssetService:
    """Service for IP assets and their ownership."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_asset(self, asset_id: str) -> IpAsset:
        result = await self.db.execute(
            select(IpAsset).where(IpAsset.id == asset_id, IpAsset.deleted_at.is_(None))
        )
        asset = result.scalar_one_or_none()
        if not asset:
            raise NotFoundError(f"Asset {asset_id} not found", code="asset.not_found")
        return asset

    async def _creator_id_for(self, user: User) -> str | None:
        return await self.db.scalar(select(Creator.id).where(Creator.user_id == user.id))

    async def _is_owner(self, user: User, asset_id: str) -> bool:
        creator_id = await self._creator_id_for(user)
        if not creator_id:
            return False
        count = await self.db.scalar(
            select(func.count())
            .select_from(IpOwnership)
            .where(IpOwnership.ip_asset_id == asset_id, IpOwnership.creator_id == creator_id)
        )
        return bool(count)

    def _ensure_can_edit(self, user: User, asset: IpAsset) -> None:
        if not user.is_admin and asset.created_by != user.id:
            raise PermissionDeniedError(f"Access denied to asset {asset.id}", code="asset.access_denied")

    async def initiate_upload(
        self,
        user: User,
        file_name: str,
        file_size: int,
        mime_type: str,
        project_id: str | None = None,
    ) -> tuple[IpAsset, str]:
        """Create a DRAFT asset and return it with a signed upload URL."""
        asset_type = validate_upload(file_name, file_size, mime_type)
        storage_key = f"assets/{user.id}/{uuid4()}/{file_name.replace(' ', '_')}"

        asset = IpAsset(
            project_id=project_id,
            title=file_name,
            type=asset_type,
            storage_key=storage_key,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type.lower(),
            status=AssetStatus.DRAFT,
            created_by=user.id,
        )
        self.db.add(asset)
        await self.db.flush()

        logger.info("asset_upload_initiated", asset_id=asset.id, user_id=user.id, type=asset_type.value)
        return asset, build_signed_url(storage_key, purpose="upload")

    async def confirm_upload(
        self,
        user: User,
        asset_id: str,
        title: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> IpAsset:
        asset = await self._get_asset(asset_id)
        self._ensure_can_edit(user, asset)
        if asset.status != AssetStatus.DRAFT:
            raise ConflictError(f"Asset {asset_id} upload already confirmed", code="asset.invalid_status")
        if not title or len(title) > 255:
            raise ValidationError("Title must be 1-255 characters")
        if description and len(description) > 2000:
            raise ValidationError("Description too long")

        asset.title = title
        asset.description = description
        asset.metadata_ = metadata
        asset.status = AssetStatus.PROCESSING
        asset.updated_by = user.id
        await self.db.flush()

        logger.info("asset_upload_confirmed", asset_id=asset.id)
        return asset

    async def list_assets(
        self,
        user: User,
        filters: AssetListFilters | None = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[IpAsset], int]:
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if page_size < 1 or page_size > 100:
            raise ValidationError("Page size must be between 1 and 100")
        if sort_by not in SORT_FIELDS:
            raise ValidationError(f"Cannot sort by {sort_by}")

        filters = filters or AssetListFilters()
        conditions = [IpAsset.deleted_at.is_(None)]

        if not user.is_admin:
            creator_id = await self._creator_id_for(user)
            visibility = [IpAsset.created_by == user.id]
            if creator_id:
                owned = select(IpOwnership.ip_asset_id).where(IpOwnership.creator_id == creator_id)
                visibility.append(IpAsset.id.in_(owned))
            conditions.append(or_(*visibility))

        if filters.project_id:
            conditions.append(IpAsset.project_id == filters.project_id)
        if filters.type:
            conditions.append(IpAsset.type == filters.type)
        if filters.status:
            conditions.append(IpAsset.status == filters.status)
        if filters.created_by:
            conditions.append(IpAsset.created_by == filters.created_by)
        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(or_(IpAsset.title.ilike(pattern), IpAsset.description.ilike(pattern)))
        if filters.from_date:
            conditions.append(IpAsset.created_at >= filters.from_date)
        if filters.to_date:
            conditions.append(IpAsset.created_at <= filters.to_date)

        total = await self.db.scalar(select(func.count()).select_from(IpAsset).where(*conditions))

        column = SORT_FIELDS[sort_by]
        order = column.asc() if sort_order == "asc" else column.desc()
        result = await self.db.execute(
            select(IpAsset)
            .where(*conditions)
            .order_by(order)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), int(total or 0)

    async def get_asset(self, user: User, asset_id: str) -> IpAsset:
        asset = await self._get_asset(asset_id)
        if user.is_admin or asset.created_by == user.id or await self._is_owner(user, asset_id):
            return asset
        raise PermissionDeniedError(f"Access denied to asset {asset_id}", code="asset.access_denied")

    async def get_download_url(self, user: User, asset_id: str) -> str:
        asset = await self.get_asset(user, asset_id)
        return build_signed_url(asset.storage_key, purpose="download")

    async def update_asset(
        self,
        user: User,
        asset_id: str,
        title: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> IpAsset:
        asset = await self._get_asset(asset_id)
        self._ensure_can_edit(user, asset)

        if title is not None:
            if not title or len(title) > 255:
                raise ValidationError("Title must be 1-255 characters")
            asset.title = title
        if description is not None:
            if len(description) > 2000:
                raise ValidationError("Description too long")
            asset.description = description
        if metadata is not None:
            asset.metadata_ = {**(asset.metadata_ or {}), **metadata}
        asset.updated_by = user.id
        await self.db.flush()
        return asset

    async def update_status(
        self,
        user: User,
        asset_id: str,
        new_status: AssetStatus,
    ) -> IpAsset:
        asset = await self._get_asset(asset_id)
        self._ensure_can_edit(user, asset)

        if not can_transition(asset.status, new_status):
            raise ValidationError(
                f"Invalid status transition from {asset.status.value} to {new_status.value}",
                code="asset.invalid_transition",
            )

        old_status = asset.status
        asset.status = new_status
        asset.updated_by = user.id
        await self.db.flush()

        logger.info(
            "asset_status_changed",
            asset_id=asset.id,
            old_status=old_status.value,
            new_status=new_status.value,
        )
        return asset

    async def bulk_update_status(
        self,
        user: User,
        asset_ids: list[str],
        new_status: AssetStatus,
    ) -> dict[str, list]:
        if not user.is_admin:
            raise PermissionDeniedError("Bulk status updates require admin access")
        if not asset_ids:
            raise ValidationError("At least one asset required")
        if len(asset_ids) > MAX_BULK_STATUS_UPDATE:
            raise ValidationError(f"Maximum {MAX_BULK_STATUS_UPDATE} assets at once")

        updated: list[str] = []
        errors: list[dict[str, str]] = []
        for asset_id in asset_ids:
            try:
                await self.update_status(user, asset_id, new_status)
                updated.append(asset_id)
            except (NotFoundError, ValidationError) as e:
                errors.append({"asset_id": asset_id, "error": e.message})
        return {"updated": updated, "errors": errors}

    async def delete_asset(self, user: User, asset_id: str) -> None:
        asset = await self._get_asset(asset_id)
        self._ensure_can_edit(user, asset)

        active_licenses = await self.db.scalar(
            select(func.count())
            .select_from(License)
            .where(
                License.ip_asset_id == asset_id,
                License.status.in_([LicenseStatus.ACTIVE, LicenseStatus.EXPIRING_SOON]),
                License.deleted_at.is_(None),
            )
        )
        if active_licenses:
            raise ConflictError(
                f"Asset {asset_id} has {active_licenses} active license(s)",
                code="asset.has_active_licenses",
            )

        asset.deleted_at = utc_now()
        asset.updated_by = user.id
        await self.db.flush()
        logger.info("asset_deleted", asset_id=asset_id, user_id=user.id)

    async def get_derivatives(self, user: User, asset_id: str) -> list[IpAsset]:
        await self.get_asset(user, asset_id)
        result = await self.db.execute(
            select(IpAsset)
            .where(IpAsset.parent_asset_id == asset_id, IpAsset.deleted_at.is_(None))
            .order_by(IpAsset.created_at.desc())
        )
        return list(result.scalars().all())

    # Ownership

    async def get_active_ownerships(self, asset_id: str, at: datetime | None = None) -> list[IpOwnership]:
        moment = at or utc_now()
        result = await self.db.execute(
            select(IpOwnership)
            .where(
                IpOwnership.ip_asset_id == asset_id,
                IpOwnership.start_date <= moment,
                or_(IpOwnership.end_date.is_(None), IpOwnership.end_date >= moment),
            )
            .order_by(IpOwnership.share_bps.desc(), IpOwnership.created_at)
        )
        return list(result.scalars().all())

    async def get_owners(self, user: User, asset_id: str) -> list[IpOwnership]:
        await self.get_asset(user, asset_id)
        return await self.get_active_ownerships(asset_id)

    async def add_owner(
        self,
        user: User,
        asset_id: str,
        creator_id: str,
        share_bps: int,
        ownership_type: OwnershipType = OwnershipType.SECONDARY,
        contract_reference: str | None = None,
    ) -> IpOwnership:
        asset = await self._get_asset(asset_id)
        self._ensure_can_edit(user, asset)

        if share_bps < 1 or share_bps > 10000:
            raise ValidationError("Share must be between 1 and 10000 basis points")

        creator = await self.db.get(Creator, creator_id)
        if not creator:
            raise NotFoundError(f"Creator {creator_id} not found", code="creator.not_found")

        current = await self.get_active_ownerships(asset_id)
        current_total = sum(o.share_bps for o in current)
        if current_total + share_bps > 10000:
            raise ConflictError(
                f"Adding {share_bps} bps would exceed 100% (current: {current_total} bps)",
                code="asset.ownership_exceeded",
            )

        ownership = IpOwnership(
            ip_asset_id=asset_id,
            creator_id=creator_id,
            share_bps=share_bps,
            ownership_type=ownership_type,
            start_date=utc_now(),
            contract_reference=contract_reference,
            created_by=user.id,
        )
        self.db.add(ownership)
        await self.db.flush()

        logger.info(
            "asset_owner_added",
            asset_id=asset_id,
            creator_id=creator_id,
            share_bps=share_bps,
        )
        return ownership
