"""
IP asset endpoints: uploads, catalogue, status and ownership
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.auth.dependencies import CurrentUser
from iplicensing.database import get_db
from iplicensing.models.ip_asset import AssetStatus, AssetType, OwnershipType, ScanStatus
from iplicensing.services.asset_service import AssetListFilters, AssetService

router = APIRouter(prefix="/assets", tags=["assets"])


# ============================================================================
# Schemas
# ============================================================================


class UploadRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    file_size: int = Field(gt=0)
    mime_type: str
    project_id: str | None = None


class UploadResponse(BaseModel):
    asset_id: str
    upload_url: str
    storage_key: str


class ConfirmUploadRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    metadata: dict[str, Any] | None = None


class AssetUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    metadata: dict[str, Any] | None = None


class StatusUpdateRequest(BaseModel):
    status: AssetStatus


class BulkStatusRequest(BaseModel):
    asset_ids: list[str]
    status: AssetStatus


class AssetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str | None
    title: str
    description: str | None
    type: AssetType
    file_name: str
    file_size: int
    mime_type: str
    thumbnail_url: str | None
    preview_url: str | None
    version: int
    parent_asset_id: str | None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")
    status: AssetStatus
    scan_status: ScanStatus
    created_by: str
    created_at: datetime
    updated_at: datetime


class AssetListResponse(BaseModel):
    items: list[AssetResponse]
    total: int
    page: int
    page_size: int


class OwnerRequest(BaseModel):
    creator_id: str
    share_bps: int = Field(ge=1, le=10000)
    ownership_type: OwnershipType = OwnershipType.SECONDARY
    contract_reference: str | None = None


class OwnershipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ip_asset_id: str
    creator_id: str
    share_bps: int
    ownership_type: OwnershipType
    start_date: datetime
    end_date: datetime | None
    contract_reference: str | None


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/upload", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def initiate_upload(
    request: UploadRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> UploadResponse:
    """
    Reserve an asset record and return a signed upload URL.

    The asset stays in DRAFT until the upload is confirmed.
    """
    asset, upload_url = await AssetService(db).initiate_upload(
        current_user,
        file_name=request.file_name,
        file_size=request.file_size,
        mime_type=request.mime_type,
        project_id=request.project_id,
    )
    return UploadResponse(asset_id=asset.id, upload_url=upload_url, storage_key=asset.storage_key)


@router.post("/{asset_id}/confirm", response_model=AssetResponse)
async def confirm_upload(
    asset_id: str,
    request: ConfirmUploadRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> AssetResponse:
    asset = await AssetService(db).confirm_upload(
        current_user,
        asset_id,
        title=request.title,
        description=request.description,
        metadata=request.metadata,
    )
    return AssetResponse.model_validate(asset)


@router.get("", response_model=AssetListResponse)
async def list_assets(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    project_id: str | None = None,
    type: AssetType | None = None,
    asset_status: AssetStatus | None = Query(default=None, alias="status"),
    search: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    sort_by: str = "created_at",
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
) -> AssetListResponse:
    filters = AssetListFilters(
        project_id=project_id,
        type=type,
        status=asset_status,
        search=search,
        from_date=from_date,
        to_date=to_date,
    )
    assets, total = await AssetService(db).list_assets(
        current_user,
        filters,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return AssetListResponse(
        items=[AssetResponse.model_validate(a) for a in assets],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/bulk-status")
async def bulk_update_status(
    request: BulkStatusRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await AssetService(db).bulk_update_status(current_user, request.asset_ids, request.status)


@router.get("/{asset_id}", response_model=AssetResponse)
async def get_asset(
    asset_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> AssetResponse:
    asset = await AssetService(db).get_asset(current_user, asset_id)
    return AssetResponse.model_validate(asset)


@router.get("/{asset_id}/download")
async def get_download_url(
    asset_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    url = await AssetService(db).get_download_url(current_user, asset_id)
    return {"download_url": url}


@router.patch("/{asset_id}", response_model=AssetResponse)
async def update_asset(
    asset_id: str,
    request: AssetUpdateRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> AssetResponse:
    asset = await AssetService(db).update_asset(
        current_user,
        asset_id,
        title=request.title,
        description=request.description,
        metadata=request.metadata,
    )
    return AssetResponse.model_validate(asset)


@router.post("/{asset_id}/status", response_model=AssetResponse)
async def update_status(
    asset_id: str,
    request: StatusUpdateRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> AssetResponse:
    asset = await AssetService(db).update_status(current_user, asset_id, request.status)
    return AssetResponse.model_validate(asset)


@router.delete("/{asset_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_asset(
    asset_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> None:
    await AssetService(db).delete_asset(current_user, asset_id)


@router.get("/{asset_id}/derivatives", response_model=list[AssetResponse])
async def get_derivatives(
    asset_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> list[AssetResponse]:
    derivatives = await AssetService(db).get_derivatives(current_user, asset_id)
    return [AssetResponse.model_validate(a) for a in derivatives]


@router.get("/{asset_id}/owners", response_model=list[OwnershipResponse])
async def get_owners(
    asset_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> list[OwnershipResponse]:
    owners = await AssetService(db).get_owners(current_user, asset_id)
    return [OwnershipResponse.model_validate(o) for o in owners]


@router.post("/{asset_id}/owners", response_model=OwnershipResponse, status_code=status.HTTP_201_CREATED)
async def add_owner(
    asset_id: str,
    request: OwnerRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> OwnershipResponse:
    ownership = await AssetService(db).add_owner(
        current_user,
        asset_id,
        creator_id=request.creator_id,
        share_bps=request.share_bps,
        ownership_type=request.ownership_type,
        contract_reference=request.contract_reference,
    )
    return OwnershipResponse.model_validate(ownership)
