"""
Media library endpoints
"""
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.auth.dependencies import CurrentUser
from iplicensing.database import get_db
from iplicensing.models.media import MediaCategory, MediaStatus, MediaUsage
from iplicensing.services.media_service import MediaListFilters, MediaService

router = APIRouter(prefix="/media", tags=["media"])


class MediaCreateRequest(BaseModel):
    title: str
    file_name: str
    file_size: int
    mime_type: str
    category: MediaCategory = MediaCategory.OTHER
    usage: MediaUsage = MediaUsage.INTERNAL
    description: str | None = None
    alt_text: str | None = None
    tags: list[str] | None = None


class MediaUpdateRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    alt_text: str | None = None
    category: MediaCategory | None = None
    status: MediaStatus | None = None
    usage: MediaUsage | None = None
    tags: list[str] | None = None


class MediaResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str | None
    alt_text: str | None
    category: MediaCategory
    status: MediaStatus
    usage: MediaUsage
    file_name: str
    file_size: int
    mime_type: str
    tags: list[str]
    download_count: int
    uploaded_by: str
    created_at: datetime
    updated_at: datetime


class MediaListResponse(BaseModel):
    items: list[MediaResponse]
    total: int
    page: int
    page_size: int


class BulkStatusRequest(BaseModel):
    media_ids: list[str]
    status: MediaStatus


class BulkDeleteRequest(BaseModel):
    media_ids: list[str] = Field(min_length=1)


@router.post("", response_model=MediaResponse, status_code=status.HTTP_201_CREATED)
async def create_media(
    request: MediaCreateRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> MediaResponse:
    item = await MediaService(db).create(current_user, **request.model_dump())
    return MediaResponse.model_validate(item)


@router.get("", response_model=MediaListResponse)
async def list_media(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    category: MediaCategory | None = None,
    media_status: MediaStatus | None = Query(default=None, alias="status"),
    usage: MediaUsage | None = None,
    tag: str | None = None,
    search: str | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    sort_by: str = "created_at",
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
) -> MediaListResponse:
    filters = MediaListFilters(category=category, status=media_status, usage=usage, tag=tag, search=search)
    items, total = await MediaService(db).list_media(
        current_user, filters, page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order
    )
    return MediaListResponse(
        items=[MediaResponse.model_validate(i) for i in items],
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
    updated = await MediaService(db).bulk_update_status(current_user, request.media_ids, request.status)
    return {"updated": updated}


@router.post("/bulk-delete")
async def bulk_delete(
    request: BulkDeleteRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    deleted = await MediaService(db).bulk_delete(current_user, request.media_ids)
    return {"deleted": deleted}


@router.get("/{media_id}", response_model=MediaResponse)
async def get_media(
    media_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> MediaResponse:
    item = await MediaService(db).get(current_user, media_id)
    return MediaResponse.model_validate(item)


@router.patch("/{media_id}", response_model=MediaResponse)
async def update_media(
    media_id: str,
    request: MediaUpdateRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> MediaResponse:
    item = await MediaService(db).update(current_user, media_id, **request.model_dump())
    return MediaResponse.model_validate(item)


@router.post("/{media_id}/download")
async def download_media(
    media_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Count the download and return a signed, expiring URL."""
    url = await MediaService(db).record_download(current_user, media_id)
    return {"download_url": url}
