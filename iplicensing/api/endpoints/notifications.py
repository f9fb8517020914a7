"""
Notification endpoints: inbox, polling and preferences
"""
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.auth.dependencies import AdminUser, CurrentUser
from iplicensing.database import get_db
from iplicensing.models.notification import DigestFrequency, NotificationPriority, NotificationType
from iplicensing.redis_client import get_redis
from iplicensing.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    action_url: str | None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")
    read: bool
    read_at: datetime | None
    created_at: datetime


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    total: int
    page: int
    page_size: int
    unread_count: int


class PollResponse(BaseModel):
    notifications: list[NotificationResponse]
    new_count: int
    unread_count: int
    last_seen: datetime
    suggested_poll_interval: int


class PreferencesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    enabled_types: list[str]
    digest_frequency: DigestFrequency
    email_enabled: bool


class PreferencesUpdateRequest(BaseModel):
    enabled_types: list[NotificationType] | None = None
    digest_frequency: DigestFrequency | None = None
    email_enabled: bool | None = None


class NotificationCreateRequest(BaseModel):
    user_id: str
    type: NotificationType = NotificationType.SYSTEM
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    priority: NotificationPriority = NotificationPriority.MEDIUM
    action_url: str | None = None


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    read: bool | None = None,
    type: NotificationType | None = None,
    priority: NotificationPriority | None = None,
) -> NotificationListResponse:
    service = NotificationService(db)
    items, total = await service.list_for_user(current_user.id, page, page_size, read, type, priority)
    return NotificationListResponse(
        items=[NotificationResponse.model_validate(n) for n in items],
        total=total,
        page=page,
        page_size=page_size,
        unread_count=await service.unread_count(current_user.id),
    )


@router.get("/poll", response_model=PollResponse)
async def poll_notifications(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis | None = Depends(get_redis),
    last_seen: datetime | None = None,
) -> PollResponse:
    """
    Return notifications newer than `last_seen`.

    Limited to one call per poll window per user; clients should wait
    `suggested_poll_interval` seconds between polls.
    """
    result = await NotificationService(db, redis).poll(current_user.id, last_seen)
    return PollResponse(
        notifications=[NotificationResponse.model_validate(n) for n in result.notifications],
        new_count=result.new_count,
        unread_count=result.unread_count,
        last_seen=result.last_seen,
        suggested_poll_interval=result.suggested_poll_interval,
    )


@router.get("/unread-count")
async def unread_count(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    return {"unread_count": await NotificationService(db).unread_count(current_user.id)}


@router.post("/read-all")
async def mark_all_read(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    return {"marked_read": await NotificationService(db).mark_all_read(current_user.id)}


@router.get("/preferences", response_model=PreferencesResponse)
async def get_preferences(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> PreferencesResponse:
    preference = await NotificationService(db).get_preferences(current_user.id)
    return PreferencesResponse.model_validate(preference)


@router.put("/preferences", response_model=PreferencesResponse)
async def update_preferences(
    request: PreferencesUpdateRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> PreferencesResponse:
    preference = await NotificationService(db).update_preferences(
        current_user.id,
        enabled_types=request.enabled_types,
        digest_frequency=request.digest_frequency,
        email_enabled=request.email_enabled,
    )
    return PreferencesResponse.model_validate(preference)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_notification(
    request: NotificationCreateRequest,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    notification = await NotificationService(db).create(
        request.user_id,
        type=request.type,
        title=request.title,
        message=request.message,
        priority=request.priority,
        action_url=request.action_url,
    )
    # None when the recipient muted this notification type
    return {"created": notification is not None, "id": notification.id if notification else None}


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> NotificationResponse:
    notification = await NotificationService(db).mark_read(current_user.id, notification_id)
    return NotificationResponse.model_validate(notification)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> None:
    await NotificationService(db).delete(current_user.id, notification_id)
