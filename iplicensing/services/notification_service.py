"""
In-app notification service

Also serves the polling endpoint: clients poll every few seconds, so the
poll path is guarded by a per-user Redis rate limit and a short-lived
"nothing new" marker that spares the database.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.config import settings
from iplicensing.errors import NotFoundError, RateLimitError
from iplicensing.models.notification import (
    DigestFrequency,
    Notification,
    NotificationPreference,
    NotificationPriority,
    NotificationType,
)
from iplicensing.utils.time import to_naive_utc, utc_now

logger = structlog.get_logger()

POLL_MAX_RESULTS = 50
POLL_MAX_LOOKBACK = timedelta(hours=24)
POLL_DEFAULT_LOOKBACK = timedelta(hours=1)
POLL_EMPTY_CACHE_SECONDS = 5


@dataclass
class PollResult:
    notifications: list[Notification]
    new_count: int
    unread_count: int
    last_seen: datetime
    suggested_poll_interval: int


class NotificationService:
    """Service for creating, listing and polling notifications."""

    def __init__(self, db: AsyncSession, redis: aioredis.Redis | None = None):
        self.db = db
        self.redis = redis

    async def get_preferences(self, user_id: str) -> NotificationPreference:
        result = await self.db.execute(
            select(NotificationPreference).where(NotificationPreference.user_id == user_id)
        )
        preference = result.scalar_one_or_none()
        if preference is None:
            preference = NotificationPreference(
                user_id=user_id,
                enabled_types=[t.value for t in NotificationType],
                digest_frequency=DigestFrequency.IMMEDIATE,
                email_enabled=True,
            )
            self.db.add(preference)
            await self.db.flush()
        return preference

    async def update_preferences(
        self,
        user_id: str,
        enabled_types: list[NotificationType] | None = None,
        digest_frequency: DigestFrequency | None = None,
        email_enabled: bool | None = None,
    ) -> NotificationPreference:
        preference = await self.get_preferences(user_id)
        if enabled_types is not None:
            preference.enabled_types = sorted({t.value for t in enabled_types})
        if digest_frequency is not None:
            preference.digest_frequency = digest_frequency
        if email_enabled is not None:
            preference.email_enabled = email_enabled
        await self.db.flush()
        logger.info("notification_preferences_updated", user_id=user_id)
        return preference

    async def create(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        action_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification | None:
        """Create a notification unless the user muted its type; URGENT always goes through."""
        if priority != NotificationPriority.URGENT:
            preference = await self.get_preferences(user_id)
            if not preference.allows(type):
                logger.debug("notification_suppressed", user_id=user_id, type=type.value)
                return None

        notification = Notification(
            user_id=user_id,
            type=type,
            priority=priority,
            title=title,
            message=message,
            action_url=action_url,
            metadata_=metadata,
            read=False,
            created_at=utc_now(),
        )
        self.db.add(notification)
        await self.db.flush()
        await self._clear_empty_marker(user_id)

        logger.info(
            "notification_created",
            user_id=user_id,
            type=type.value,
            priority=priority.value,
            notification_id=notification.id,
        )
        return notification

    async def list_for_user(
        self,
        user_id: str,
        page: int = 1,
        page_size: int = 20,
        read: bool | None = None,
        type: NotificationType | None = None,
        priority: NotificationPriority | None = None,
    ) -> tuple[list[Notification], int]:
        conditions = [Notification.user_id == user_id]
        if read is not None:
            conditions.append(Notification.read == read)
        if type is not None:
            conditions.append(Notification.type == type)
        if priority is not None:
            conditions.append(Notification.priority == priority)

        total = await self.db.scalar(select(func.count()).select_from(Notification).where(*conditions))
        result = await self.db.execute(
            select(Notification)
            .where(*conditions)
            .order_by(Notification.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), int(total or 0)

    async def _get_owned(self, user_id: str, notification_id: str) -> Notification:
        result = await self.db.execute(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
            )
        )
        notification = result.scalar_one_or_none()
        if not notification:
            raise NotFoundError(f"Notification {notification_id} not found")
        return notification

    async def mark_read(self, user_id: str, notification_id: str) -> Notification:
        notification = await self._get_owned(user_id, notification_id)
        if not notification.read:
            notification.read = True
            notification.read_at = utc_now()
            await self.db.flush()
            await self._clear_empty_marker(user_id)
        return notification

    async def mark_all_read(self, user_id: str) -> int:
        result = await self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .values(read=True, read_at=utc_now())
        )
        await self._clear_empty_marker(user_id)
        return result.rowcount or 0

    async def delete(self, user_id: str, notification_id: str) -> None:
        notification = await self._get_owned(user_id, notification_id)
        await self.db.delete(notification)
        await self.db.flush()
        await self._clear_empty_marker(user_id)

    async def unread_count(self, user_id: str) -> int:
        count = await self.db.scalar(
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
        )
        return int(count or 0)

    async def cleanup_read(self, retention_days: int | None = None) -> int:
        """Delete read notifications older than the retention window."""
        days = retention_days if retention_days is not None else settings.notification_retention_days
        cutoff = utc_now() - timedelta(days=days)
        result = await self.db.execute(
            delete(Notification).where(
                Notification.read.is_(True),
                Notification.created_at < cutoff,
            )
        )
        deleted = result.rowcount or 0
        logger.info("notifications_cleaned_up", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted

    # Polling

    @staticmethod
    def clamp_last_seen(last_seen: datetime | None, now: datetime) -> datetime:
        if last_seen is None:
            return now - POLL_DEFAULT_LOOKBACK
        last_seen = to_naive_utc(last_seen)
        if last_seen > now:
            return now
        if last_seen < now - POLL_MAX_LOOKBACK:
            return now - POLL_MAX_LOOKBACK
        return last_seen

    async def _check_poll_rate_limit(self, user_id: str) -> None:
        if self.redis is None:
            return
        key = f"notifications:poll:rate:{user_id}"
        window = settings.notification_poll_window_seconds
        try:
            acquired = await self.redis.set(key, "1", nx=True, ex=window)
            if acquired:
                return
            ttl = await self.redis.ttl(key)
        except RedisError as e:
            logger.warning("notification_poll_rate_limit_unavailable", error=str(e))
            return
        retry_after = ttl if ttl and ttl > 0 else window
        raise RateLimitError(
            "Polling too frequently",
            retry_after=int(retry_after),
        )

    async def _cached_unread_count(self, user_id: str) -> int | None:
        """Unread count stored with the "nothing new" marker, if the marker is live."""
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(f"notifications:poll:empty:{user_id}")
        except RedisError:
            return None
        return int(cached) if cached is not None else None

    async def _set_empty_marker(self, user_id: str, unread_count: int) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.setex(
                f"notifications:poll:empty:{user_id}", POLL_EMPTY_CACHE_SECONDS, str(unread_count)
            )
        except RedisError as e:
            logger.debug("notification_empty_marker_failed", error=str(e))

    async def _clear_empty_marker(self, user_id: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.delete(f"notifications:poll:empty:{user_id}")
        except RedisError as e:
            logger.debug("notification_empty_marker_clear_failed", error=str(e))

    async def poll(self, user_id: str, last_seen: datetime | None = None) -> PollResult:
        await self._check_poll_rate_limit(user_id)

        now = utc_now()
        since = self.clamp_last_seen(last_seen, now)
        interval = settings.notification_poll_window_seconds

        cached_unread = await self._cached_unread_count(user_id)
        if cached_unread is not None:
            return PollResult(
                notifications=[],
                new_count=0,
                unread_count=cached_unread,
                last_seen=now,
                suggested_poll_interval=interval,
            )

        result = await self.db.execute(
            select(Notification)
            .where(Notification.user_id == user_id, Notification.created_at > since)
            .order_by(Notification.created_at.desc())
            .limit(POLL_MAX_RESULTS)
        )
        notifications = list(result.scalars().all())
        unread = await self.unread_count(user_id)
        if not notifications:
            await self._set_empty_marker(user_id, unread)

        return PollResult(
            notifications=notifications,
            new_count=len(notifications),
            unread_count=unread,
            last_seen=now,
            suggested_poll_interval=interval,
        )
