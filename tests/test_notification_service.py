"""
Tests for notifications, preferences and polling.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError

from iplicensing.errors import NotFoundError, RateLimitError
from iplicensing.models import Notification, NotificationPriority, NotificationType
from iplicensing.services.notification_service import (
    POLL_DEFAULT_LOOKBACK,
    POLL_MAX_LOOKBACK,
    NotificationService,
)
from iplicensing.utils.time import utc_now


async def _notify(service: NotificationService, user_id: str, **kwargs) -> Notification | None:
    return await service.create(
        user_id=user_id,
        type=kwargs.pop("type", NotificationType.LICENSE),
        title=kwargs.pop("title", "Hello"),
        message=kwargs.pop("message", "Something happened"),
        **kwargs,
    )


class TestPreferences:
    async def test_defaults_created_on_first_read(self, db_session, factory):
        user = await factory.user()
        preference = await NotificationService(db_session).get_preferences(user.id)
        assert set(preference.enabled_types) == {t.value for t in NotificationType}
        assert preference.email_enabled

    async def test_muted_type_is_suppressed_unless_urgent(self, db_session, factory):
        user = await factory.user()
        service = NotificationService(db_session)
        await service.update_preferences(user.id, enabled_types=[NotificationType.PAYOUT])

        assert await _notify(service, user.id, type=NotificationType.LICENSE) is None
        assert await _notify(service, user.id, type=NotificationType.PAYOUT) is not None
        urgent = await _notify(
            service, user.id, type=NotificationType.SYSTEM, priority=NotificationPriority.URGENT,
        )
        assert urgent is not None
        assert await service.unread_count(user.id) == 2


class TestInbox:
    async def test_list_read_and_delete(self, db_session, factory):
        user = await factory.user()
        other = await factory.user()
        service = NotificationService(db_session)
        first = await _notify(service, user.id, type=NotificationType.LICENSE)
        await _notify(service, user.id, type=NotificationType.ROYALTY)
        await _notify(service, other.id)

        items, total = await service.list_for_user(user.id)
        assert total == 2

        items, total = await service.list_for_user(user.id, type=NotificationType.ROYALTY)
        assert total == 1

        marked = await service.mark_read(user.id, first.id)
        assert marked.read and marked.read_at is not None
        assert await service.unread_count(user.id) == 1

        with pytest.raises(NotFoundError):
            await service.mark_read(other.id, first.id)

        assert await service.mark_all_read(user.id) == 1
        assert await service.unread_count(user.id) == 0

        await service.delete(user.id, first.id)
        _, total = await service.list_for_user(user.id)
        assert total == 1

    async def test_cleanup_removes_old_read_notifications(self, db_session, factory):
        user = await factory.user()
        old = utc_now() - timedelta(days=120)
        db_session.add_all([
            Notification(user_id=user.id, type=NotificationType.SYSTEM, title="a", message="a",
                         read=True, created_at=old),
            Notification(user_id=user.id, type=NotificationType.SYSTEM, title="b", message="b",
                         read=False, created_at=old),
            Notification(user_id=user.id, type=NotificationType.SYSTEM, title="c", message="c",
                         read=True, created_at=utc_now()),
        ])
        await db_session.commit()

        assert await NotificationService(db_session).cleanup_read() == 1


class TestPolling:
    def test_clamp_last_seen(self):
        now = datetime(2026, 5, 1, 12)
        clamp = NotificationService.clamp_last_seen
        assert clamp(None, now) == now - POLL_DEFAULT_LOOKBACK
        assert clamp(now + timedelta(minutes=5), now) == now
        assert clamp(now - timedelta(days=3), now) == now - POLL_MAX_LOOKBACK
        assert clamp(now - timedelta(minutes=5), now) == now - timedelta(minutes=5)

    def test_clamp_accepts_aware_timestamps(self):
        now = datetime(2026, 5, 1, 12)
        aware = datetime(2026, 5, 1, 13, 55, tzinfo=timezone(timedelta(hours=2)))
        assert NotificationService.clamp_last_seen(aware, now) == datetime(2026, 5, 1, 11, 55)

    async def test_poll_returns_new_notifications(self, db_session, factory):
        user = await factory.user()
        service = NotificationService(db_session)
        await _notify(service, user.id)

        result = await service.poll(user.id, utc_now() - timedelta(minutes=1))
        assert result.new_count == 1
        assert result.unread_count == 1
        assert result.suggested_poll_interval == 10

    async def test_poll_rate_limited(self, db_session, factory):
        user = await factory.user()
        redis = AsyncMock()
        redis.set.return_value = None
        redis.ttl.return_value = 7

        with pytest.raises(RateLimitError) as exc:
            await NotificationService(db_session, redis).poll(user.id)
        assert exc.value.retry_after == 7

    async def test_empty_marker_skips_database(self, db_session, factory):
        user = await factory.user()
        redis = AsyncMock()
        redis.set.return_value = True
        redis.get.return_value = b"4"
        service = NotificationService(db_session, redis)
        db_session.add(Notification(user_id=user.id, type=NotificationType.SYSTEM, title="x", message="x"))
        await db_session.commit()

        result = await service.poll(user.id)
        assert result.notifications == []
        assert result.unread_count == 4

    async def test_empty_poll_caches_unread_count(self, db_session, factory):
        user = await factory.user()
        redis = AsyncMock()
        redis.set.return_value = True
        redis.get.return_value = None
        service = NotificationService(db_session, redis)
        db_session.add(Notification(
            user_id=user.id, type=NotificationType.SYSTEM, title="x", message="x",
            created_at=utc_now() - timedelta(hours=3),
        ))
        await db_session.commit()

        result = await service.poll(user.id)
        assert (result.new_count, result.unread_count) == (0, 1)
        redis.setex.assert_awaited_once_with(f"notifications:poll:empty:{user.id}", 5, "1")

        await service.mark_all_read(user.id)
        redis.delete.assert_awaited_with(f"notifications:poll:empty:{user.id}")

    async def test_redis_errors_fail_open(self, db_session, factory):
        user = await factory.user()
        redis = AsyncMock()
        redis.set.side_effect = RedisError("down")
        redis.get.side_effect = RedisError("down")
        redis.setex.side_effect = RedisError("down")

        result = await NotificationService(db_session, redis).poll(user.id)
        assert result.new_count == 0
