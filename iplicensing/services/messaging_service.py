"""
Direct messaging between creators, brands and admins
"""
from dataclasses import dataclass
from datetime import datetime

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.config import settings
from iplicensing.errors import NotFoundError, PermissionDeniedError, RateLimitError, ValidationError
from iplicensing.models.ip_asset import IpOwnership
from iplicensing.models.license import License
from iplicensing.models.messaging import Message, MessageThread, ThreadParticipant
from iplicensing.models.notification import NotificationType
from iplicensing.models.user import Brand, Creator, User
from iplicensing.services.notification_service import NotificationService
from iplicensing.utils.time import to_naive_utc, utc_now

logger = structlog.get_logger()

MAX_MESSAGE_LENGTH = 5000
MAX_SUBJECT_LENGTH = 255
RATE_LIMIT_WINDOW_SECONDS = 3600


@dataclass
class ThreadResult:
    thread: MessageThread
    existing_thread: bool


@dataclass
class ThreadSummary:
    thread: MessageThread
    unread_count: int


class MessagingService:
    """Service for message threads and messages."""

    def __init__(
        self,
        db: AsyncSession,
        redis: aioredis.Redis | None = None,
        notifications: NotificationService | None = None,
    ):
        self.db = db
        self.redis = redis
        self.notifications = notifications or NotificationService(db, redis)

    async def _check_rate_limit(self, user_id: str) -> None:
        if self.redis is None:
            return
        key = f"messages:rate:{user_id}"
        limit = settings.message_rate_limit_per_hour
        try:
            count = await self.redis.incr(key)
            if count == 1:
                await self.redis.expire(key, RATE_LIMIT_WINDOW_SECONDS)
            if count <= limit:
                return
            ttl = await self.redis.ttl(key)
        except RedisError as e:
            logger.warning("message_rate_limit_unavailable", error=str(e))
            return
        logger.warning("message_rate_limited", user_id=user_id, count=count)
        raise RateLimitError(
            f"Message limit of {limit} per hour reached",
            retry_after=int(ttl) if ttl and ttl > 0 else RATE_LIMIT_WINDOW_SECONDS,
        )

    async def _participant_ids(self, thread_id: str) -> list[str]:
        result = await self.db.execute(
            select(ThreadParticipant.user_id).where(ThreadParticipant.thread_id == thread_id)
        )
        return list(result.scalars().all())

    async def has_business_relationship(self, first_user_id: str, second_user_id: str) -> bool:
        """True when a license links one user's brand with an asset owned by the other user."""
        for brand_user_id, creator_user_id in (
            (first_user_id, second_user_id),
            (second_user_id, first_user_id),
        ):
            count = await self.db.scalar(
                select(func.count())
                .select_from(License)
                .join(Brand, Brand.id == License.brand_id)
                .join(IpOwnership, IpOwnership.ip_asset_id == License.ip_asset_id)
                .join(Creator, Creator.id == IpOwnership.creator_id)
                .where(
                    Brand.user_id == brand_user_id,
                    Creator.user_id == creator_user_id,
                    License.deleted_at.is_(None),
                )
            )
            if count:
                return True
        return False

    async def create_thread(
        self,
        user: User,
        participant_ids: list[str],
        subject: str | None = None,
    ) -> ThreadResult:
        participants = sorted(set(participant_ids) | {user.id})
        if len(participants) < 2:
            raise ValidationError("A thread needs at least two participants")
        if subject and len(subject) > MAX_SUBJECT_LENGTH:
            raise ValidationError("Subject too long")

        found = await self.db.scalar(
            select(func.count()).select_from(User).where(User.id.in_(participants), User.is_active.is_(True))
        )
        if found != len(participants):
            raise NotFoundError("One or more participants not found", code="user.not_found")

        participant_key = ",".join(participants)
        existing = await self.db.scalar(
            select(MessageThread).where(
                MessageThread.participant_key == participant_key,
                MessageThread.deleted_at.is_(None),
            )
        )
        if existing:
            return ThreadResult(thread=existing, existing_thread=True)

        thread = MessageThread(subject=subject, participant_key=participant_key, created_by=user.id)
        self.db.add(thread)
        await self.db.flush()
        for participant_id in participants:
            self.db.add(ThreadParticipant(thread_id=thread.id, user_id=participant_id))
        await self.db.flush()

        logger.info("message_thread_created", thread_id=thread.id, participants=len(participants))
        return ThreadResult(thread=thread, existing_thread=False)

    async def list_threads(
        self,
        user: User,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ThreadSummary], bool]:
        if limit < 1 or limit > 100:
            raise ValidationError("Limit must be between 1 and 100")

        result = await self.db.execute(
            select(MessageThread)
            .join(ThreadParticipant, ThreadParticipant.thread_id == MessageThread.id)
            .where(ThreadParticipant.user_id == user.id, MessageThread.deleted_at.is_(None))
            .order_by(func.coalesce(MessageThread.last_message_at, MessageThread.created_at).desc())
            .offset(offset)
            .limit(limit + 1)
        )
        threads = list(result.scalars().all())
        has_more = len(threads) > limit
        threads = threads[:limit]

        unread: dict[str, int] = {}
        if threads:
            counts = await self.db.execute(
                select(Message.thread_id, func.count())
                .where(
                    Message.thread_id.in_([t.id for t in threads]),
                    Message.recipient_id == user.id,
                    Message.read_at.is_(None),
                    Message.deleted_at.is_(None),
                )
                .group_by(Message.thread_id)
            )
            unread = dict(counts.all())

        return [ThreadSummary(thread=t, unread_count=unread.get(t.id, 0)) for t in threads], has_more

    async def get_thread(self, user: User, thread_id: str) -> MessageThread:
        thread = await self.db.scalar(
            select(MessageThread).where(MessageThread.id == thread_id, MessageThread.deleted_at.is_(None))
        )
        if not thread:
            raise NotFoundError(f"Thread {thread_id} not found", code="thread.not_found")
        if user.id not in await self._participant_ids(thread_id):
            raise PermissionDeniedError("Not a participant of this thread", code="thread.access_denied")
        return thread

    async def send_message(
        self,
        sender: User,
        thread_id: str,
        recipient_id: str,
        body: str,
    ) -> Message:
        await self._check_rate_limit(sender.id)

        body = (body or "").strip()
        if not body:
            raise ValidationError("Message body is required")
        if len(body) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters")
        if recipient_id == sender.id:
            raise ValidationError("Cannot send a message to yourself")

        thread = await self.get_thread(sender, thread_id)
        if recipient_id not in await self._participant_ids(thread.id):
            raise ValidationError("Recipient is not a participant of this thread")

        recipient = await self.db.get(User, recipient_id)
        if not recipient or not recipient.is_active:
            raise NotFoundError("Recipient not found", code="user.not_found")
        if not sender.is_active:
            raise PermissionDeniedError("Sender account is inactive")

        if not sender.is_admin and not await self.has_business_relationship(sender.id, recipient_id):
            raise PermissionDeniedError(
                "Messaging requires an existing license between the parties",
                code="messaging.no_relationship",
            )

        now = utc_now()
        message = Message(thread_id=thread.id, sender_id=sender.id, recipient_id=recipient_id, body=body)
        self.db.add(message)
        thread.last_message_at = now
        await self.db.flush()

        await self.notifications.create(
            user_id=recipient_id,
            type=NotificationType.MESSAGE,
            title=f"New message from {sender.name}",
            message=body[:140],
            action_url=f"/messages/{thread.id}",
            metadata={"thread_id": thread.id, "message_id": message.id},
        )

        logger.info("message_sent", thread_id=thread.id, message_id=message.id, sender_id=sender.id)
        return message

    async def list_messages(
        self,
        user: User,
        thread_id: str,
        limit: int = 50,
        before: datetime | None = None,
    ) -> tuple[list[Message], bool]:
        if limit < 1 or limit > 100:
            raise ValidationError("Limit must be between 1 and 100")
        await self.get_thread(user, thread_id)

        conditions = [Message.thread_id == thread_id, Message.deleted_at.is_(None)]
        if before:
            conditions.append(Message.created_at < to_naive_utc(before))

        result = await self.db.execute(
            select(Message).where(*conditions).order_by(Message.created_at.desc()).limit(limit + 1)
        )
        messages = list(result.scalars().all())
        return messages[:limit], len(messages) > limit

    async def mark_thread_read(self, user: User, thread_id: str) -> int:
        await self.get_thread(user, thread_id)
        result = await self.db.execute(
            update(Message)
            .where(
                Message.thread_id == thread_id,
                Message.recipient_id == user.id,
                Message.read_at.is_(None),
            )
            .values(read_at=utc_now())
        )
        return result.rowcount or 0

    async def delete_message(self, user: User, message_id: str) -> None:
        message = await self.db.scalar(
            select(Message).where(Message.id == message_id, Message.deleted_at.is_(None))
        )
        if not message:
            raise NotFoundError(f"Message {message_id} not found", code="message.not_found")
        if user.id not in (message.sender_id, message.recipient_id):
            raise PermissionDeniedError("Cannot delete another user's message")

        message.deleted_at = utc_now()
        await self.db.flush()
        logger.info("message_deleted", message_id=message_id, user_id=user.id)

    async def unread_count(self, user: User) -> int:
        count = await self.db.scalar(
            select(func.count())
            .select_from(Message)
            .where(
                Message.recipient_id == user.id,
                Message.read_at.is_(None),
                Message.deleted_at.is_(None),
            )
        )
        return int(count or 0)
