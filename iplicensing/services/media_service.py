"""
Media library service
"""
import re
from dataclasses import dataclass
from uuid import uuid4

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.auth.signed_urls import build_signed_url
from iplicensing.errors import NotFoundError, PermissionDeniedError, ValidationError
from iplicensing.models.media import MediaCategory, MediaItem, MediaStatus, MediaUsage
from iplicensing.models.user import User
from iplicensing.utils.time import utc_now

logger = structlog.get_logger()

MAX_MEDIA_FILE_SIZE = 50 * 1024 * 1024
MEDIA_FILE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9._\-\s]+$")
MAX_TITLE_LENGTH = 200
MAX_TAGS = 20
MAX_TAG_LENGTH = 50
MAX_BULK_STATUS = 100
MAX_BULK_DELETE = 50

SUPPORTED_MIME_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
    "video/mp4",
    "video/webm",
    "audio/mpeg",
    "audio/wav",
    "application/pdf",
    "application/zip",
    "application/postscript",
    "font/woff",
    "font/woff2",
    "text/plain",
}

SORT_FIELDS = {
    "created_at": MediaItem.created_at,
    "updated_at": MediaItem.updated_at,
    "title": MediaItem.title,
    "download_count": MediaItem.download_count,
    "file_size": MediaItem.file_size,
}


def normalize_tags(tags: list[str] | None) -> list[str]:
    """Lower-case, strip and de-duplicate tags, keeping first-seen order."""
    normalized = list(dict.fromkeys(t.strip().lower() for t in (tags or []) if t and t.strip()))
    if len(normalized) > MAX_TAGS:
        raise ValidationError(f"Maximum {MAX_TAGS} tags allowed")
    for tag in normalized:
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(f"Tag '{tag[:20]}...' exceeds {MAX_TAG_LENGTH} characters")
    return normalized


def validate_media_file(file_name: str, file_size: int, mime_type: str) -> None:
    if not file_name or len(file_name) > 255:
        raise ValidationError("File name must be 1-255 characters")
    if not MEDIA_FILE_NAME_PATTERN.match(file_name):
        raise ValidationError("Invalid file name characters")
    if file_size <= 0 or file_size > MAX_MEDIA_FILE_SIZE:
        raise ValidationError("File size must be between 1 byte and 50MB")
    if mime_type.lower() not in SUPPORTED_MIME_TYPES:
        raise ValidationError(f"File type not supported: {mime_type}")


def _validate_title(title: str) -> None:
    if not title or not title.strip() or len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be 1-{MAX_TITLE_LENGTH} characters")


@dataclass
class MediaListFilters:
    category: MediaCategory | None = None
    status: MediaStatus | None = None
    usage: MediaUsage | None = None
    tag: str | None = None
    search: str | None = None


class MediaService:
    """Service for the shared media library."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _require_admin(user: User) -> None:
        if not user.is_admin:
            raise PermissionDeniedError("Media library management requires admin access")

    async def _get_item(self, media_id: str) -> MediaItem:
        item = await self.db.scalar(
            select(MediaItem).where(MediaItem.id == media_id, MediaItem.deleted_at.is_(None))
        )
        if not item:
            raise NotFoundError(f"Media item {media_id} not found", code="media.not_found")
        return item

    @staticmethod
    def _visible_to(user: User, item: MediaItem) -> bool:
        return user.is_admin or (item.status == MediaStatus.ACTIVE and item.usage == MediaUsage.PUBLIC)

    async def create(
        self,
        user: User,
        title: str,
        file_name: str,
        file_size: int,
        mime_type: str,
        category: MediaCategory = MediaCategory.OTHER,
        usage: MediaUsage = MediaUsage.INTERNAL,
        description: str | None = None,
        alt_text: str | None = None,
        tags: list[str] | None = None,
    ) -> MediaItem:
        self._require_admin(user)
        _validate_title(title)
        validate_media_file(file_name, file_size, mime_type)

        item = MediaItem(
            title=title.strip(),
            description=description,
            alt_text=alt_text,
            category=category,
            status=MediaStatus.DRAFT,
            usage=usage,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type.lower(),
            storage_key=f"media/{category.value.lower()}/{uuid4()}/{file_name.replace(' ', '_')}",
            tags=normalize_tags(tags),
            download_count=0,
            uploaded_by=user.id,
        )
        self.db.add(item)
        await self.db.flush()

        logger.info("media_created", media_id=item.id, category=category.value, user_id=user.id)
        return item

    async def get(self, user: User, media_id: str) -> MediaItem:
        item = await self._get_item(media_id)
        if not self._visible_to(user, item):
            raise NotFoundError(f"Media item {media_id} not found", code="media.not_found")
        return item

    async def list_media(
        self,
        user: User,
        filters: MediaListFilters | None = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[MediaItem], int]:
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if page_size < 1 or page_size > 100:
            raise ValidationError("Page size must be between 1 and 100")
        if sort_by not in SORT_FIELDS:
            raise ValidationError(f"Cannot sort by {sort_by}")

        filters = filters or MediaListFilters()
        conditions = [MediaItem.deleted_at.is_(None)]
        if not user.is_admin:
            conditions.append(MediaItem.status == MediaStatus.ACTIVE)
            conditions.append(MediaItem.usage == MediaUsage.PUBLIC)

        if filters.category:
            conditions.append(MediaItem.category == filters.category)
        if filters.status and user.is_admin:
            conditions.append(MediaItem.status == filters.status)
        if filters.usage and user.is_admin:
            conditions.append(MediaItem.usage == filters.usage)
        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(or_(
                MediaItem.title.ilike(pattern),
                MediaItem.description.ilike(pattern),
                MediaItem.alt_text.ilike(pattern),
            ))

        column = SORT_FIELDS[sort_by]
        order = column.asc() if sort_order == "asc" else column.desc()

        if filters.tag:
            # Tags are a JSON list, matched after the query
            tag = filters.tag.strip().lower()
            result = await self.db.execute(select(MediaItem).where(*conditions).order_by(order))
            matching = [item for item in result.scalars().all() if tag in (item.tags or [])]
            start = (page - 1) * page_size
            return matching[start:start + page_size], len(matching)

        total = await self.db.scalar(select(func.count()).select_from(MediaItem).where(*conditions))
        result = await self.db.execute(
            select(MediaItem)
            .where(*conditions)
            .order_by(order)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), int(total or 0)

    async def update(
        self,
        user: User,
        media_id: str,
        title: str | None = None,
        description: str | None = None,
        alt_text: str | None = None,
        category: MediaCategory | None = None,
        status: MediaStatus | None = None,
        usage: MediaUsage | None = None,
        tags: list[str] | None = None,
    ) -> MediaItem:
        self._require_admin(user)
        item = await self._get_item(media_id)

        if title is not None:
            _validate_title(title)
            item.title = title.strip()
        if description is not None:
            item.description = description
        if alt_text is not None:
            item.alt_text = alt_text
        if category is not None:
            item.category = category
        if status is not None:
            item.status = status
        if usage is not None:
            item.usage = usage
        if tags is not None:
            item.tags = normalize_tags(tags)

        await self.db.flush()
        logger.info("media_updated", media_id=item.id)
        return item

    async def record_download(self, user: User, media_id: str) -> str:
        item = await self.get(user, media_id)
        item.download_count = (item.download_count or 0) + 1
        await self.db.flush()
        logger.info("media_downloaded", media_id=item.id, user_id=user.id, count=item.download_count)
        return build_signed_url(item.storage_key, purpose="download")

    async def bulk_update_status(
        self,
        user: User,
        media_ids: list[str],
        status: MediaStatus,
    ) -> int:
        self._require_admin(user)
        if not media_ids:
            raise ValidationError("At least one media item required")
        if len(media_ids) > MAX_BULK_STATUS:
            raise ValidationError(f"Maximum {MAX_BULK_STATUS} items at once")

        result = await self.db.execute(
            select(MediaItem).where(MediaItem.id.in_(media_ids), MediaItem.deleted_at.is_(None))
        )
        items = list(result.scalars().all())
        for item in items:
            item.status = status
        await self.db.flush()

        logger.info("media_bulk_status_updated", count=len(items), status=status.value)
        return len(items)

    async def bulk_delete(self, user: User, media_ids: list[str]) -> int:
        self._require_admin(user)
        if not media_ids:
            raise ValidationError("At least one media item required")
        if len(media_ids) > MAX_BULK_DELETE:
            raise ValidationError(f"Maximum {MAX_BULK_DELETE} items at once")

        result = await self.db.execute(
            select(MediaItem).where(MediaItem.id.in_(media_ids), MediaItem.deleted_at.is_(None))
        )
        items = list(result.scalars().all())
        now = utc_now()
        for item in items:
            item.deleted_at = now
        await self.db.flush()

        logger.info("media_bulk_deleted", count=len(items), user_id=user.id)
        return len(items)
