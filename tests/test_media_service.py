"""
Tests for the shared media library.
"""
import pytest

from iplicensing.errors import NotFoundError, PermissionDeniedError, ValidationError
from iplicensing.models import MediaCategory, MediaStatus, MediaUsage, UserRole
from iplicensing.services.media_service import (
    MediaListFilters,
    MediaService,
    normalize_tags,
    validate_media_file,
)


async def _create(service: MediaService, admin, title: str = "Logo pack", **kwargs):
    return await service.create(
        admin,
        title=title,
        file_name=kwargs.pop("file_name", "logo pack.zip"),
        file_size=kwargs.pop("file_size", 4096),
        mime_type=kwargs.pop("mime_type", "application/zip"),
        **kwargs,
    )


class TestValidation:
    def test_normalize_tags(self):
        assert normalize_tags([" Brand ", "brand", "", "Logo"]) == ["brand", "logo"]
        assert normalize_tags(None) == []

    def test_too_many_tags(self):
        with pytest.raises(ValidationError):
            normalize_tags([f"tag{i}" for i in range(21)])

    def test_tag_too_long(self):
        with pytest.raises(ValidationError):
            normalize_tags(["x" * 51])

    def test_file_limits(self):
        validate_media_file("deck.pdf", 1000, "application/pdf")
        with pytest.raises(ValidationError):
            validate_media_file("deck.pdf", 50 * 1024 * 1024 + 1, "application/pdf")
        with pytest.raises(ValidationError):
            validate_media_file("deck.pdf", 1000, "application/x-sh")


class TestLibrary:
    async def test_only_admins_manage(self, db_session, factory):
        user = await factory.user(UserRole.CREATOR)
        with pytest.raises(PermissionDeniedError):
            await _create(MediaService(db_session), user)

    async def test_create_and_publish(self, db_session, admin_user):
        service = MediaService(db_session)
        item = await _create(service, admin_user, category=MediaCategory.BRAND_ASSETS, tags=["Logo", "logo"])
        assert item.status == MediaStatus.DRAFT
        assert item.tags == ["logo"]
        assert item.storage_key.startswith("media/brand_assets/")

        updated = await service.update(admin_user, item.id, status=MediaStatus.ACTIVE, usage=MediaUsage.PUBLIC)
        assert updated.status == MediaStatus.ACTIVE

    async def test_non_admin_sees_only_active_public(self, db_session, factory, admin_user):
        service = MediaService(db_session)
        public = await _create(service, admin_user, title="Public", usage=MediaUsage.PUBLIC)
        internal = await _create(service, admin_user, title="Internal")
        await service.bulk_update_status(admin_user, [public.id, internal.id], MediaStatus.ACTIVE)

        viewer = await factory.user()
        items, total = await service.list_media(viewer)
        assert total == 1
        assert items[0].id == public.id

        with pytest.raises(NotFoundError):
            await service.get(viewer, internal.id)

        _, admin_total = await service.list_media(admin_user)
        assert admin_total == 2

    async def test_tag_filter(self, db_session, admin_user):
        service = MediaService(db_session)
        await _create(service, admin_user, title="A", tags=["holiday"])
        await _create(service, admin_user, title="B", tags=["summer"])

        items, total = await service.list_media(admin_user, MediaListFilters(tag="Holiday"))
        assert total == 1
        assert items[0].title == "A"

    async def test_download_counts(self, db_session, admin_user):
        service = MediaService(db_session)
        item = await _create(service, admin_user)
        url = await service.record_download(admin_user, item.id)
        await service.record_download(admin_user, item.id)
        assert "/download/" in url
        assert item.download_count == 2

    async def test_bulk_delete(self, db_session, admin_user):
        service = MediaService(db_session)
        first = await _create(service, admin_user, title="One")
        second = await _create(service, admin_user, title="Two")

        assert await service.bulk_delete(admin_user, [first.id, second.id]) == 2
        _, total = await service.list_media(admin_user)
        assert total == 0

        with pytest.raises(ValidationError):
            await service.bulk_delete(admin_user, [])
