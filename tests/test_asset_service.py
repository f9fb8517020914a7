"""
Tests for IP asset management and ownership.
"""
import pytest

from iplicensing.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from iplicensing.models import AssetStatus, AssetType, LicenseStatus, UserRole
from iplicensing.services.asset_service import (
    MAX_FILE_SIZE,
    AssetListFilters,
    AssetService,
    can_transition,
    validate_upload,
)


class TestValidateUpload:
    def test_mime_type_decides_asset_type(self):
        assert validate_upload("photo.jpg", 1000, "image/jpeg") == AssetType.IMAGE
        assert validate_upload("clip.mp4", 1000, "VIDEO/MP4") == AssetType.VIDEO
        assert validate_upload("model.glb", 1000, "model/gltf-binary") == AssetType.MODEL_3D

    def test_rejects_oversized_file(self):
        with pytest.raises(ValidationError, match="100MB"):
            validate_upload("photo.jpg", MAX_FILE_SIZE + 1, "image/jpeg")

    def test_rejects_bad_file_name(self):
        with pytest.raises(ValidationError, match="characters"):
            validate_upload("../etc/passwd", 1000, "text/plain")

    def test_rejects_unknown_mime_type(self):
        with pytest.raises(ValidationError, match="not supported"):
            validate_upload("tool.exe", 1000, "application/x-msdownload")

    def test_transitions(self):
        assert can_transition(AssetStatus.DRAFT, AssetStatus.REVIEW)
        assert not can_transition(AssetStatus.DRAFT, AssetStatus.PUBLISHED)
        assert not can_transition(AssetStatus.ARCHIVED, AssetStatus.DRAFT)


class TestUploadFlow:
    async def test_initiate_and_confirm(self, db_session, factory):
        user = await factory.user(UserRole.CREATOR)
        service = AssetService(db_session)

        asset, upload_url = await service.initiate_upload(user, "my photo.png", 2048, "image/png")
        assert asset.status == AssetStatus.DRAFT
        assert asset.type == AssetType.IMAGE
        assert asset.storage_key.endswith("my_photo.png")
        assert "/upload/" in upload_url

        confirmed = await service.confirm_upload(user, asset.id, "Sunset", description="Golden hour")
        assert confirmed.status == AssetStatus.PROCESSING
        assert confirmed.title == "Sunset"

        with pytest.raises(ConflictError):
            await service.confirm_upload(user, asset.id, "Again")

    async def test_only_creator_or_admin_can_confirm(self, db_session, factory):
        owner = await factory.user(UserRole.CREATOR)
        stranger = await factory.user(UserRole.CREATOR)
        service = AssetService(db_session)
        asset, _ = await service.initiate_upload(owner, "a.png", 10, "image/png")

        with pytest.raises(PermissionDeniedError):
            await service.confirm_upload(stranger, asset.id, "Title")


class TestListAndAccess:
    async def test_non_admin_sees_created_and_owned_assets(self, db_session, factory, admin_user):
        creator = await factory.creator()
        creator_user = await factory.user_of(creator)
        owned = await factory.asset(owners=[(creator, 10000)])
        created = await factory.asset(created_by=creator_user)
        await factory.asset()

        service = AssetService(db_session)
        items, total = await service.list_assets(creator_user)
        assert total == 2
        assert {a.id for a in items} == {owned.id, created.id}

        _, admin_total = await service.list_assets(admin_user)
        assert admin_total == 3

    async def test_filters_and_paging(self, db_session, factory, admin_user):
        await factory.asset(title="Mountain view", type=AssetType.IMAGE)
        await factory.asset(title="Ocean clip", type=AssetType.VIDEO)
        await factory.asset(title="Mountain song", type=AssetType.AUDIO)
        service = AssetService(db_session)

        items, total = await service.list_assets(admin_user, AssetListFilters(search="Mountain"))
        assert total == 2

        items, total = await service.list_assets(admin_user, AssetListFilters(type=AssetType.VIDEO))
        assert [a.title for a in items] == ["Ocean clip"]

        items, total = await service.list_assets(admin_user, page=2, page_size=2, sort_by="title", sort_order="asc")
        assert total == 3
        assert [a.title for a in items] == ["Ocean clip"]

    async def test_invalid_listing_arguments(self, db_session, admin_user):
        service = AssetService(db_session)
        with pytest.raises(ValidationError):
            await service.list_assets(admin_user, page=0)
        with pytest.raises(ValidationError):
            await service.list_assets(admin_user, page_size=101)
        with pytest.raises(ValidationError):
            await service.list_assets(admin_user, sort_by="file_size")

    async def test_get_asset_access(self, db_session, factory):
        creator = await factory.creator()
        asset = await factory.asset(owners=[(creator, 10000)])
        outsider = await factory.user(UserRole.BRAND)
        owner_user = await factory.user_of(creator)
        service = AssetService(db_session)

        assert (await service.get_asset(owner_user, asset.id)).id == asset.id
        with pytest.raises(PermissionDeniedError):
            await service.get_asset(outsider, asset.id)
        with pytest.raises(NotFoundError):
            await service.get_asset(owner_user, "00000000-0000-0000-0000-000000000000")

        url = await service.get_download_url(owner_user, asset.id)
        assert "/download/" in url


class TestStatus:
    async def test_valid_and_invalid_transitions(self, db_session, factory, admin_user):
        asset = await factory.asset(status=AssetStatus.DRAFT)
        service = AssetService(db_session)

        updated = await service.update_status(admin_user, asset.id, AssetStatus.REVIEW)
        assert updated.status == AssetStatus.REVIEW

        with pytest.raises(ValidationError) as exc:
            await service.update_status(admin_user, asset.id, AssetStatus.PUBLISHED)
        assert exc.value.code == "asset.invalid_transition"

    async def test_bulk_update_collects_errors(self, db_session, factory, admin_user):
        draft = await factory.asset(status=AssetStatus.DRAFT)
        archived = await factory.asset(status=AssetStatus.ARCHIVED)
        missing = "00000000-0000-0000-0000-000000000000"
        service = AssetService(db_session)

        result = await service.bulk_update_status(admin_user, [draft.id, archived.id, missing], AssetStatus.REVIEW)
        assert result["updated"] == [draft.id]
        assert {e["asset_id"] for e in result["errors"]} == {archived.id, missing}

    async def test_bulk_update_requires_admin(self, db_session, factory):
        user = await factory.user(UserRole.CREATOR)
        with pytest.raises(PermissionDeniedError):
            await AssetService(db_session).bulk_update_status(user, ["x"], AssetStatus.REVIEW)


class TestDelete:
    async def test_active_license_blocks_delete(self, db_session, factory, admin_user):
        asset = await factory.asset()
        brand = await factory.brand()
        await factory.license(asset, brand, status=LicenseStatus.ACTIVE)

        with pytest.raises(ConflictError) as exc:
            await AssetService(db_session).delete_asset(admin_user, asset.id)
        assert exc.value.code == "asset.has_active_licenses"

    async def test_soft_delete_hides_asset(self, db_session, factory, admin_user):
        asset = await factory.asset()
        service = AssetService(db_session)
        await service.delete_asset(admin_user, asset.id)

        with pytest.raises(NotFoundError):
            await service.get_asset(admin_user, asset.id)

    async def test_derivatives(self, db_session, factory, admin_user):
        parent = await factory.asset()
        child = await factory.asset(parent_asset_id=parent.id)
        derivatives = await AssetService(db_session).get_derivatives(admin_user, parent.id)
        assert [a.id for a in derivatives] == [child.id]


class TestOwnership:
    async def test_add_owners_up_to_full_share(self, db_session, factory, admin_user):
        first = await factory.creator()
        second = await factory.creator()
        asset = await factory.asset(owners=[(first, 6000)])
        service = AssetService(db_session)

        await service.add_owner(admin_user, asset.id, second.id, 4000)
        owners = await service.get_owners(admin_user, asset.id)
        assert [o.share_bps for o in owners] == [6000, 4000]

        third = await factory.creator()
        with pytest.raises(ConflictError) as exc:
            await service.add_owner(admin_user, asset.id, third.id, 1)
        assert exc.value.code == "asset.ownership_exceeded"

    async def test_share_bounds_and_unknown_creator(self, db_session, factory, admin_user):
        asset = await factory.asset()
        service = AssetService(db_session)
        with pytest.raises(ValidationError):
            await service.add_owner(admin_user, asset.id, "whatever", 0)
        with pytest.raises(NotFoundError):
            await service.add_owner(admin_user, asset.id, "00000000-0000-0000-0000-000000000000", 1000)
