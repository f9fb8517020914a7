"""
Pytest configuration and fixtures.

Each test gets a fresh in-memory SQLite database shared by the test
session, the API dependency and the jobs worker.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("URL_SIGNING_SECRET_KEY", "test-signing-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/0")

from datetime import datetime, timedelta  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import iplicensing.database as database  # noqa: E402
import iplicensing.models  # noqa: E402,F401
from iplicensing.auth.jwt import create_access_token  # noqa: E402
from iplicensing.auth.passwords import hash_password  # noqa: E402
from iplicensing.database import Base  # noqa: E402
from iplicensing.models import (  # noqa: E402
    AssetStatus,
    AssetType,
    Brand,
    Creator,
    IpAsset,
    IpOwnership,
    License,
    LicenseStatus,
    LicenseType,
    OnboardingStatus,
    OwnershipType,
    User,
    UserRole,
)
from iplicensing.utils.time import utc_now  # noqa: E402

TEST_PASSWORD = "correct-horse-battery"


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite engine and install it as the app engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    database._engine = engine
    database._async_session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    yield engine

    database._engine = None
    database._async_session_factory = None
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    async with database._async_session_factory() as session:
        yield session


@pytest.fixture
async def client(db_engine):
    """HTTP client against the app with Redis disabled."""
    from iplicensing.main import app
    from iplicensing.redis_client import get_redis

    async def _no_redis():
        return None

    app.dependency_overrides[get_redis] = _no_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.id})}"}


class Factory:
    """Builds committed rows for tests."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    async def _save(self, *rows: Any) -> None:
        self.session.add_all(rows)
        await self.session.commit()

    async def user(self, role: UserRole = UserRole.VIEWER, **kwargs: Any) -> User:
        n = self._next()
        user = User(
            email=kwargs.pop("email", f"user{n}@example.com"),
            name=kwargs.pop("name", f"User {n}"),
            password_hash=hash_password(TEST_PASSWORD),
            role=role,
            **kwargs,
        )
        await self._save(user)
        return user

    async def admin(self) -> User:
        return await self.user(UserRole.ADMIN)

    async def user_of(self, profile: Creator | Brand) -> User:
        return await self.session.get(User, profile.user_id)

    async def creator(self, **kwargs: Any) -> Creator:
        user = await self.user(UserRole.CREATOR)
        creator = Creator(
            user_id=user.id,
            stage_name=kwargs.pop("stage_name", user.name),
            **kwargs,
        )
        await self._save(creator)
        return creator

    async def onboarded_creator(self) -> Creator:
        n = self._next()
        return await self.creator(
            stripe_account_id=f"acct_test{n}",
            onboarding_status=OnboardingStatus.COMPLETED,
        )

    async def brand(self, **kwargs: Any) -> Brand:
        user = await self.user(UserRole.BRAND)
        brand = Brand(
            user_id=user.id,
            company_name=kwargs.pop("company_name", f"Brand {user.name}"),
            **kwargs,
        )
        await self._save(brand)
        return brand

    async def asset(
        self,
        owners: list[tuple[Creator, int]] | None = None,
        created_by: User | None = None,
        **kwargs: Any,
    ) -> IpAsset:
        """Create an asset; `owners` are (creator, share_bps) pairs starting a year ago."""
        n = self._next()
        if created_by is None:
            created_by = await self.user(UserRole.CREATOR)
        asset = IpAsset(
            title=kwargs.pop("title", f"Asset {n}"),
            type=kwargs.pop("type", AssetType.IMAGE),
            storage_key=f"assets/test/{n}/file.png",
            file_name="file.png",
            file_size=1024,
            mime_type="image/png",
            status=kwargs.pop("status", AssetStatus.PUBLISHED),
            created_by=created_by.id,
            **kwargs,
        )
        await self._save(asset)
        for creator, share_bps in owners or []:
            await self._save(IpOwnership(
                ip_asset_id=asset.id,
                creator_id=creator.id,
                share_bps=share_bps,
                ownership_type=OwnershipType.PRIMARY,
                start_date=utc_now() - timedelta(days=365),
            ))
        return asset

    async def license(
        self,
        asset: IpAsset,
        brand: Brand,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        **kwargs: Any,
    ) -> License:
        start_date = start_date or utc_now() - timedelta(days=30)
        license = License(
            ip_asset_id=asset.id,
            brand_id=brand.id,
            license_type=kwargs.pop("license_type", LicenseType.NON_EXCLUSIVE),
            status=kwargs.pop("status", LicenseStatus.ACTIVE),
            start_date=start_date,
            end_date=end_date or start_date + timedelta(days=365),
            fee_cents=kwargs.pop("fee_cents", 50000),
            rev_share_bps=kwargs.pop("rev_share_bps", 0),
            scope=kwargs.pop("scope", {"geographic": {"territories": ["US"]}}),
            **kwargs,
        )
        await self._save(license)
        return license


@pytest.fixture
def factory(db_session) -> Factory:
    return Factory(db_session)


@pytest.fixture
async def admin_user(factory) -> User:
    return await factory.admin()
