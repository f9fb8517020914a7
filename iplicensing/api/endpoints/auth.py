"""
Authentication endpoints: email/password accounts and JWT sessions
"""
from datetime import datetime
from hashlib import sha256

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.auth.dependencies import CurrentUser
from iplicensing.auth.jwt import TokenError, create_access_token, create_refresh_token, verify_token
from iplicensing.auth.passwords import hash_password, verify_password
from iplicensing.config import settings
from iplicensing.database import get_db
from iplicensing.models.user import Brand, Creator, User, UserRole
from iplicensing.utils.time import utc_now

router = APIRouter(prefix="/auth", tags=["authentication"])


# ============================================================================
# Schemas
# ============================================================================


class TokenResponse(BaseModel):
    """Response containing access and refresh tokens."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: str = Field(min_length=1, max_length=255)
    role: UserRole = UserRole.CREATOR
    stage_name: str | None = None
    company_name: str | None = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshTokenRequest(BaseModel):
    """Request to refresh access token."""
    refresh_token: str


class UserResponse(BaseModel):
    """User information response."""
    id: str
    email: str
    name: str
    role: UserRole
    is_active: bool
    created_at: datetime
    last_login_at: datetime | None
    creator_id: str | None = None
    brand_id: str | None = None


# ============================================================================
# Helpers
# ============================================================================


def _hash_token(token: str) -> str:
    return sha256(token.encode()).hexdigest()


def _issue_tokens(user: User) -> TokenResponse:
    """Create a token pair and remember the refresh token hash for rotation."""
    access_token = create_access_token({"sub": user.id, "email": user.email, "role": user.role.value})
    refresh_token = create_refresh_token({"sub": user.id})
    user.refresh_token_hash = _hash_token(refresh_token)
    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=settings.jwt_access_token_expire_minutes * 60,
    )


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    db: AsyncSession = Depends(get_db),
) -> TokenResponse:
    """
    Create an account and, for creators and brands, their profile.

    Admin accounts cannot be self-registered.
    """
    if request.role == UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin accounts cannot be self-registered",
        )

    email = request.email.lower()
    existing = await db.scalar(select(User.id).where(User.email == email))
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )

    user = User(
        email=email,
        name=request.name,
        password_hash=hash_password(request.password),
        role=request.role,
        last_login_at=utc_now(),
    )
    db.add(user)
    await db.flush()

    if request.role == UserRole.CREATOR:
        db.add(Creator(user_id=user.id, stage_name=request.stage_name or request.name))
    elif request.role == UserRole.BRAND:
        db.add(Brand(user_id=user.id, company_name=request.company_name or request.name))

    tokens = _issue_tokens(user)
    await db.commit()
    return tokens


@router.post("/login", response_model=TokenResponse)
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_db),
) -> TokenResponse:
    result = await db.execute(select(User).where(User.email == request.email.lower()))
    user = result.scalar_one_or_none()

    if not user or not verify_password(request.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is disabled",
        )

    user.last_login_at = utc_now()
    tokens = _issue_tokens(user)
    await db.commit()
    return tokens


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    request: RefreshTokenRequest,
    db: AsyncSession = Depends(get_db),
) -> TokenResponse:
    """
    Refresh access token using refresh token.

    Each refresh token is single use: a successful refresh rotates it.
    """
    try:
        payload = verify_token(request.refresh_token, expected_type="refresh")
    except TokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is disabled",
        )

    # Token was already rotated or revoked
    if user.refresh_token_hash != _hash_token(request.refresh_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    tokens = _issue_tokens(user)
    await db.commit()
    return tokens


@router.get("/me", response_model=UserResponse)
async def get_current_user_info(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    creator_id = await db.scalar(select(Creator.id).where(Creator.user_id == current_user.id))
    brand_id = await db.scalar(select(Brand.id).where(Brand.user_id == current_user.id))
    return UserResponse(
        id=current_user.id,
        email=current_user.email,
        name=current_user.name,
        role=current_user.role,
        is_active=current_user.is_active,
        created_at=current_user.created_at,
        last_login_at=current_user.last_login_at,
        creator_id=creator_id,
        brand_id=brand_id,
    )


@router.post("/logout")
async def logout(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Logout the current user by invalidating refresh token."""
    current_user.refresh_token_hash = None
    await db.commit()

    return {"message": "Logged out successfully"}
