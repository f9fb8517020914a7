"""
FastAPI dependencies for authentication
"""
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.auth.jwt import TokenError, verify_token
from iplicensing.database import get_db
from iplicensing.models.user import Brand, Creator, User, UserRole

# HTTP Bearer scheme for JWT tokens
bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Annotated[
        HTTPAuthorizationCredentials | None,
        Depends(bearer_scheme)
    ],
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Get the current authenticated user from JWT token.

    Raises:
        HTTPException: 401 if not authenticated, token invalid or user disabled
    """
    if not credentials:
        raise _unauthorized("Authentication required")

    try:
        payload = verify_token(credentials.credentials, expected_type="access")
    except TokenError as e:
        raise _unauthorized(str(e))

    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token payload")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise _unauthorized("User account is disabled")

    return user


async def require_admin(user: Annotated[User, Depends(get_current_user)]) -> User:
    if user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


async def get_current_creator(
    user: Annotated[User, Depends(get_current_user)],
    db: AsyncSession = Depends(get_db),
) -> Creator:
    result = await db.execute(select(Creator).where(Creator.user_id == user.id))
    creator = result.scalar_one_or_none()
    if not creator:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Creator profile required",
        )
    return creator


async def get_current_brand(
    user: Annotated[User, Depends(get_current_user)],
    db: AsyncSession = Depends(get_db),
) -> Brand:
    result = await db.execute(select(Brand).where(Brand.user_id == user.id))
    brand = result.scalar_one_or_none()
    if not brand:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Brand profile required",
        )
    return brand


# Type aliases for dependency injection
CurrentUser = Annotated[User, Depends(get_current_user)]
AdminUser = Annotated[User, Depends(require_admin)]
CurrentCreator = Annotated[Creator, Depends(get_current_creator)]
CurrentBrand = Annotated[Brand, Depends(get_current_brand)]
