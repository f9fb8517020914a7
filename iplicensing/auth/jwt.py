"""
JWT token generation and validation
"""
from datetime import timedelta
from typing import Any
from uuid import uuid4

from jose import JWTError, jwt

from iplicensing.config import settings
from iplicensing.utils.time import utc_now


class TokenError(Exception):
    """Exception raised for token-related errors."""
    pass


def _encode(data: dict[str, Any], token_type: str, lifetime: timedelta) -> str:
    to_encode = data.copy()
    issued_at = utc_now()
    to_encode.update({
        "exp": issued_at + lifetime,
        "iat": issued_at,
        "type": token_type,
        "jti": uuid4().hex,
    })
    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Payload data to encode in the token (`sub` is the user id)
        expires_delta: Custom expiration time (optional)

    Returns:
        Encoded JWT token string
    """
    lifetime = expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    return _encode(data, "access", lifetime)


def create_refresh_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """Create a longer-lived JWT used only to obtain new access tokens."""
    lifetime = expires_delta or timedelta(days=settings.jwt_refresh_token_expire_days)
    return _encode(data, "refresh", lifetime)


def verify_token(token: str, expected_type: str = "access") -> dict[str, Any]:
    """
    Verify and decode a JWT token.

    Raises:
        TokenError: If token is invalid, expired, or wrong type
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token expired")
    except JWTError as e:
        raise TokenError(f"Invalid token: {str(e)}")

    token_type = payload.get("type")
    if token_type != expected_type:
        raise TokenError(f"Token type mismatch: expected {expected_type}, got {token_type}")

    return payload
