"""
Signed, expiring upload and download URLs for stored files
"""
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from iplicensing.config import settings

_serializers: dict[str, URLSafeTimedSerializer] = {}


class SignedUrlError(Exception):
    """Raised when a signed URL token is invalid or expired."""
    pass


def get_serializer(purpose: str) -> URLSafeTimedSerializer:
    """Get or create a serializer; the purpose is used as salt so tokens are not interchangeable."""
    if purpose not in _serializers:
        _serializers[purpose] = URLSafeTimedSerializer(
            settings.url_signing_secret_key,
            salt=f"iplicensing.{purpose}",
        )
    return _serializers[purpose]


def sign_storage_key(storage_key: str, purpose: str = "download", **extra: Any) -> str:
    return get_serializer(purpose).dumps({"key": storage_key, **extra})


def build_signed_url(storage_key: str, purpose: str = "download") -> str:
    token = sign_storage_key(storage_key, purpose)
    return f"{settings.asset_cdn_url}/{purpose}/{token}"


def verify_signed_token(
    token: str,
    purpose: str = "download",
    max_age: int | None = None,
) -> dict[str, Any]:
    """
    Verify a signed token and return its payload.

    Raises:
        SignedUrlError: If the signature is invalid or older than max_age
    """
    serializer = get_serializer(purpose)
    try:
        return serializer.loads(token, max_age=max_age or settings.signed_url_expiry_seconds)
    except SignatureExpired:
        raise SignedUrlError("Signed URL expired")
    except BadSignature:
        raise SignedUrlError("Invalid signed URL")
