"""
Authentication module for JWT handling and role checks
"""
from iplicensing.auth.dependencies import (
    AdminUser,
    CurrentBrand,
    CurrentCreator,
    CurrentUser,
    get_current_user,
    require_admin,
)
from iplicensing.auth.jwt import TokenError, create_access_token, create_refresh_token, verify_token
from iplicensing.auth.passwords import hash_password, verify_password

__all__ = [
    "AdminUser",
    "CurrentBrand",
    "CurrentCreator",
    "CurrentUser",
    "TokenError",
    "create_access_token",
    "create_refresh_token",
    "get_current_user",
    "hash_password",
    "require_admin",
    "verify_password",
    "verify_token",
]
