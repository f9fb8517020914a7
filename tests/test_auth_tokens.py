"""
Tests for JWTs, password hashing and signed storage URLs.
"""
from datetime import timedelta

import pytest

from iplicensing.auth.jwt import TokenError, create_access_token, create_refresh_token, verify_token
from iplicensing.auth.passwords import hash_password, verify_password
from iplicensing.auth.signed_urls import (
    SignedUrlError,
    build_signed_url,
    sign_storage_key,
    verify_signed_token,
)


class TestJwt:
    def test_access_token_round_trip(self):
        payload = verify_token(create_access_token({"sub": "user-1"}))
        assert payload["sub"] == "user-1"
        assert payload["type"] == "access"

    def test_tokens_are_unique(self):
        assert create_refresh_token({"sub": "user-1"}) != create_refresh_token({"sub": "user-1"})

    def test_type_is_enforced(self):
        with pytest.raises(TokenError, match="type mismatch"):
            verify_token(create_refresh_token({"sub": "user-1"}), expected_type="access")

    def test_expired(self):
        token = create_access_token({"sub": "user-1"}, expires_delta=timedelta(seconds=-10))
        with pytest.raises(TokenError, match="expired"):
            verify_token(token)

    def test_garbage(self):
        with pytest.raises(TokenError):
            verify_token("not.a.token")


def test_password_hashing():
    hashed = hash_password("correct-horse-battery")
    assert hashed != "correct-horse-battery"
    assert verify_password("correct-horse-battery", hashed)
    assert not verify_password("wrong", hashed)


class TestSignedUrls:
    def test_payload_round_trip(self):
        token = sign_storage_key("assets/abc/master.png", asset_id="abc")
        assert verify_signed_token(token) == {"key": "assets/abc/master.png", "asset_id": "abc"}

    def test_purposes_are_not_interchangeable(self):
        token = sign_storage_key("assets/abc/master.png", purpose="upload")
        with pytest.raises(SignedUrlError):
            verify_signed_token(token, purpose="download")

    def test_tampered_token(self):
        url = build_signed_url("media/logo.zip")
        token = url.rsplit("/", 1)[1]
        with pytest.raises(SignedUrlError):
            verify_signed_token(token[:-2] + "xx")
