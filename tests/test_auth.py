"""
Tests for trainer authentication and the internal secret guard.
"""

from unittest.mock import MagicMock, patch

import jwt
import pytest
from fastapi import HTTPException

from routine_import_api import auth
from routine_import_api.auth import (
    get_current_user,
    require_internal_secret,
    validate_api_key,
    validate_jwt,
)


class TestApiKey:
    def test_key_with_user(self, monkeypatch):
        monkeypatch.setenv("API_KEYS", "k1,k2")
        assert validate_api_key("k2:trainer-9") == "trainer-9"

    def test_key_without_user(self, monkeypatch):
        monkeypatch.setenv("API_KEYS", "k1")
        assert validate_api_key("k1") == "admin"

    def test_invalid_key(self, monkeypatch):
        monkeypatch.setenv("API_KEYS", "k1")
        with pytest.raises(HTTPException) as exc_info:
            validate_api_key("nope")
        assert exc_info.value.status_code == 401

    def test_keys_not_configured(self):
        with pytest.raises(HTTPException) as exc_info:
            validate_api_key("k1")
        assert exc_info.value.status_code == 401


class TestJwt:
    def test_valid_token(self, monkeypatch):
        monkeypatch.setattr(auth, "get_jwks_client", lambda: MagicMock())
        with patch("jwt.decode", return_value={"sub": "user_123"}):
            assert validate_jwt("Bearer token") == "user_123"

    def test_expired_token(self, monkeypatch):
        monkeypatch.setattr(auth, "get_jwks_client", lambda: MagicMock())
        with patch("jwt.decode", side_effect=jwt.ExpiredSignatureError("expired")):
            with pytest.raises(HTTPException) as exc_info:
                validate_jwt("Bearer token")
        assert exc_info.value.detail == "Token expired"

    def test_token_without_subject(self, monkeypatch):
        monkeypatch.setattr(auth, "get_jwks_client", lambda: MagicMock())
        with patch("jwt.decode", return_value={}):
            with pytest.raises(HTTPException) as exc_info:
                validate_jwt("Bearer token")
        assert exc_info.value.status_code == 401

    def test_malformed_header(self):
        with pytest.raises(HTTPException) as exc_info:
            validate_jwt("Token abc")
        assert exc_info.value.status_code == 401

    def test_jwks_not_configured(self, monkeypatch):
        monkeypatch.setattr(auth, "get_jwks_client", lambda: None)
        with pytest.raises(HTTPException) as exc_info:
            validate_jwt("Bearer token")
        assert exc_info.value.status_code == 500


class TestGetCurrentUser:
    @pytest.mark.asyncio
    async def test_api_key_wins(self, monkeypatch):
        monkeypatch.setenv("API_KEYS", "k1")
        assert await get_current_user(authorization="Bearer ignored", x_api_key="k1:trainer-1") == "trainer-1"

    @pytest.mark.asyncio
    async def test_missing_auth(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(authorization=None, x_api_key=None)
        assert exc_info.value.status_code == 401


class TestRequireInternalSecret:
    @pytest.mark.asyncio
    async def test_valid_secret(self, monkeypatch):
        monkeypatch.setenv("IMPORT_INTERNAL_SECRET", "s3cret")
        assert await require_internal_secret(authorization="Bearer s3cret") is None

    @pytest.mark.asyncio
    async def test_wrong_secret(self, monkeypatch):
        monkeypatch.setenv("IMPORT_INTERNAL_SECRET", "s3cret")
        with pytest.raises(HTTPException):
            await require_internal_secret(authorization="Bearer other")

    @pytest.mark.asyncio
    async def test_unset_secret_rejects(self):
        with pytest.raises(HTTPException):
            await require_internal_secret(authorization="Bearer s3cret")
