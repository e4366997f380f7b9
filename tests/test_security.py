"""
Tests for bearer token verification and the user profile dependency
"""
import time

import pytest
from fastapi import HTTPException
from jose import jwt

from app.core.permissions import get_current_user_profile
from app.core.security import require_superadmin, verify_jwt

SECRET = "test-jwt-secret"


def token(secret: str = SECRET, **claims) -> str:
    payload = {
        "sub": "user-1",
        "aud": "authenticated",
        "exp": int(time.time()) + 3600,
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class TestVerifyJwt:

    def test_valid_hs256(self):
        claims = verify_jwt(token())

        assert claims["sub"] == "user-1"

    def test_wrong_secret(self):
        with pytest.raises(HTTPException) as exc:
            verify_jwt(token(secret="someone-else"))
        assert exc.value.status_code == 401

    def test_wrong_audience(self):
        with pytest.raises(HTTPException) as exc:
            verify_jwt(token(aud="anon"))
        assert exc.value.status_code == 401

    def test_expired(self):
        with pytest.raises(HTTPException):
            verify_jwt(token(exp=int(time.time()) - 10))

    def test_unsupported_algorithm(self):
        unsigned = jwt.encode({"sub": "user-1"}, SECRET, algorithm="HS512")

        with pytest.raises(HTTPException) as exc:
            verify_jwt(unsigned)
        assert "unsupported algorithm" in exc.value.detail


class TestDependencies:

    def test_superadmin_required(self):
        with pytest.raises(HTTPException) as exc:
            require_superadmin({"sub": "user-1", "app_metadata": {}})
        assert exc.value.status_code == 403

    def test_superadmin_allowed(self):
        payload = {"sub": "admin", "app_metadata": {"is_superadmin": True}}

        assert require_superadmin(payload) == payload

    def test_profile_lookup(self, user):
        assert get_current_user_profile({"sub": "user-1"})["email"] == "writer@example.com"

    def test_profile_missing(self, db):
        with pytest.raises(HTTPException) as exc:
            get_current_user_profile({"sub": "ghost"})
        assert exc.value.status_code == 404

    def test_token_without_subject(self, db):
        with pytest.raises(HTTPException) as exc:
            get_current_user_profile({})
        assert exc.value.status_code == 401
