"""Unit tests for authentication functions."""
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException
from jose import jwt

from camrent.auth import (
    authenticate_user,
    decode_access_token,
    hash_password,
    issue_access_token,
    verify_password,
)
from camrent.config import get_settings
from camrent.models import User

settings = get_settings()


class TestPasswordHashing:
    def test_password_hash_and_verify(self):
        password = "MySecurePassword123!"
        hashed = hash_password(password)

        assert hashed != password
        assert verify_password(password, hashed) is True
        assert verify_password("WrongPassword", hashed) is False

    def test_same_password_different_hashes(self):
        password = "TestPassword123"

        assert hash_password(password) != hash_password(password)


class TestAccessTokens:
    def test_token_carries_id_and_email_only(self):
        token = issue_access_token(User(id=42, email="jane@example.com"))

        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        assert claims["sub"] == "42"
        assert claims["email"] == "jane@example.com"
        assert "role" not in claims
        assert claims["exp"] > datetime.utcnow().timestamp()

    def test_decode_returns_user_id(self):
        token = issue_access_token(User(id=42, email="jane@example.com"), timedelta(minutes=5))

        assert decode_access_token(token) == 42

    def test_decode_token_invalid(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_access_token("invalid.token.here")

        assert exc_info.value.status_code == 401

    def test_decode_token_expired(self):
        token = issue_access_token(User(id=42, email="jane@example.com"), timedelta(hours=-1))

        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(token)

        assert exc_info.value.status_code == 401

    def test_decode_rejects_malformed_subject(self):
        token = jwt.encode(
            {"sub": "not-a-number", "type": "access", "exp": datetime.utcnow() + timedelta(minutes=5)},
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
        )

        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(token)

        assert exc_info.value.detail == "Malformed subject in token"


class TestUserAuthentication:
    """Login looks users up by lower-cased email."""

    def test_authenticate_user_success(self, make_user, db_session):
        user = make_user(email="test@example.com")

        result = authenticate_user(db_session, "Test@Example.com", "Passw0rd!")

        assert result is not None
        assert result.id == user.id

    def test_authenticate_user_wrong_password(self, make_user, db_session):
        make_user(email="test@example.com")

        assert authenticate_user(db_session, "test@example.com", "WrongPassword") is None

    def test_authenticate_user_not_found(self, db_session):
        assert authenticate_user(db_session, "nobody@example.com", "anypassword") is None
