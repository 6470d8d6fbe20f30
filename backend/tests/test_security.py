"""
Tests for password hashing, session tokens and the error payloads clients branch on.
"""
from datetime import datetime, timedelta

import pytest
from jose import jwt

from core.config import settings
from core.errors import NotVerified, OtpMismatch, TooSoon, Unauthorized
from core.security import (
    create_access_token,
    decode_access_token,
    get_password_hash,
    verify_password,
    verify_token,
)


class TestPasswords:
    def test_hash_round_trip(self):
        hashed = get_password_hash("s3cret-pass")
        assert hashed != "s3cret-pass"
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("other-pass", hashed)

    def test_missing_hash_never_verifies(self):
        assert not verify_password("anything", "")


class TestAccessTokens:
    def test_claims(self):
        token = create_access_token("65f000000000000000000001", "a@x.com")
        payload = decode_access_token(token)
        assert payload["sub"] == "65f000000000000000000001"
        assert payload["email"] == "a@x.com"
        assert payload["type"] == "access"
        assert payload["exp"] > payload["iat"]

    def test_default_lifetime_from_settings(self):
        token = create_access_token("abc", "a@x.com")
        payload = decode_access_token(token)
        assert payload["exp"] - payload["iat"] == settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60

    def test_expired_token(self):
        token = create_access_token("abc", "a@x.com", expires_delta=timedelta(seconds=-1))
        with pytest.raises(Unauthorized) as exc_info:
            decode_access_token(token)
        assert exc_info.value.extra == {"expired": True}
        assert verify_token(token) is None

    def test_wrong_signature(self):
        token = jwt.encode(
            {"sub": "abc", "type": "access", "exp": datetime.utcnow() + timedelta(minutes=5)},
            "some-other-key",
            algorithm=settings.ALGORITHM,
        )
        with pytest.raises(Unauthorized):
            decode_access_token(token)

    def test_wrong_token_type(self):
        token = jwt.encode(
            {"sub": "abc", "type": "refresh", "exp": datetime.utcnow() + timedelta(minutes=5)},
            settings.SECRET_KEY,
            algorithm=settings.ALGORITHM,
        )
        with pytest.raises(Unauthorized):
            decode_access_token(token)

    def test_empty_token(self):
        with pytest.raises(Unauthorized):
            decode_access_token("")


class TestErrorPayloads:
    def test_unauthorized_carries_bearer_challenge(self):
        err = Unauthorized()
        assert err.status_code == 401
        assert err.headers == {"WWW-Authenticate": "Bearer"}

    def test_mismatch_reports_remaining_attempts(self):
        body = OtpMismatch(attempts_remaining=1).to_dict()
        assert body["kind"] == "otp_mismatch"
        assert body["attempts_remaining"] == 1

    def test_too_soon_reports_retry_after(self):
        err = TooSoon(retry_after=42)
        assert err.status_code == 429
        assert err.to_dict()["retry_after"] == 42

    def test_not_verified_flags_verification(self):
        body = NotVerified(email="a@x.com").to_dict()
        assert body["requires_verification"] is True
        assert body["email"] == "a@x.com"
