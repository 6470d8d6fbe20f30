"""
Authentication and one-time passcode errors.

Every error carries a stable machine-readable ``kind`` plus a human message and
the HTTP status the API answers with. ``main.py`` registers a handler that
renders them as ``{"detail": ..., "kind": ..., **extra}`` so the client can
branch on ``kind`` (e.g. show a countdown for ``too_soon``).
"""
from typing import Any, Dict, Optional

from fastapi import status


class AuthError(Exception):
    kind: str = "auth_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    message: str = "Authentication failed"

    def __init__(self, message: Optional[str] = None, **extra: Any) -> None:
        self.message = message or self.message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "kind": self.kind, **self.extra}


# ── Credentials / account state ───────────────────────────────────────────────

class InvalidCredentials(AuthError):
    kind = "invalid_credentials"
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Invalid email or password"


class NotVerified(AuthError):
    kind = "not_verified"
    status_code = status.HTTP_403_FORBIDDEN
    message = "Account not verified. A new verification code has been sent to your email."

    def __init__(self, message: Optional[str] = None, **extra: Any) -> None:
        extra.setdefault("requires_verification", True)
        super().__init__(message, **extra)


class Unauthorized(AuthError):
    kind = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Could not validate credentials"

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return {"WWW-Authenticate": "Bearer"}


# ── One-time passcodes ────────────────────────────────────────────────────────

class OtpNotFound(AuthError):
    kind = "otp_not_found"
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid or expired OTP. Please request a new code."


class OtpMismatch(AuthError):
    kind = "otp_mismatch"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(
            f"Invalid OTP code. {attempts_remaining} attempt(s) remaining.",
            attempts_remaining=attempts_remaining,
        )


class AttemptsExceeded(AuthError):
    kind = "attempts_exceeded"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    message = "Too many invalid attempts. Please request a new OTP."


class OtpExpired(AuthError):
    kind = "otp_expired"
    status_code = status.HTTP_410_GONE
    message = "OTP has expired. Please request a new code."


class TooSoon(AuthError):
    kind = "too_soon"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, retry_after: int) -> None:
        super().__init__(
            f"Please wait {retry_after} seconds before requesting another OTP",
            retry_after=retry_after,
        )


class DeliveryFailed(AuthError):
    """The notification collaborator could not deliver the passcode."""

    kind = "delivery_failed"
    status_code = status.HTTP_502_BAD_GATEWAY
    message = "Failed to send OTP email. Please try again shortly."
