from enum import Enum
from pydantic import BaseModel, EmailStr, Field


class OtpPurpose(str, Enum):
    SIGNUP_VERIFY = "signup_verify"
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"

    @property
    def template(self) -> str:
        """Email template used when a code for this purpose is first issued"""
        return {
            OtpPurpose.SIGNUP_VERIFY: "verify",
            OtpPurpose.LOGIN: "login",
            OtpPurpose.PASSWORD_RESET: "password_reset",
        }[self]


class OtpVerifyRequest(BaseModel):
    email: EmailStr
    otp: str = Field(..., pattern=r"^\d{6}$")


class OtpResendRequest(BaseModel):
    email: EmailStr
    purpose: OtpPurpose = OtpPurpose.SIGNUP_VERIFY


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    otp: str = Field(..., pattern=r"^\d{6}$")
    new_password: str = Field(..., min_length=6)
