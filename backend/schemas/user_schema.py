from pydantic import BaseModel, EmailStr, Field
from typing import Dict, Any, Optional

PHONE_PATTERN = r"^\+?[1-9]\d{0,15}$"

class SignupRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)

class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

class CurrentUser(BaseModel):
    id: str
    name: str
    email: EmailStr
    is_verified: bool

    class Config:
        extra = "ignore"

class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)

class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)

class PreferencesUpdate(BaseModel):
    preferences: Dict[str, Any]

class DeleteAccountRequest(BaseModel):
    confirm_password: str = Field(..., min_length=1)
