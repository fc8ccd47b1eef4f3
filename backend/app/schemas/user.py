"""User, login and session schemas"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime
from enum import Enum


class UserRole(str, Enum):
    """User role enumeration"""
    ADMIN = "admin"
    USER = "user"


def _clean_email(value: str) -> str:
    value = value.strip().lower()
    if "@" not in value or value.startswith("@") or value.endswith("@"):
        raise ValueError("Invalid email address")
    return value


class LoginRequest(BaseModel):
    """Email/password login"""
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=256)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return _clean_email(v)


class RefreshRequest(BaseModel):
    """Refresh body; the refresh cookie is used when the field is absent"""
    refresh_token: Optional[str] = None


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class PasswordResetRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return _clean_email(v)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=8, max_length=256)


class UserResponse(BaseModel):
    """User response schema"""
    id: int
    email: str
    role: str
    is_active: bool
    created_at: Optional[datetime]
    last_login: Optional[datetime]

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    """Access token response; the refresh token travels in its own cookie"""
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_at: datetime
    user: UserResponse


class SessionResponse(BaseModel):
    """One signed-in device"""
    id: int
    created_at: Optional[datetime]
    last_used_at: Optional[datetime]
    expires_at: datetime
    rotation_count: int
    remember_me: bool
    ip_address: Optional[str]
    user_agent: Optional[str]
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    current: bool = False

    class Config:
        from_attributes = True
