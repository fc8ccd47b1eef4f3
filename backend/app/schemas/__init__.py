"""Pydantic schemas for API validation"""

from app.schemas.user import (
    UserRole,
    LoginRequest,
    RefreshRequest,
    LogoutRequest,
    PasswordResetRequest,
    PasswordResetConfirm,
    UserResponse,
    TokenResponse,
    SessionResponse,
)
from app.schemas.audit import (
    AuditEventResponse,
    SuspiciousIPResponse,
    SecuritySummaryResponse,
    SessionStatsResponse,
)

__all__ = [
    "UserRole", "LoginRequest", "RefreshRequest", "LogoutRequest",
    "PasswordResetRequest", "PasswordResetConfirm",
    "UserResponse", "TokenResponse", "SessionResponse",
    "AuditEventResponse", "SuspiciousIPResponse", "SecuritySummaryResponse", "SessionStatsResponse",
]
