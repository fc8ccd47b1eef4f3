"""Database models"""

from app.models.user import User
from app.models.security import AuthSession, PasswordResetToken, RateLimit, RevocationReason
from app.models.audit import AuditLog, AuditEventType

__all__ = [
    "User",
    "AuthSession",
    "PasswordResetToken",
    "RateLimit",
    "RevocationReason",
    "AuditLog",
    "AuditEventType",
]
