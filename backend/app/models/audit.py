"""Audit log model for security-relevant events."""

import json
from enum import Enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Index
from sqlalchemy.sql import func

from app.core.database import Base


class AuditEventType(str, Enum):
    """Namespaced event types written by the security core"""
    LOGIN_SUCCESS = "auth.login.success"
    LOGIN_FAILED = "auth.login.failed"
    LOGOUT = "auth.logout"
    ACCOUNT_LOCKED = "auth.account.locked"
    TOKEN_ROTATED = "auth.token_rotated"
    TOKEN_ROTATION_DUPLICATE = "auth.token_rotation.duplicate"
    TOKEN_REUSE_DETECTED = "auth.token_reuse_detected"
    TOKEN_FAMILY_REVOKED = "auth.token_family_revoked"
    ROTATION_LIMIT_REACHED = "auth.token_rotation.limit"
    SESSION_REVOKE = "auth.session.revoke"
    SESSION_REVOKE_ALL = "auth.session.revokeAll"
    PASSWORD_RESET_REQUEST = "auth.password.reset.request"
    PASSWORD_RESET_COMPLETE = "auth.password.reset.complete"
    PASSWORD_RESET_FAILED = "auth.password.reset.failed"
    RATE_LIMIT_EXCEEDED = "security.rate_limit.exceeded"
    CSRF_FAILED = "security.csrf.failed"
    SESSION_CLEANUP = "system.session_cleanup"

    @classmethod
    def oauth_success(cls, provider: str) -> str:
        return f"auth.oauth.{provider}.success"


class AuditLog(Base):
    """Append-only security event; rows are only removed by retention cleanup."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    event_type = Column(String(128), nullable=False, index=True)
    event_data = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True, index=True)
    user_agent = Column(String(512), nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_audit_logs_created_at", "created_at"),
        Index("idx_audit_logs_type_success_created", "event_type", "success", "created_at"),
    )

    @property
    def data(self) -> dict:
        if not self.event_data:
            return {}
        try:
            return json.loads(self.event_data)
        except ValueError:
            return {"raw": self.event_data}
