"""Security-related persistence models."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


class RevocationReason:
    """Values stored in ``AuthSession.revoked_reason``."""

    ROTATED = "rotated"
    LOGOUT = "logout"
    REUSE_DETECTED = "reuse_detected"
    ROTATION_LIMIT = "rotation_limit"
    EXPIRED = "expired"
    PASSWORD_RESET = "password_reset"
    ADMIN = "admin"


class AuthSession(Base):
    """One link in a refresh-token family; the refresh token is stored hashed."""

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_family = Column(String(128), nullable=False, index=True)
    refresh_token_hash = Column(String(64), unique=True, nullable=False, index=True)
    parent_session_id = Column(
        Integer, ForeignKey("sessions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    rotation_count = Column(Integer, default=0, nullable=False)
    remember_me = Column(Boolean, default=False, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    access_token_expires_at = Column(DateTime(timezone=True), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_reason = Column(String(32), nullable=True)
    duplicate_count = Column(Integer, default=0, nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    device_name = Column(String(128), nullable=True)
    device_type = Column(String(16), nullable=True)
    browser = Column(String(64), nullable=True)
    os = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="sessions")

    __table_args__ = (
        Index("idx_sessions_family_revoked", "token_family", "revoked"),
        Index("idx_sessions_user_revoked", "user_id", "revoked"),
        Index("idx_sessions_expires_at", "expires_at"),
    )


class PasswordResetToken(Base):
    """Single-use, time-boxed password reset grant."""

    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_password_reset_user_used", "user_id", "used_at"),
    )


class RateLimit(Base):
    """Attempt counter for one rate-limit bucket."""

    __tablename__ = "rate_limits"

    identifier = Column(String(255), primary_key=True)
    count = Column(Integer, default=0, nullable=False)
    reset_at = Column(DateTime(timezone=True), nullable=False, index=True)
