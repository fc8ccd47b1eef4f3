"""Password reset token lifecycle: issue, validate, consume, clean up."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.core import clock
from app.core.exceptions import TokenInvalidError
from app.core.security import generate_reset_token, hash_token
from app.models.security import PasswordResetToken

logger = logging.getLogger(__name__)

INVALID_RESET_TOKEN_MESSAGE = "Invalid or expired reset token"


@dataclass
class ResetTokenIssue:
    token: str
    token_id: int
    expires_at: datetime


@dataclass
class ResetTokenGrant:
    user_id: int
    token_id: int


class PasswordResetService:
    """Single-use reset tokens; only a hash of each token is stored."""

    def __init__(self, ttl_minutes: Optional[int] = None) -> None:
        self.ttl = timedelta(minutes=ttl_minutes or settings.PASSWORD_RESET_TOKEN_TTL_MINUTES)

    def issue(self, db: Session, user_id: int) -> ResetTokenIssue:
        """Invalidate the user's unused tokens and create a fresh one."""
        now = clock.utcnow()
        token = generate_reset_token()
        expires_at = now + self.ttl

        db.execute(
            update(PasswordResetToken)
            .where(PasswordResetToken.user_id == user_id, PasswordResetToken.used_at.is_(None))
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        record = PasswordResetToken(
            token_hash=hash_token(token),
            user_id=user_id,
            expires_at=expires_at,
            created_at=now,
        )
        db.add(record)
        db.commit()
        db.refresh(record)

        logger.info("Issued password reset token %s for user %s", record.id, user_id)
        return ResetTokenIssue(token=token, token_id=record.id, expires_at=expires_at)

    def validate(self, db: Session, token: str) -> ResetTokenGrant:
        """
        Resolve a reset token to its user without consuming it.

        Raises:
            TokenInvalidError: Unknown, used or expired - the caller cannot tell which
        """
        if not token:
            raise TokenInvalidError(INVALID_RESET_TOKEN_MESSAGE)

        record = db.execute(
            select(PasswordResetToken).where(PasswordResetToken.token_hash == hash_token(token))
        ).scalar_one_or_none()

        if (
            record is None
            or record.used_at is not None
            or clock.as_naive_utc(record.expires_at) <= clock.utcnow()
        ):
            raise TokenInvalidError(INVALID_RESET_TOKEN_MESSAGE)

        return ResetTokenGrant(user_id=record.user_id, token_id=record.id)

    def consume(self, db: Session, token_id: int, commit: bool = True) -> bool:
        """
        Claim the token; True only for the one caller that flips ``used_at``.

        Pass ``commit=False`` to claim inside the transaction that stores the
        new password.
        """
        result = db.execute(
            update(PasswordResetToken)
            .where(PasswordResetToken.id == token_id, PasswordResetToken.used_at.is_(None))
            .values(used_at=clock.utcnow())
            .execution_options(synchronize_session=False)
        )
        if commit:
            db.commit()
        return result.rowcount == 1

    def active_tokens_for_user(self, db: Session, user_id: int) -> List[PasswordResetToken]:
        return (
            db.query(PasswordResetToken)
            .filter(
                PasswordResetToken.user_id == user_id,
                PasswordResetToken.used_at.is_(None),
                PasswordResetToken.expires_at > clock.utcnow(),
            )
            .all()
        )

    def cleanup_expired(self, db: Session) -> int:
        """Delete used or expired tokens."""
        result = db.execute(
            delete(PasswordResetToken)
            .where(
                or_(
                    PasswordResetToken.used_at.isnot(None),
                    PasswordResetToken.expires_at < clock.utcnow(),
                )
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount or 0


password_reset_service = PasswordResetService()
