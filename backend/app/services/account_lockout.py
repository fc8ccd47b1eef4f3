"""
Account lockout service for brute force protection.

Per-user failed-attempt counter with a timed lockout, stored on the User row:
- threshold failures (default 5) lock the account for a fixed duration
- an expired lock is cleared lazily on the next check
- any successful authentication clears the counter
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.core import clock
from app.core.exceptions import SecurityCheckUnavailableError
from app.core.metrics import ACCOUNT_LOCKOUTS, SECURITY_CHECK_FAILURES
from app.models.user import User

logger = logging.getLogger(__name__)


@dataclass
class LockoutStatus:
    """Result of a lockout check or a recorded failure."""

    is_locked: bool
    remaining_ms: Optional[int] = None
    failed_attempts: int = 0


class AccountLockoutService:
    """Failed-login tracking backed by ``users.failed_login_attempts`` / ``locked_until``."""

    def __init__(
        self,
        max_failed_attempts: Optional[int] = None,
        lockout_duration_seconds: Optional[int] = None,
    ) -> None:
        self.max_failed_attempts = max_failed_attempts or settings.LOCKOUT_MAX_FAILED_ATTEMPTS
        self.lockout_duration = timedelta(
            seconds=lockout_duration_seconds or settings.LOCKOUT_DURATION_SECONDS
        )

    def check_lockout(self, db: Session, user_id: int) -> LockoutStatus:
        """
        Report whether the account is currently locked.

        Must run before any password verification. A store failure rejects the
        login instead of skipping the check.
        """
        try:
            row = db.execute(
                select(User.locked_until, User.failed_login_attempts).where(User.id == user_id)
            ).first()
            if row is None or row.locked_until is None:
                return LockoutStatus(is_locked=False, failed_attempts=row.failed_login_attempts if row else 0)

            now = clock.utcnow()
            locked_until = clock.as_naive_utc(row.locked_until)
            if locked_until > now:
                return LockoutStatus(
                    is_locked=True,
                    remaining_ms=clock.milliseconds_between(now, locked_until),
                    failed_attempts=row.failed_login_attempts,
                )

            # Lock has lapsed: clear it unless a newer lock was written meanwhile.
            db.execute(
                update(User)
                .where(User.id == user_id, User.locked_until <= now)
                .values(locked_until=None, failed_login_attempts=0)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            logger.info("Lockout expired for user %s; counter cleared", user_id)
            return LockoutStatus(is_locked=False, failed_attempts=0)
        except SQLAlchemyError as exc:
            db.rollback()
            SECURITY_CHECK_FAILURES.labels("lockout").inc()
            logger.error("Lockout check failed for user %s: %s", user_id, exc)
            raise SecurityCheckUnavailableError()

    def record_failed_login(self, db: Session, user_id: int) -> LockoutStatus:
        """Atomically count a failure and lock the account at the threshold."""
        try:
            result = db.execute(
                update(User)
                .where(User.id == user_id)
                .values(failed_login_attempts=func.coalesce(User.failed_login_attempts, 0) + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.rollback()
                return LockoutStatus(is_locked=False, failed_attempts=0)

            failed_attempts = db.execute(
                select(User.failed_login_attempts).where(User.id == user_id)
            ).scalar_one()

            if failed_attempts >= self.max_failed_attempts:
                locked_until = clock.utcnow() + self.lockout_duration
                db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(locked_until=locked_until)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                ACCOUNT_LOCKOUTS.inc()
                logger.warning(
                    "Account locked: user %s after %s failed attempts", user_id, failed_attempts
                )
                return LockoutStatus(
                    is_locked=True,
                    remaining_ms=int(self.lockout_duration.total_seconds() * 1000),
                    failed_attempts=failed_attempts,
                )

            db.commit()
            return LockoutStatus(is_locked=False, failed_attempts=failed_attempts)
        except SQLAlchemyError as exc:
            db.rollback()
            SECURITY_CHECK_FAILURES.labels("lockout").inc()
            logger.error("Recording failed login for user %s failed: %s", user_id, exc)
            raise SecurityCheckUnavailableError()

    def reset_failed_attempts(self, db: Session, user_id: int) -> None:
        """Clear counter and lock unconditionally (successful authentication)."""
        db.execute(
            update(User)
            .where(User.id == user_id)
            .values(failed_login_attempts=0, locked_until=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()


account_lockout = AccountLockoutService()
