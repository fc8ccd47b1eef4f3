"""Store-backed fixed-window rate limiting."""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.core import clock
from app.core.exceptions import RateLimitExceededError, SecurityCheckUnavailableError
from app.core.metrics import RATE_LIMIT_REJECTIONS, SECURITY_CHECK_FAILURES
from app.models.audit import AuditEventType
from app.models.security import RateLimit
from app.services.audit_service import AuditService, audit_service as default_audit_service

logger = logging.getLogger(__name__)


def _policy_name(identifier: str) -> str:
    # "login:ip:203.0.113.5" -> "login:ip"
    return ":".join(identifier.split(":")[:2])


class RateLimiter:
    """Attempt counters keyed by arbitrary identifiers (ip, email, ...).

    Every read-modify-write is a single conditional UPDATE so concurrent
    callers sharing an identifier cannot both slip under the limit.
    """

    def __init__(self, audit: Optional[AuditService] = None) -> None:
        self._audit = audit or default_audit_service

    def check(
        self,
        db: Session,
        identifier: str,
        max_attempts: int,
        window_seconds: float,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """
        Count one attempt against ``identifier``.

        Returns:
            int: Attempts remaining in the current window

        Raises:
            RateLimitExceededError: The window allowance is used up
            SecurityCheckUnavailableError: The store could not be consulted
        """
        for _ in range(max(1, settings.RATE_LIMIT_CONFLICT_RETRIES)):
            now = clock.utcnow()
            window_end = now + timedelta(seconds=window_seconds)
            try:
                rolled = db.execute(
                    update(RateLimit)
                    .where(RateLimit.identifier == identifier, RateLimit.reset_at <= now)
                    .values(count=1, reset_at=window_end)
                    .execution_options(synchronize_session=False)
                )
                if rolled.rowcount == 1:
                    db.commit()
                    return max_attempts - 1

                bumped = db.execute(
                    update(RateLimit)
                    .where(
                        RateLimit.identifier == identifier,
                        RateLimit.reset_at > now,
                        RateLimit.count < max_attempts,
                    )
                    .values(count=RateLimit.count + 1)
                    .execution_options(synchronize_session=False)
                )
                if bumped.rowcount == 1:
                    count = db.execute(
                        select(RateLimit.count).where(RateLimit.identifier == identifier)
                    ).scalar_one()
                    db.commit()
                    return max(0, max_attempts - count)

                reset_at = db.execute(
                    select(RateLimit.reset_at).where(RateLimit.identifier == identifier)
                ).scalar_one_or_none()
                if reset_at is None:
                    db.add(RateLimit(identifier=identifier, count=1, reset_at=window_end))
                    db.commit()
                    return max_attempts - 1
                db.commit()
            except IntegrityError:
                # Another request created the bucket first; run the updates again.
                db.rollback()
                continue
            except SQLAlchemyError as exc:
                db.rollback()
                SECURITY_CHECK_FAILURES.labels("rate_limit").inc()
                logger.error("Rate limit check failed for %s: %s", _policy_name(identifier), exc)
                raise SecurityCheckUnavailableError()

            retry_after = max(1, math.ceil((clock.as_naive_utc(reset_at) - now).total_seconds()))
            self._reject(identifier, max_attempts, window_seconds, retry_after, ip_address, user_agent)

        SECURITY_CHECK_FAILURES.labels("rate_limit").inc()
        logger.error("Rate limit bucket %s kept conflicting; failing closed", _policy_name(identifier))
        raise SecurityCheckUnavailableError()

    def _reject(
        self,
        identifier: str,
        max_attempts: int,
        window_seconds: float,
        retry_after: int,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        RATE_LIMIT_REJECTIONS.labels(_policy_name(identifier)).inc()
        self._audit.log_event(
            AuditEventType.RATE_LIMIT_EXCEEDED,
            event_data={
                "identifier": identifier,
                "max_attempts": max_attempts,
                "window_seconds": window_seconds,
                "retry_after": retry_after,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
        )
        raise RateLimitExceededError(retry_after)

    def check_login(
        self,
        db: Session,
        email: str,
        ip_address: str,
        user_agent: Optional[str] = None,
    ) -> None:
        """Login is limited independently per source IP and per target email."""
        self.check(
            db,
            f"login:ip:{ip_address}",
            settings.LOGIN_IP_MAX_ATTEMPTS,
            settings.LOGIN_IP_WINDOW_SECONDS,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.check(
            db,
            f"login:email:{email.strip().lower()}",
            settings.LOGIN_EMAIL_MAX_ATTEMPTS,
            settings.LOGIN_EMAIL_WINDOW_SECONDS,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def check_password_reset(self, db: Session, ip_address: str, user_agent: Optional[str] = None) -> None:
        self.check(
            db,
            f"password-reset:ip:{ip_address}",
            settings.PASSWORD_RESET_IP_MAX_ATTEMPTS,
            settings.PASSWORD_RESET_IP_WINDOW_SECONDS,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def check_refresh(self, db: Session, ip_address: str, user_agent: Optional[str] = None) -> None:
        self.check(
            db,
            f"refresh:ip:{ip_address}",
            settings.REFRESH_RATE_LIMIT_PER_MINUTE,
            60,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def remaining(self, db: Session, identifier: str, max_attempts: int) -> int:
        """Allowance left without consuming an attempt."""
        record = db.get(RateLimit, identifier)
        if record is None or clock.as_naive_utc(record.reset_at) <= clock.utcnow():
            return max_attempts
        return max(0, max_attempts - record.count)

    def reset(self, db: Session, identifier: str) -> None:
        db.execute(
            delete(RateLimit)
            .where(RateLimit.identifier == identifier)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def cleanup_expired(self, db: Session) -> int:
        """Drop buckets whose window has already ended; they would be rolled over lazily anyway."""
        result = db.execute(
            delete(RateLimit)
            .where(RateLimit.reset_at <= clock.utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount or 0


rate_limiter = RateLimiter()
