"""Housekeeping jobs for the security tables and the scheduler that runs them."""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.services.audit_service import AuditService, audit_service
from app.services.password_reset import PasswordResetService, password_reset_service
from app.services.rate_limiter import RateLimiter, rate_limiter
from app.services.scheduler import BackgroundScheduler
from app.services.token_service import SessionSweepStats, TokenService, token_service

logger = logging.getLogger(__name__)


def _default_session_factory() -> Session:
    from app.core.database import SessionLocal

    return SessionLocal()


class MaintenanceJobs:
    """Each job opens its own session; all of them only delete or mark dead rows."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        limiter: Optional[RateLimiter] = None,
        tokens: Optional[TokenService] = None,
        resets: Optional[PasswordResetService] = None,
        audit: Optional[AuditService] = None,
    ) -> None:
        self._session_factory = session_factory or _default_session_factory
        self.limiter = limiter or rate_limiter
        self.tokens = tokens or token_service
        self.resets = resets or password_reset_service
        self.audit = audit or audit_service

    def cleanup_rate_limits(self) -> int:
        db = self._session_factory()
        try:
            deleted = self.limiter.cleanup_expired(db)
        finally:
            db.close()
        if deleted:
            logger.info("Removed %s expired rate limit buckets", deleted)
        return deleted

    def sweep_sessions(self) -> SessionSweepStats:
        db = self._session_factory()
        try:
            return self.tokens.sweep_expired(db)
        finally:
            db.close()

    def cleanup_reset_tokens(self) -> int:
        db = self._session_factory()
        try:
            deleted = self.resets.cleanup_expired(db)
        finally:
            db.close()
        if deleted:
            logger.info("Removed %s used or expired password reset tokens", deleted)
        return deleted

    def cleanup_audit_logs(self) -> int:
        db = self._session_factory()
        try:
            return self.audit.cleanup_old_logs(db)
        finally:
            db.close()


def build_scheduler(
    jobs: Optional[MaintenanceJobs] = None,
    **scheduler_kwargs,
) -> BackgroundScheduler:
    """Scheduler with every maintenance job registered at its configured interval."""
    jobs = jobs or MaintenanceJobs()
    scheduler = BackgroundScheduler(**scheduler_kwargs)
    scheduler.add_job(
        "rate_limit_cleanup", jobs.cleanup_rate_limits, settings.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS
    )
    scheduler.add_job(
        "session_sweep", jobs.sweep_sessions, settings.SESSION_SWEEP_INTERVAL_SECONDS
    )
    scheduler.add_job(
        "reset_token_cleanup", jobs.cleanup_reset_tokens, settings.RESET_TOKEN_CLEANUP_INTERVAL_SECONDS
    )
    scheduler.add_job(
        "audit_retention", jobs.cleanup_audit_logs, settings.AUDIT_CLEANUP_INTERVAL_SECONDS
    )
    return scheduler
