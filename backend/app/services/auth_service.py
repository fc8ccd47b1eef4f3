"""
Authentication flows built from the security services.

Login ordering: rate limits (per IP, per email) -> account lookup -> lockout
check -> password verification -> failure counter or session issue.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.core import clock
from app.core.exceptions import (
    AccountLockedError,
    AuthenticationError,
    InvalidCredentialsError,
    TokenInvalidError,
    ValidationError,
)
from app.core.security import verify_password_or_dummy
from app.models.audit import AuditEventType
from app.models.security import RevocationReason
from app.models.user import User
from app.services.account_lockout import AccountLockoutService, account_lockout
from app.services.audit_service import AuditService, audit_service
from app.services.notifications import PasswordResetNotifier, password_reset_notifier
from app.services.password_reset import (
    INVALID_RESET_TOKEN_MESSAGE,
    PasswordResetService,
    ResetTokenIssue,
    password_reset_service,
)
from app.services.rate_limiter import RateLimiter, rate_limiter
from app.services.token_service import TokenPair, TokenService, token_service
from app.services.user_service import normalize_email, user_service

logger = logging.getLogger(__name__)

# Provider names end up in audit event types (auth.oauth.<provider>.success).
_PROVIDER_NAME = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair


class AuthService:
    """Orchestrates login, refresh, logout and password reset."""

    def __init__(
        self,
        *,
        audit: Optional[AuditService] = None,
        limiter: Optional[RateLimiter] = None,
        lockout: Optional[AccountLockoutService] = None,
        tokens: Optional[TokenService] = None,
        resets: Optional[PasswordResetService] = None,
        notifier: Optional[PasswordResetNotifier] = None,
    ) -> None:
        self.audit = audit or audit_service
        self.limiter = limiter or rate_limiter
        self.lockout = lockout or account_lockout
        self.tokens = tokens or token_service
        self.resets = resets or password_reset_service
        self.notifier = notifier or password_reset_notifier

    def login(
        self,
        db: Session,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """
        Authenticate with email and password and open a session.

        Raises:
            RateLimitExceededError: IP or email allowance used up
            AccountLockedError: Account locked, before or because of this attempt
            InvalidCredentialsError: Unknown account or wrong password
            SecurityCheckUnavailableError: Throttling state could not be read
        """
        ip_address = ip_address or "unknown"
        email = normalize_email(email)
        self.limiter.check_login(db, email, ip_address, user_agent)

        user = user_service.get_user_by_email(db, email)
        if user is None or not user.is_active:
            verify_password_or_dummy(password, None)
            self.audit.log_event(
                AuditEventType.LOGIN_FAILED,
                user_id=user.id if user else None,
                event_data={"reason": "unknown_account" if user is None else "inactive"},
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
            raise InvalidCredentialsError()

        user_id = user.id
        status = self.lockout.check_lockout(db, user_id)
        if status.is_locked:
            self.audit.log_event(
                AuditEventType.LOGIN_FAILED,
                user_id=user_id,
                event_data={"reason": "account_locked", "remaining_ms": status.remaining_ms},
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
            raise AccountLockedError(status.remaining_ms)

        if not verify_password_or_dummy(password, user.password_hash):
            failure = self.lockout.record_failed_login(db, user_id)
            self.audit.log_event(
                AuditEventType.LOGIN_FAILED,
                user_id=user_id,
                event_data={"reason": "invalid_password", "failed_attempts": failure.failed_attempts},
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
            if failure.is_locked:
                self.audit.log_event(
                    AuditEventType.ACCOUNT_LOCKED,
                    user_id=user_id,
                    event_data={
                        "failed_attempts": failure.failed_attempts,
                        "remaining_ms": failure.remaining_ms,
                    },
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=False,
                )
                raise AccountLockedError(failure.remaining_ms)
            raise InvalidCredentialsError()

        tokens = self._open_session(db, user, remember_me, ip_address, user_agent)
        self.audit.log_event(
            AuditEventType.LOGIN_SUCCESS,
            user_id=user_id,
            event_data={"session_id": tokens.session.id, "remember_me": remember_me},
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        logger.info("User %s logged in", user_id)
        return LoginResult(user=user, tokens=tokens)

    def login_with_provider(
        self,
        db: Session,
        user_id: int,
        provider: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Open a session for an identity an external provider has already confirmed."""
        if not _PROVIDER_NAME.match(provider or ""):
            raise ValidationError("Unsupported identity provider", details={"field": "provider"})

        user = user_service.get_user_by_id(db, user_id)
        if user is None or not user.is_active:
            raise AuthenticationError()

        tokens = self._open_session(db, user, remember_me, ip_address, user_agent)
        self.audit.log_event(
            AuditEventType.oauth_success(provider),
            user_id=user.id,
            event_data={"provider": provider, "session_id": tokens.session.id},
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        return LoginResult(user=user, tokens=tokens)

    def _open_session(
        self,
        db: Session,
        user: User,
        remember_me: bool,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> TokenPair:
        # Only the per-user counter is cleared; rate-limit buckets keep counting.
        self.lockout.reset_failed_attempts(db, user.id)
        user.last_login = clock.utcnow()
        db.commit()
        return self.tokens.issue(
            db, user.id, remember_me, ip_address=ip_address, user_agent=user_agent
        )

    def refresh(
        self,
        db: Session,
        refresh_token: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        if not refresh_token:
            raise TokenInvalidError("Refresh token missing")
        self.limiter.check_refresh(db, ip_address or "unknown", user_agent)
        return self.tokens.rotate(db, refresh_token, ip_address=ip_address, user_agent=user_agent)

    def logout(
        self,
        db: Session,
        refresh_token: Optional[str],
        *,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Revoke the session behind ``refresh_token``. Unknown tokens are not an error."""
        session = self.tokens.revoke_refresh_token(db, refresh_token)
        self.audit.log_event(
            AuditEventType.LOGOUT,
            user_id=session.user_id if session else user_id,
            event_data={"session_id": session.id if session else None},
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        return session is not None

    def revoke_session(
        self,
        db: Session,
        user_id: int,
        session_id: int,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        revoked = self.tokens.revoke_session(db, session_id, user_id=user_id)
        self.audit.log_event(
            AuditEventType.SESSION_REVOKE,
            user_id=user_id,
            event_data={"session_id": session_id},
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        return revoked

    def revoke_all_sessions(
        self,
        db: Session,
        user_id: int,
        *,
        except_session_id: Optional[int] = None,
        reason: str = RevocationReason.LOGOUT,
        actor_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        revoked = self.tokens.revoke_all_for_user(
            db, user_id, except_session_id=except_session_id, reason=reason
        )
        self.audit.log_event(
            AuditEventType.SESSION_REVOKE_ALL,
            user_id=user_id,
            event_data={
                "sessions_revoked": revoked,
                "kept_session_id": except_session_id,
                "reason": reason,
                "actor_id": actor_id if actor_id is not None else user_id,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        return revoked

    def request_password_reset(
        self,
        db: Session,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[ResetTokenIssue]:
        """
        Issue a reset token and hand it to the notifier.

        Unknown or inactive accounts return None without any visible
        difference to the caller.
        """
        ip_address = ip_address or "unknown"
        self.limiter.check_password_reset(db, ip_address, user_agent)

        user = user_service.get_user_by_email(db, email)
        if user is None or not user.is_active:
            self.audit.log_event(
                AuditEventType.PASSWORD_RESET_REQUEST,
                user_id=user.id if user else None,
                event_data={"reason": "unknown_account" if user is None else "inactive"},
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
            return None

        user_id = user.id
        email = user.email
        issued = self.resets.issue(db, user_id)
        try:
            self.notifier.send_password_reset(user_id, email, issued.token, issued.expires_at)
        except Exception:
            logger.exception("Password reset notification failed for user %s", user_id)

        self.audit.log_event(
            AuditEventType.PASSWORD_RESET_REQUEST,
            user_id=user_id,
            event_data={"token_id": issued.token_id},
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        return issued

    def complete_password_reset(
        self,
        db: Session,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """
        Set a new password from a reset token; returns the user id.

        The new password hash and the token claim commit together: a rejected
        password leaves the token usable, and of two concurrent confirms with
        the same token only one gets through. Every session of the user is
        revoked afterwards.
        """
        try:
            grant = self.resets.validate(db, token)
        except TokenInvalidError:
            self.audit.log_event(
                AuditEventType.PASSWORD_RESET_FAILED,
                event_data={"reason": "invalid_token"},
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
            raise

        try:
            user_service.set_password(db, grant.user_id, new_password, commit=False)
            claimed = self.resets.consume(db, grant.token_id, commit=False)
        except Exception:
            db.rollback()
            raise

        if not claimed:
            db.rollback()
            self.audit.log_event(
                AuditEventType.PASSWORD_RESET_FAILED,
                user_id=grant.user_id,
                event_data={"reason": "already_used", "token_id": grant.token_id},
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
            raise TokenInvalidError(INVALID_RESET_TOKEN_MESSAGE)
        db.commit()

        revoked = self.tokens.revoke_all_for_user(
            db, grant.user_id, reason=RevocationReason.PASSWORD_RESET
        )
        self.lockout.reset_failed_attempts(db, grant.user_id)

        self.audit.log_event(
            AuditEventType.PASSWORD_RESET_COMPLETE,
            user_id=grant.user_id,
            event_data={"token_id": grant.token_id, "sessions_revoked": revoked},
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        return grant.user_id


auth_service = AuthService()
