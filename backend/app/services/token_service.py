"""Session issuance, refresh token rotation and token-family revocation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.core import clock
from app.core.device import parse_device_info
from app.core.exceptions import (
    ResourceNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    TokenReusedError,
)
from app.core.metrics import TOKEN_REUSE_DETECTED, TOKEN_ROTATIONS
from app.core.security import (
    constant_time_equals,
    create_access_token,
    derive_rotated_refresh_token,
    generate_refresh_token,
    generate_token_family,
    hash_token,
    verify_access_token,
)
from app.models.audit import AuditEventType
from app.models.security import AuthSession, RevocationReason
from app.models.user import User
from app.services.audit_service import AuditService, audit_service as default_audit_service

logger = logging.getLogger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session: AuthSession
    access_expires_at: datetime
    refresh_expires_at: datetime
    duplicate: bool = False

    @property
    def expires_in(self) -> int:
        return settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60


@dataclass
class AccessClaims:
    user_id: int
    session_id: Optional[int] = None


@dataclass
class SessionSweepStats:
    expired_marked: int
    deleted: int
    orphans_cleared: int


class TokenService:
    """Manage refresh-token family lifecycle.

    A token family is every session descended from one login. Exactly one
    session per family is live; rotating it revokes it and creates its
    successor in the same commit. Presenting a rotated token again outside the
    grace window revokes the whole family.
    """

    def __init__(self, audit: Optional[AuditService] = None) -> None:
        self._audit = audit or default_audit_service

    @staticmethod
    def _access_ttl() -> timedelta:
        return timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    @staticmethod
    def _refresh_ttl(remember_me: bool) -> timedelta:
        days = settings.REFRESH_TOKEN_REMEMBER_ME_DAYS if remember_me else settings.REFRESH_TOKEN_EXPIRE_DAYS
        return timedelta(days=days)

    @staticmethod
    def _create_session(
        db: Session,
        *,
        user_id: int,
        token_family: str,
        refresh_token: str,
        remember_me: bool,
        now: datetime,
        parent: Optional[AuthSession] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthSession:
        device = parse_device_info(user_agent)
        record = AuthSession(
            user_id=user_id,
            token_family=token_family,
            refresh_token_hash=hash_token(refresh_token),
            parent_session_id=parent.id if parent else None,
            rotation_count=parent.rotation_count + 1 if parent else 0,
            remember_me=remember_me,
            expires_at=now + TokenService._refresh_ttl(remember_me),
            access_token_expires_at=now + TokenService._access_ttl(),
            last_used_at=now,
            revoked=False,
            duplicate_count=0,
            ip_address=ip_address,
            user_agent=user_agent[:512] if user_agent else None,
            device_name=device.device_name,
            device_type=device.device_type,
            browser=device.browser,
            os=device.os,
            created_at=now,
        )
        db.add(record)
        db.flush()
        return record

    def _token_pair(self, session: AuthSession, refresh_token: str, duplicate: bool = False) -> TokenPair:
        access_token = create_access_token(
            {"sub": str(session.user_id), "sid": session.id},
            expires_delta=self._access_ttl(),
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            session=session,
            access_expires_at=clock.as_naive_utc(session.access_token_expires_at),
            refresh_expires_at=clock.as_naive_utc(session.expires_at),
            duplicate=duplicate,
        )

    def issue(
        self,
        db: Session,
        user_id: int,
        remember_me: bool = False,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Start a new token family for a fresh login."""
        refresh_token = generate_refresh_token()
        session = self._create_session(
            db,
            user_id=user_id,
            token_family=generate_token_family(),
            refresh_token=refresh_token,
            remember_me=remember_me,
            now=clock.utcnow(),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        db.commit()
        db.refresh(session)
        logger.info("Issued session %s for user %s (remember_me=%s)", session.id, user_id, remember_me)
        return self._token_pair(session, refresh_token)

    def rotate(
        self,
        db: Session,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """
        Exchange a refresh token for a new access/refresh pair.

        Raises:
            TokenInvalidError: Unknown token, or session revoked for a non-rotation reason
            TokenExpiredError: Refresh horizon passed or rotation ceiling reached
            TokenReusedError: An already-rotated token was replayed; family revoked
        """
        if not refresh_token:
            raise TokenInvalidError("Invalid refresh token")
        token_hash = hash_token(refresh_token)

        # Second pass only runs when another request claimed the session first.
        for _ in range(2):
            session = db.execute(
                select(AuthSession).where(AuthSession.refresh_token_hash == token_hash)
            ).scalar_one_or_none()
            if session is None:
                TOKEN_ROTATIONS.labels("not_found").inc()
                raise TokenInvalidError("Invalid refresh token")

            if session.revoked:
                return self._handle_revoked(db, session, refresh_token, ip_address, user_agent)

            now = clock.utcnow()
            if clock.as_naive_utc(session.expires_at) <= now:
                self._revoke_sessions(db, [session.id], RevocationReason.EXPIRED, now)
                db.commit()
                TOKEN_ROTATIONS.labels("expired").inc()
                raise TokenExpiredError("Session has expired. Please sign in again.")

            user = db.get(User, session.user_id)
            if user is None or not user.is_active:
                self.revoke_family(
                    db,
                    session.token_family,
                    reason=RevocationReason.ADMIN,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                raise TokenInvalidError("Invalid refresh token")

            self.enforce_rotation_ceiling(db, session, ip_address=ip_address, user_agent=user_agent)

            claimed = db.execute(
                update(AuthSession)
                .where(AuthSession.id == session.id, AuthSession.revoked.is_(False))
                .values(
                    revoked=True,
                    revoked_at=now,
                    revoked_reason=RevocationReason.ROTATED,
                    last_used_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                db.rollback()
                continue

            successor_token = derive_rotated_refresh_token(refresh_token)
            successor = self._create_session(
                db,
                user_id=session.user_id,
                token_family=session.token_family,
                refresh_token=successor_token,
                remember_me=session.remember_me,
                now=now,
                parent=session,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            db.commit()
            db.refresh(successor)

            TOKEN_ROTATIONS.labels("rotated").inc()
            self._audit.log_event(
                AuditEventType.TOKEN_ROTATED,
                user_id=successor.user_id,
                event_data={
                    "old_session_id": session.id,
                    "new_session_id": successor.id,
                    "rotation_count": successor.rotation_count,
                },
                ip_address=ip_address,
                user_agent=user_agent,
                success=True,
            )
            return self._token_pair(successor, successor_token)

        raise TokenInvalidError("Invalid refresh token")

    def _handle_revoked(
        self,
        db: Session,
        session: AuthSession,
        presented_token: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> TokenPair:
        if session.revoked_reason == RevocationReason.REUSE_DETECTED:
            TOKEN_ROTATIONS.labels("family_compromised").inc()
            raise TokenReusedError()
        if session.revoked_reason != RevocationReason.ROTATED:
            TOKEN_ROTATIONS.labels("revoked").inc()
            raise TokenInvalidError("Session has been revoked")

        now = clock.utcnow()
        rotated_at = clock.as_naive_utc(session.revoked_at) or now
        elapsed = (now - rotated_at).total_seconds()
        successor = db.execute(
            select(AuthSession)
            .where(AuthSession.parent_session_id == session.id)
            .order_by(AuthSession.created_at.desc(), AuthSession.id.desc())
        ).scalars().first()

        if elapsed < settings.REFRESH_TOKEN_REUSE_GRACE_SECONDS and successor is not None and not successor.revoked:
            tolerated = db.execute(
                update(AuthSession)
                .where(
                    AuthSession.id == session.id,
                    AuthSession.duplicate_count < settings.REFRESH_TOKEN_MAX_DUPLICATES,
                )
                .values(duplicate_count=AuthSession.duplicate_count + 1)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if tolerated.rowcount == 1:
                successor_token = derive_rotated_refresh_token(presented_token)
                if not constant_time_equals(hash_token(successor_token), successor.refresh_token_hash):
                    raise TokenInvalidError("Invalid refresh token")
                TOKEN_ROTATIONS.labels("duplicate").inc()
                logger.warning(
                    "Tolerated duplicate rotation of session %s %.0fms after rotation",
                    session.id,
                    elapsed * 1000,
                )
                self._audit.log_event(
                    AuditEventType.TOKEN_ROTATION_DUPLICATE,
                    user_id=session.user_id,
                    event_data={
                        "session_id": session.id,
                        "successor_session_id": successor.id,
                        "elapsed_ms": int(elapsed * 1000),
                    },
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=True,
                )
                return self._token_pair(successor, successor_token, duplicate=True)

        return self._report_reuse(db, session, elapsed, ip_address, user_agent)

    def _report_reuse(
        self,
        db: Session,
        session: AuthSession,
        elapsed: float,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> TokenPair:
        user_id = session.user_id
        token_family = session.token_family
        session_id = session.id
        revoked = self.revoke_family(
            db,
            token_family,
            reason=RevocationReason.REUSE_DETECTED,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        TOKEN_REUSE_DETECTED.inc()
        TOKEN_ROTATIONS.labels("reuse_detected").inc()
        logger.error(
            "Refresh token reuse detected: session %s (user %s) replayed %.1fs after rotation; "
            "%s sessions in family revoked",
            session_id,
            user_id,
            elapsed,
            revoked,
        )
        self._audit.log_event(
            AuditEventType.TOKEN_REUSE_DETECTED,
            user_id=user_id,
            event_data={
                "session_id": session_id,
                "seconds_since_rotation": round(elapsed, 3),
                "sessions_revoked": revoked,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
        )
        raise TokenReusedError()

    def enforce_rotation_ceiling(
        self,
        db: Session,
        session: AuthSession,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """
        Force a full login once a family has rotated MAX_ROTATION_COUNT times.

        The check is inclusive (``rotation_count >= MAX_ROTATION_COUNT``): the
        session created by the MAX_ROTATION_COUNT-th rotation can still be used
        for access but cannot be rotated again.
        """
        if session.rotation_count < settings.MAX_ROTATION_COUNT:
            return
        self._revoke_sessions(db, [session.id], RevocationReason.ROTATION_LIMIT, clock.utcnow())
        db.commit()
        TOKEN_ROTATIONS.labels("rotation_limit").inc()
        logger.warning("Session %s reached rotation ceiling (%s)", session.id, session.rotation_count)
        self._audit.log_event(
            AuditEventType.ROTATION_LIMIT_REACHED,
            user_id=session.user_id,
            event_data={"session_id": session.id, "rotation_count": session.rotation_count},
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
        )
        raise TokenExpiredError("Session has reached its maximum lifetime. Please sign in again.")

    @staticmethod
    def access_claims(token: str) -> AccessClaims:
        payload = verify_access_token(token)
        try:
            user_id = int(payload["sub"])
            session_id = int(payload["sid"]) if payload.get("sid") is not None else None
        except (TypeError, ValueError):
            raise TokenInvalidError()
        return AccessClaims(user_id=user_id, session_id=session_id)

    @classmethod
    def validate_access(cls, token: str) -> int:
        """Stateless check of signature and expiry; returns the user id."""
        return cls.access_claims(token).user_id

    @staticmethod
    def _revoke_sessions(db: Session, session_ids: List[int], reason: str, now: datetime) -> int:
        result = db.execute(
            update(AuthSession)
            .where(AuthSession.id.in_(session_ids), AuthSession.revoked.is_(False))
            .values(revoked=True, revoked_at=now, revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def revoke_family(
        self,
        db: Session,
        token_family: str,
        reason: str = RevocationReason.ADMIN,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Revoke every live session of a family. Returns the number revoked."""
        now = clock.utcnow()
        user_id = db.execute(
            select(AuthSession.user_id).where(AuthSession.token_family == token_family).limit(1)
        ).scalar_one_or_none()
        live = db.execute(
            update(AuthSession)
            .where(AuthSession.token_family == token_family, AuthSession.revoked.is_(False))
            .values(revoked=True, revoked_at=now, revoked_reason=reason)
            .execution_options(synchronize_session=False)
        ).rowcount or 0
        if reason == RevocationReason.REUSE_DETECTED:
            # Mark already-rotated links too so any replay of them is recognised.
            db.execute(
                update(AuthSession)
                .where(AuthSession.token_family == token_family)
                .values(revoked_reason=reason)
                .execution_options(synchronize_session=False)
            )
        db.commit()
        db.expire_all()
        logger.info("Revoked token family (%s sessions, reason=%s)", live, reason)
        self._audit.log_event(
            AuditEventType.TOKEN_FAMILY_REVOKED,
            user_id=user_id,
            event_data={"token_family": token_family, "reason": reason, "sessions_revoked": live},
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        return live

    def revoke_session(
        self,
        db: Session,
        session_id: int,
        user_id: Optional[int] = None,
        reason: str = RevocationReason.LOGOUT,
    ) -> bool:
        """
        Revoke one session (log out one device).

        Raises:
            ResourceNotFoundError: Session missing or owned by another user
        """
        session = db.get(AuthSession, session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise ResourceNotFoundError("Session")
        revoked = self._revoke_sessions(db, [session_id], reason, clock.utcnow())
        db.commit()
        db.expire_all()
        return revoked == 1

    def revoke_refresh_token(self, db: Session, refresh_token: str, reason: str = RevocationReason.LOGOUT) -> Optional[AuthSession]:
        """Revoke the session a refresh token belongs to; returns it if one matched."""
        if not refresh_token:
            return None
        session = db.execute(
            select(AuthSession).where(AuthSession.refresh_token_hash == hash_token(refresh_token))
        ).scalar_one_or_none()
        if session is None:
            return None
        self._revoke_sessions(db, [session.id], reason, clock.utcnow())
        db.commit()
        db.refresh(session)
        return session

    def revoke_all_for_user(
        self,
        db: Session,
        user_id: int,
        except_session_id: Optional[int] = None,
        reason: str = RevocationReason.ADMIN,
    ) -> int:
        query = (
            update(AuthSession)
            .where(AuthSession.user_id == user_id, AuthSession.revoked.is_(False))
            .values(revoked=True, revoked_at=clock.utcnow(), revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if except_session_id is not None:
            query = query.where(AuthSession.id != except_session_id)
        revoked = db.execute(query).rowcount or 0
        db.commit()
        db.expire_all()
        logger.info("Revoked %s sessions for user %s (reason=%s)", revoked, user_id, reason)
        return revoked

    @staticmethod
    def list_active_sessions(db: Session, user_id: int) -> List[AuthSession]:
        return (
            db.query(AuthSession)
            .filter(
                AuthSession.user_id == user_id,
                AuthSession.revoked.is_(False),
                AuthSession.expires_at > clock.utcnow(),
            )
            .order_by(AuthSession.last_used_at.desc(), AuthSession.id.desc())
            .all()
        )

    def sweep_expired(self, db: Session, retention_days: Optional[int] = None) -> SessionSweepStats:
        """
        Housekeeping for the session table.

        Marks live sessions past their horizon as revoked, deletes dead sessions
        older than the retention horizon and clears dangling parent links.
        Safe to run concurrently with request traffic.
        """
        days = settings.SESSION_RETENTION_DAYS if retention_days is None else retention_days
        now = clock.utcnow()
        horizon = now - timedelta(days=days)

        expired_marked = db.execute(
            update(AuthSession)
            .where(AuthSession.revoked.is_(False), AuthSession.expires_at <= now)
            .values(revoked=True, revoked_at=now, revoked_reason=RevocationReason.EXPIRED)
            .execution_options(synchronize_session=False)
        ).rowcount or 0

        deleted = db.execute(
            delete(AuthSession)
            .where(AuthSession.revoked.is_(True), AuthSession.created_at < horizon)
            .execution_options(synchronize_session=False)
        ).rowcount or 0

        existing_ids = select(AuthSession.id).scalar_subquery()
        orphans_cleared = db.execute(
            update(AuthSession)
            .where(
                AuthSession.parent_session_id.isnot(None),
                AuthSession.parent_session_id.not_in(existing_ids),
            )
            .values(parent_session_id=None)
            .execution_options(synchronize_session=False)
        ).rowcount or 0
        db.commit()

        stats = SessionSweepStats(
            expired_marked=expired_marked, deleted=deleted, orphans_cleared=orphans_cleared
        )
        logger.info(
            "Session sweep: %s expired, %s deleted, %s orphan links cleared",
            expired_marked,
            deleted,
            orphans_cleared,
        )
        if expired_marked or deleted:
            self._audit.log_event(
                AuditEventType.SESSION_CLEANUP,
                event_data={
                    "expired_marked": expired_marked,
                    "deleted": deleted,
                    "orphans_cleared": orphans_cleared,
                },
                success=True,
            )
        return stats

    @staticmethod
    def active_sessions_by_device(db: Session, user_id: Optional[int] = None) -> Dict[str, int]:
        """Live session counts keyed by device type (``unknown`` when no User-Agent was seen)."""
        query = (
            db.query(AuthSession.device_type, func.count(AuthSession.id))
            .filter(AuthSession.revoked.is_(False), AuthSession.expires_at > clock.utcnow())
            .group_by(AuthSession.device_type)
        )
        if user_id is not None:
            query = query.filter(AuthSession.user_id == user_id)
        return {device_type or "unknown": count for device_type, count in query.all()}

    @staticmethod
    def session_stats(db: Session) -> Dict[str, Any]:
        now = clock.utcnow()
        total = db.query(func.count(AuthSession.id)).scalar() or 0
        active = (
            db.query(func.count(AuthSession.id))
            .filter(AuthSession.revoked.is_(False), AuthSession.expires_at > now)
            .scalar()
            or 0
        )
        expired = db.query(func.count(AuthSession.id)).filter(AuthSession.expires_at <= now).scalar() or 0
        revoked = db.query(func.count(AuthSession.id)).filter(AuthSession.revoked.is_(True)).scalar() or 0
        avg_rotation = (
            db.query(func.avg(AuthSession.rotation_count))
            .filter(AuthSession.revoked.is_(False))
            .scalar()
        )
        return {
            "total": total,
            "active": active,
            "expired": expired,
            "revoked": revoked,
            "avg_rotation_count": float(avg_rotation or 0),
            "by_device_type": TokenService.active_sessions_by_device(db),
        }


token_service = TokenService()
