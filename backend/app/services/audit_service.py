"""Security audit logging: fire-and-forget writes plus investigative queries."""

from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import delete, distinct, func
from sqlalchemy.orm import Session

from app.config import settings
from app.core import clock
from app.core.metrics import AUDIT_WRITE_FAILURES
from app.models.audit import AuditEventType, AuditLog

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass
class AuditEntry:
    event_type: str
    user_id: Optional[int] = None
    event_data: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    created_at: datetime = field(default_factory=lambda: clock.utcnow())


@dataclass
class SecuritySummary:
    total_events: int
    successful_events: int
    failed_events: int
    event_types: List[str]
    unique_ips: List[str]
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None


@dataclass
class SuspiciousIP:
    ip_address: str
    failed_attempts: int


def _default_session_factory() -> Session:
    from app.core.database import SessionLocal

    return SessionLocal()


class AuditService:
    """Persist immutable audit trail entries without blocking the caller."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        queue_size: Optional[int] = None,
        write_attempts: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory or _default_session_factory
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=queue_size or settings.AUDIT_QUEUE_SIZE)
        self._write_attempts = max(1, write_attempts or settings.AUDIT_WRITE_ATTEMPTS)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._dropped_count = 0

    # Writer lifecycle

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.is_running():
                return
            self._thread = threading.Thread(target=self._run_loop, name="audit-writer", daemon=True)
            self._thread.start()
        logger.info("Audit writer started")

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._queue.put(_STOP)
            thread.join(timeout=timeout)
            self._thread = None
        logger.info("Audit writer stopped")

    def flush(self) -> None:
        """Block until every queued event has been written (or dropped)."""
        if self.is_running():
            self._queue.join()

    def status(self) -> dict:
        return {
            "running": self.is_running(),
            "queued": self._queue.qsize(),
            "dropped_count": self._dropped_count,
        }

    def _run_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self.write_event(item)
            finally:
                self._queue.task_done()

    # Writes

    def log_event(
        self,
        event_type: Union[AuditEventType, str],
        *,
        user_id: Optional[int] = None,
        event_data: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
    ) -> None:
        """Record an event. Never raises; failures only degrade observability."""
        try:
            entry = AuditEntry(
                event_type=getattr(event_type, "value", event_type),
                user_id=user_id,
                event_data=event_data,
                ip_address=ip_address,
                user_agent=user_agent[:512] if user_agent else None,
                success=success,
            )
            if self.is_running():
                try:
                    self._queue.put_nowait(entry)
                    return
                except queue.Full:
                    self._dropped_count += 1
                    AUDIT_WRITE_FAILURES.inc()
                    if self._dropped_count % 100 == 1:
                        logger.error("Audit queue full; dropped %s events total", self._dropped_count)
                    return
            self.write_event(entry)
        except Exception:
            logger.exception("Failed to record audit event %s", event_type)

    def write_event(self, entry: AuditEntry) -> Optional[AuditLog]:
        """Insert one entry using a fresh session, retrying once before giving up."""
        payload = json.dumps(entry.event_data, ensure_ascii=False, default=str) if entry.event_data else None
        for attempt in range(1, self._write_attempts + 1):
            db = None
            try:
                db = self._session_factory()
                record = AuditLog(
                    user_id=entry.user_id,
                    event_type=entry.event_type,
                    event_data=payload,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    success=entry.success,
                    created_at=entry.created_at,
                )
                db.add(record)
                db.commit()
                db.refresh(record)
                db.expunge(record)
                return record
            except Exception as exc:
                if db is not None:
                    db.rollback()
                logger.warning(
                    "Audit write attempt %s/%s failed for %s: %s",
                    attempt,
                    self._write_attempts,
                    entry.event_type,
                    exc,
                )
            finally:
                if db is not None:
                    db.close()

        AUDIT_WRITE_FAILURES.inc()
        logger.error("Dropping audit event %s after %s attempts", entry.event_type, self._write_attempts)
        return None

    # Queries

    @staticmethod
    def query(
        db: Session,
        *,
        event_type: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_id: Optional[int] = None,
        success: Optional[bool] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLog]:
        """Combinable filters, newest first."""
        query = db.query(AuditLog)
        if event_type:
            query = query.filter(AuditLog.event_type == getattr(event_type, "value", event_type))
        if ip_address:
            query = query.filter(AuditLog.ip_address == ip_address)
        if user_id is not None:
            query = query.filter(AuditLog.user_id == user_id)
        if success is not None:
            query = query.filter(AuditLog.success == success)
        if start_date is not None:
            query = query.filter(AuditLog.created_at >= start_date)
        if end_date is not None:
            query = query.filter(AuditLog.created_at <= end_date)
        return (
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset(max(0, offset))
            .limit(max(1, limit))
            .all()
        )

    @staticmethod
    def failed_login_attempts(db: Session, hours: int = 24, limit: int = 100) -> List[AuditLog]:
        return AuditService.query(
            db,
            event_type=AuditEventType.LOGIN_FAILED.value,
            success=False,
            start_date=clock.utcnow() - timedelta(hours=hours),
            limit=limit,
        )

    @staticmethod
    def user_security_summary(db: Session, user_id: int, days: int = 30) -> SecuritySummary:
        since = clock.utcnow() - timedelta(days=days)
        base = db.query(AuditLog).filter(AuditLog.user_id == user_id, AuditLog.created_at >= since)

        total = base.count()
        successful = base.filter(AuditLog.success.is_(True)).count()
        event_types = [
            row[0]
            for row in db.query(distinct(AuditLog.event_type))
            .filter(AuditLog.user_id == user_id, AuditLog.created_at >= since)
            .order_by(AuditLog.event_type)
            .all()
        ]
        unique_ips = [
            row[0]
            for row in db.query(distinct(AuditLog.ip_address))
            .filter(
                AuditLog.user_id == user_id,
                AuditLog.created_at >= since,
                AuditLog.ip_address.isnot(None),
            )
            .order_by(AuditLog.ip_address)
            .all()
        ]
        last_login = (
            db.query(AuditLog)
            .filter(
                AuditLog.user_id == user_id,
                AuditLog.event_type == AuditEventType.LOGIN_SUCCESS.value,
                AuditLog.success.is_(True),
            )
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .first()
        )

        return SecuritySummary(
            total_events=total,
            successful_events=successful,
            failed_events=total - successful,
            event_types=event_types,
            unique_ips=unique_ips,
            last_login_at=clock.as_naive_utc(last_login.created_at) if last_login else None,
            last_login_ip=last_login.ip_address if last_login else None,
        )

    @staticmethod
    def detect_suspicious_activity(
        db: Session, hours: int = 24, min_failed_attempts: int = 5
    ) -> List[SuspiciousIP]:
        """IP addresses with at least ``min_failed_attempts`` failed logins in the window."""
        since = clock.utcnow() - timedelta(hours=hours)
        attempts = func.count(AuditLog.id)
        rows = (
            db.query(AuditLog.ip_address, attempts)
            .filter(
                AuditLog.event_type == AuditEventType.LOGIN_FAILED.value,
                AuditLog.success.is_(False),
                AuditLog.created_at >= since,
                AuditLog.ip_address.isnot(None),
            )
            .group_by(AuditLog.ip_address)
            .having(attempts >= min_failed_attempts)
            .order_by(attempts.desc(), AuditLog.ip_address)
            .all()
        )
        return [SuspiciousIP(ip_address=ip, failed_attempts=count) for ip, count in rows]

    @staticmethod
    def cleanup_old_logs(db: Session, retention_days: Optional[int] = None) -> int:
        """Delete entries older than the retention horizon."""
        days = settings.AUDIT_RETENTION_DAYS if retention_days is None else retention_days
        cutoff = clock.utcnow() - timedelta(days=days)
        result = db.execute(
            delete(AuditLog)
            .where(AuditLog.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info("Audit retention removed %s entries older than %s days", deleted, days)
        return deleted


audit_service = AuditService()
