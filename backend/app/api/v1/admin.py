"""Admin routes - audit trail investigation and session administration"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime

from app.core.database import get_db
from app.core.exceptions import ResourceNotFoundError
from app.models.security import RevocationReason
from app.schemas.audit import (
    AuditEventResponse,
    SecuritySummaryResponse,
    SessionStatsResponse,
    SuspiciousIPResponse,
)
from app.services.audit_service import audit_service
from app.services.auth_service import auth_service
from app.services.token_service import token_service
from app.services.user_service import user_service
from app.api.deps import ClientInfo, get_client_info, get_current_admin_user, require_csrf
from app.models.user import User

router = APIRouter()


@router.get("/audit-logs", response_model=List[AuditEventResponse])
def get_audit_logs(
    event_type: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_id: Optional[int] = None,
    success: Optional[bool] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    """List audit trail entries; every filter is optional and they combine."""
    logs = audit_service.query(
        db,
        event_type=event_type,
        ip_address=ip_address,
        user_id=user_id,
        success=success,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    return [AuditEventResponse.model_validate(log) for log in logs]


@router.get("/audit-logs/failed-logins", response_model=List[AuditEventResponse])
def get_failed_logins(
    hours: int = Query(24, ge=1, le=24 * 90),
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    """Failed login attempts in the last ``hours``."""
    logs = audit_service.failed_login_attempts(db, hours=hours, limit=limit)
    return [AuditEventResponse.model_validate(log) for log in logs]


@router.get("/audit-logs/suspicious", response_model=List[SuspiciousIPResponse])
def get_suspicious_activity(
    hours: int = Query(24, ge=1, le=24 * 90),
    min_failed_attempts: int = Query(5, ge=1),
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    """IP addresses with repeated failed logins."""
    flagged = audit_service.detect_suspicious_activity(
        db, hours=hours, min_failed_attempts=min_failed_attempts
    )
    return [
        SuspiciousIPResponse(ip_address=item.ip_address, failed_attempts=item.failed_attempts)
        for item in flagged
    ]


@router.get("/users/{user_id}/security-summary", response_model=SecuritySummaryResponse)
def get_user_security_summary(
    user_id: int,
    days: int = Query(30, ge=1, le=365),
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    """Audit summary plus current lockout and session state for one user."""
    user = user_service.get_user_by_id(db, user_id)
    if not user:
        raise ResourceNotFoundError("User")

    summary = audit_service.user_security_summary(db, user_id, days=days)
    return SecuritySummaryResponse(
        user_id=user_id,
        days=days,
        total_events=summary.total_events,
        successful_events=summary.successful_events,
        failed_events=summary.failed_events,
        event_types=summary.event_types,
        unique_ips=summary.unique_ips,
        last_login_at=summary.last_login_at,
        last_login_ip=summary.last_login_ip,
        failed_login_attempts=user.failed_login_attempts or 0,
        locked_until=user.locked_until,
        active_sessions=len(token_service.list_active_sessions(db, user_id)),
        sessions_by_device=token_service.active_sessions_by_device(db, user_id),
    )


@router.get("/sessions/stats", response_model=SessionStatsResponse)
def get_session_stats(
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    """Session table counts for monitoring."""
    return SessionStatsResponse(**token_service.session_stats(db))


@router.post("/users/{user_id}/revoke-sessions", dependencies=[Depends(require_csrf)])
def revoke_user_sessions(
    user_id: int,
    current_user: User = Depends(get_current_admin_user),
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db),
):
    """Sign a user out everywhere."""
    if not user_service.get_user_by_id(db, user_id):
        raise ResourceNotFoundError("User")

    revoked = auth_service.revoke_all_sessions(
        db,
        user_id,
        reason=RevocationReason.ADMIN,
        actor_id=current_user.id,
        ip_address=client.ip_address,
        user_agent=client.user_agent,
    )
    return {"success": True, "sessions_revoked": revoked}
