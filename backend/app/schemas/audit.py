"""Audit log response schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class AuditEventResponse(BaseModel):
    id: int
    user_id: Optional[int]
    event_type: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    success: bool
    data: Dict[str, Any] = {}
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class SuspiciousIPResponse(BaseModel):
    ip_address: str
    failed_attempts: int


class SecuritySummaryResponse(BaseModel):
    user_id: int
    days: int
    total_events: int
    successful_events: int
    failed_events: int
    event_types: List[str]
    unique_ips: List[str]
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    active_sessions: int = 0
    sessions_by_device: Dict[str, int] = {}


class SessionStatsResponse(BaseModel):
    total: int
    active: int
    expired: int
    revoked: int
    avg_rotation_count: float
    by_device_type: Dict[str, int] = {}
