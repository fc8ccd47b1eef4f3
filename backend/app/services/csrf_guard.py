"""CSRF double-submit protection for state-changing requests."""

from __future__ import annotations

import logging
from typing import Optional

from app.config import settings
from app.core.exceptions import CSRFRejectedError
from app.core.metrics import CSRF_REJECTIONS
from app.core.security import constant_time_equals, generate_csrf_token
from app.core.transport import TransportContext, get_client_ip, get_user_agent
from app.models.audit import AuditEventType
from app.services.audit_service import AuditService, audit_service as default_audit_service

logger = logging.getLogger(__name__)


class CSRFGuard:
    """Compare the ``x-csrf-token`` header against the readable ``csrf-token`` cookie."""

    def __init__(self, audit: Optional[AuditService] = None) -> None:
        self._audit = audit or default_audit_service

    def issue_token(self, transport: TransportContext) -> str:
        token = generate_csrf_token()
        transport.set_cookie(
            settings.CSRF_COOKIE_NAME,
            token,
            max_age=settings.CSRF_TOKEN_MAX_AGE_SECONDS,
            path="/",
            http_only=False,  # client code echoes it back in the header
            secure=settings.is_production,
            same_site=settings.COOKIE_SAMESITE,
        )
        return token

    @staticmethod
    def validate(header_token: Optional[str], cookie_token: Optional[str]) -> bool:
        if not header_token or not cookie_token:
            return False
        return constant_time_equals(header_token, cookie_token)

    def enforce(self, transport: TransportContext) -> None:
        """Reject the request unless header and cookie carry the same token."""
        header_token = transport.get_header(settings.CSRF_HEADER_NAME)
        cookie_token = transport.get_cookie(settings.CSRF_COOKIE_NAME)
        if self.validate(header_token, cookie_token):
            return

        CSRF_REJECTIONS.inc()
        self._audit.log_event(
            AuditEventType.CSRF_FAILED,
            event_data={
                "header_token": "present" if header_token else "missing",
                "cookie_token": "present" if cookie_token else "missing",
            },
            ip_address=get_client_ip(transport),
            user_agent=get_user_agent(transport),
            success=False,
        )
        raise CSRFRejectedError()


csrf_guard = CSRFGuard()
