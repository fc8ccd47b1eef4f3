"""Outbound notifications consumed by the auth flows (delivery lives elsewhere)."""

import logging
from datetime import datetime
from typing import Protocol

logger = logging.getLogger(__name__)


class PasswordResetNotifier(Protocol):
    def send_password_reset(self, user_id: int, email: str, token: str, expires_at: datetime) -> None:
        ...


class LoggingPasswordResetNotifier:
    """Default notifier: records that a reset mail is due. Never logs the token."""

    def send_password_reset(self, user_id: int, email: str, token: str, expires_at: datetime) -> None:
        logger.info(
            "Password reset mail queued for user %s (expires %s)",
            user_id,
            expires_at.isoformat(),
        )


password_reset_notifier: PasswordResetNotifier = LoggingPasswordResetNotifier()
