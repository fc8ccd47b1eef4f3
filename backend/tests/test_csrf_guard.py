import pytest

from app.core.exceptions import CSRFRejectedError
from app.core.transport import InMemoryTransport
from app.models.audit import AuditEventType, AuditLog
from app.services.csrf_guard import CSRFGuard


def test_issue_token_sets_readable_cookie(csrf):
    transport = InMemoryTransport()
    token = csrf.issue_token(transport)

    cookie = transport.set_cookies["csrf-token"]
    assert cookie.value == token
    assert cookie.http_only is False
    assert cookie.max_age == 14 * 24 * 60 * 60
    assert cookie.path == "/"
    assert len(token) >= 32


def test_tokens_are_unique(csrf):
    assert csrf.issue_token(InMemoryTransport()) != csrf.issue_token(InMemoryTransport())


def test_validate_requires_both_sides():
    assert CSRFGuard.validate(None, "abc") is False
    assert CSRFGuard.validate("abc", None) is False
    assert CSRFGuard.validate("", "") is False


def test_validate_requires_exact_match():
    token = "Zr0pX1eTq9-abcdefghijklmnopqrstuvwx"
    assert CSRFGuard.validate(token, token) is True
    assert CSRFGuard.validate(token, token[:-1] + "y") is False
    assert CSRFGuard.validate(token, token + "z") is False
    assert CSRFGuard.validate(token, token.upper()) is False


def test_enforce_accepts_matching_header(csrf):
    transport = InMemoryTransport(headers={"X-CSRF-Token": "tok-123"}, cookies={"csrf-token": "tok-123"})
    csrf.enforce(transport)


def test_enforce_rejects_and_audits_presence_only(db, csrf):
    transport = InMemoryTransport(
        headers={"User-Agent": "pytest", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
        cookies={"csrf-token": "secret-cookie-value"},
    )
    with pytest.raises(CSRFRejectedError) as exc_info:
        csrf.enforce(transport)
    assert exc_info.value.status_code == 403

    entry = db.query(AuditLog).filter(AuditLog.event_type == AuditEventType.CSRF_FAILED.value).one()
    assert entry.data == {"header_token": "missing", "cookie_token": "present"}
    assert entry.ip_address == "203.0.113.9"
    assert entry.user_agent == "pytest"
    assert "secret-cookie-value" not in (entry.event_data or "")


def test_enforce_rejects_mismatch(csrf):
    transport = InMemoryTransport(headers={"x-csrf-token": "aaaa"}, cookies={"csrf-token": "aaab"})
    with pytest.raises(CSRFRejectedError):
        csrf.enforce(transport)
