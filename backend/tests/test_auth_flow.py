import pytest

from app.config import settings
from app.core.exceptions import (
    AccountLockedError,
    AuthenticationError,
    InvalidCredentialsError,
    RateLimitExceededError,
    TokenInvalidError,
    ValidationError,
)
from app.models.audit import AuditEventType, AuditLog
from app.models.security import AuthSession, RevocationReason
from app.models.user import User


@pytest.fixture
def generous_limits(monkeypatch):
    monkeypatch.setattr(settings, "LOGIN_IP_MAX_ATTEMPTS", 50)
    monkeypatch.setattr(settings, "LOGIN_EMAIL_MAX_ATTEMPTS", 50)


def _events(db, event_type):
    return db.query(AuditLog).filter(AuditLog.event_type == event_type.value).all()


def test_login_issues_session_and_audits(db, auth, make_user, fake_clock):
    user = make_user()
    result = auth.login(db, " Alice@Example.com ", "correct-horse", ip_address="10.0.0.1", user_agent="pytest")

    assert result.user.id == user.id
    assert result.tokens.session.user_id == user.id
    db.expire_all()
    assert db.get(User, user.id).last_login == fake_clock.now

    success = _events(db, AuditEventType.LOGIN_SUCCESS)
    assert len(success) == 1
    assert success[0].ip_address == "10.0.0.1"


def test_wrong_password_and_unknown_account_look_the_same(db, auth, make_user):
    make_user()
    with pytest.raises(InvalidCredentialsError) as wrong_password:
        auth.login(db, "alice@example.com", "nope", ip_address="10.0.0.1")
    with pytest.raises(InvalidCredentialsError) as unknown:
        auth.login(db, "nobody@example.com", "nope", ip_address="10.0.0.1")

    assert wrong_password.value.message == unknown.value.message
    failed = _events(db, AuditEventType.LOGIN_FAILED)
    assert sorted(entry.data["reason"] for entry in failed) == ["invalid_password", "unknown_account"]


def test_inactive_account_cannot_log_in(db, auth, make_user):
    make_user(is_active=False)
    with pytest.raises(InvalidCredentialsError):
        auth.login(db, "alice@example.com", "correct-horse", ip_address="10.0.0.1")


def test_repeated_failures_lock_account(db, auth, make_user, fake_clock, generous_limits):
    user = make_user()
    for _ in range(4):
        with pytest.raises(InvalidCredentialsError):
            auth.login(db, "alice@example.com", "wrong", ip_address="10.0.0.1")

    with pytest.raises(AccountLockedError) as exc_info:
        auth.login(db, "alice@example.com", "wrong", ip_address="10.0.0.1")
    assert exc_info.value.remaining_ms == 300000
    assert exc_info.value.status_code == 423

    # Locked accounts are rejected before the password is looked at.
    with pytest.raises(AccountLockedError):
        auth.login(db, "alice@example.com", "correct-horse", ip_address="10.0.0.1")
    assert len(_events(db, AuditEventType.ACCOUNT_LOCKED)) == 1

    fake_clock.advance(minutes=5, seconds=1)
    result = auth.login(db, "alice@example.com", "correct-horse", ip_address="10.0.0.1")
    assert result.user.id == user.id
    db.expire_all()
    assert db.get(User, user.id).failed_login_attempts == 0


def test_ip_limit_spans_distinct_emails(db, auth, fake_clock):
    ip = "203.0.113.5"
    for n in range(5):
        with pytest.raises(InvalidCredentialsError):
            auth.login(db, f"user{n}@example.com", "whatever", ip_address=ip)

    with pytest.raises(RateLimitExceededError) as exc_info:
        auth.login(db, "fresh@example.com", "whatever", ip_address=ip)
    assert exc_info.value.retry_after > 0
    assert "fresh@example.com" not in exc_info.value.message


def test_successful_login_resets_lockout_but_not_rate_limit(db, auth, limiter, make_user, fake_clock):
    user = make_user()
    for _ in range(2):
        with pytest.raises(InvalidCredentialsError):
            auth.login(db, "alice@example.com", "wrong", ip_address="10.0.0.1")
    auth.login(db, "alice@example.com", "correct-horse", ip_address="10.0.0.1")

    db.expire_all()
    assert db.get(User, user.id).failed_login_attempts == 0
    assert limiter.remaining(db, "login:ip:10.0.0.1", settings.LOGIN_IP_MAX_ATTEMPTS) == 2
    assert limiter.remaining(db, "login:email:alice@example.com", settings.LOGIN_EMAIL_MAX_ATTEMPTS) == 2


def test_provider_login(db, auth, make_user):
    user = make_user()
    result = auth.login_with_provider(db, user.id, "github", ip_address="10.0.0.1")
    assert result.tokens.session.user_id == user.id
    assert db.query(AuditLog).filter(AuditLog.event_type == "auth.oauth.github.success").count() == 1

    with pytest.raises(AuthenticationError):
        auth.login_with_provider(db, 4242, "github")


def test_provider_name_must_fit_event_type(db, auth, make_user):
    user = make_user()
    for provider in ("x" * 65, "Git Hub", "", "../evil"):
        with pytest.raises(ValidationError):
            auth.login_with_provider(db, user.id, provider)

    provider = "p" * 64
    auth.login_with_provider(db, user.id, provider)
    event_type = AuditEventType.oauth_success(provider)
    assert len(event_type) <= AuditLog.__table__.c.event_type.type.length
    assert db.query(AuditLog).filter(AuditLog.event_type == event_type).count() == 1


def test_refresh_and_logout(db, auth, make_user, fake_clock):
    make_user()
    login = auth.login(db, "alice@example.com", "correct-horse", ip_address="10.0.0.1")
    rotated = auth.refresh(db, login.tokens.refresh_token, ip_address="10.0.0.1")
    assert rotated.session.token_family == login.tokens.session.token_family

    assert auth.logout(db, rotated.refresh_token, ip_address="10.0.0.1") is True
    with pytest.raises(TokenInvalidError):
        auth.refresh(db, rotated.refresh_token, ip_address="10.0.0.1")
    assert auth.logout(db, "unknown-token") is False
    assert len(_events(db, AuditEventType.LOGOUT)) == 2

    with pytest.raises(TokenInvalidError):
        auth.refresh(db, None)


def test_password_reset_flow(db, auth, notifier, make_user, fake_clock):
    user = make_user()
    first_login = auth.login(db, "alice@example.com", "correct-horse", ip_address="10.0.0.1")

    issued = auth.request_password_reset(db, "alice@example.com", ip_address="10.0.0.1")
    assert issued is not None
    assert notifier.sent[0]["user_id"] == user.id
    assert notifier.sent[0]["token"] == issued.token

    assert auth.complete_password_reset(db, issued.token, "brand-new-pass", ip_address="10.0.0.1") == user.id

    with pytest.raises(TokenInvalidError):
        auth.complete_password_reset(db, issued.token, "another-pass-1")

    db.expire_all()
    session = db.get(AuthSession, first_login.tokens.session.id)
    assert session.revoked is True
    assert session.revoked_reason == RevocationReason.PASSWORD_RESET

    with pytest.raises(InvalidCredentialsError):
        auth.login(db, "alice@example.com", "correct-horse", ip_address="10.0.0.2")
    assert auth.login(db, "alice@example.com", "brand-new-pass", ip_address="10.0.0.2").user.id == user.id

    assert len(_events(db, AuditEventType.PASSWORD_RESET_COMPLETE)) == 1
    assert len(_events(db, AuditEventType.PASSWORD_RESET_FAILED)) == 1


def test_password_reset_for_unknown_email_is_silent(db, auth, notifier):
    assert auth.request_password_reset(db, "ghost@example.com", ip_address="10.0.0.1") is None
    assert notifier.sent == []


def test_rejected_password_does_not_burn_reset_token(db, auth, resets, make_user):
    make_user()
    issued = auth.request_password_reset(db, "alice@example.com", ip_address="10.0.0.1")

    with pytest.raises(ValidationError):
        auth.complete_password_reset(db, issued.token, "short")
    assert resets.validate(db, issued.token).token_id == issued.token_id


def test_password_reset_requests_are_rate_limited(db, auth, make_user):
    make_user()
    for _ in range(3):
        auth.request_password_reset(db, "alice@example.com", ip_address="10.0.0.9")
    with pytest.raises(RateLimitExceededError):
        auth.request_password_reset(db, "alice@example.com", ip_address="10.0.0.9")
