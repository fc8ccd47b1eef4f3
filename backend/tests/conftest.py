from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core import clock
from app.core.database import Base
from app.core.security import get_password_hash
from app.models.user import User
from app.services.account_lockout import AccountLockoutService
from app.services.audit_service import AuditService
from app.services.auth_service import AuthService
from app.services.csrf_guard import CSRFGuard
from app.services.password_reset import PasswordResetService
from app.services.rate_limiter import RateLimiter
from app.services.token_service import TokenService


class FakeClock:
    """Stands in for ``clock.utcnow``; starts at the real time so JWTs stay valid."""

    def __init__(self):
        self.now = clock.utcnow().replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send_password_reset(self, user_id, email, token, expires_at):
        self.sent.append({"user_id": user_id, "email": email, "token": token, "expires_at": expires_at})


@pytest.fixture
def fake_clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(clock, "utcnow", fake)
    return fake


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def audit(session_factory):
    return AuditService(session_factory=session_factory)


@pytest.fixture
def make_user(db):
    def _make(email="alice@example.com", password="correct-horse", role="user", is_active=True):
        user = User(
            email=email,
            password_hash=get_password_hash(password),
            role=role,
            is_active=is_active,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def limiter(audit):
    return RateLimiter(audit=audit)


@pytest.fixture
def lockout():
    return AccountLockoutService()


@pytest.fixture
def tokens(audit):
    return TokenService(audit=audit)


@pytest.fixture
def resets():
    return PasswordResetService()


@pytest.fixture
def csrf(audit):
    return CSRFGuard(audit=audit)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth(audit, limiter, lockout, tokens, resets, notifier):
    return AuthService(
        audit=audit,
        limiter=limiter,
        lockout=lockout,
        tokens=tokens,
        resets=resets,
        notifier=notifier,
    )
