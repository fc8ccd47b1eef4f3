from datetime import timedelta

import pytest

from app.config import settings
from app.core.exceptions import (
    ResourceNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    TokenReusedError,
)
from app.core.security import create_access_token, hash_token
from app.models.audit import AuditEventType, AuditLog
from app.models.security import AuthSession, RevocationReason


def _family(db, token_family):
    db.expire_all()
    return db.query(AuthSession).filter(AuthSession.token_family == token_family).order_by(AuthSession.id).all()


def test_issue_stores_only_refresh_hash(db, tokens, make_user, fake_clock):
    user = make_user()
    pair = tokens.issue(db, user.id, ip_address="10.0.0.1", user_agent="pytest")

    session = db.get(AuthSession, pair.session.id)
    assert session.refresh_token_hash == hash_token(pair.refresh_token)
    assert session.rotation_count == 0
    assert session.parent_session_id is None
    assert session.revoked is False
    assert pair.refresh_expires_at == fake_clock.now + timedelta(days=7)
    assert pair.access_expires_at == fake_clock.now + timedelta(minutes=15)
    assert tokens.validate_access(pair.access_token) == user.id


def test_remember_me_extends_refresh_horizon(db, tokens, make_user, fake_clock):
    user = make_user()
    pair = tokens.issue(db, user.id, remember_me=True)
    assert pair.refresh_expires_at == fake_clock.now + timedelta(days=90)


def test_each_login_starts_a_new_family(db, tokens, make_user):
    user = make_user()
    first = tokens.issue(db, user.id)
    second = tokens.issue(db, user.id)
    assert first.session.token_family != second.session.token_family


def test_rotation_chain_continues(db, tokens, make_user, fake_clock):
    user = make_user()
    first = tokens.issue(db, user.id)

    second = tokens.rotate(db, first.refresh_token)
    fake_clock.advance(seconds=30)
    third = tokens.rotate(db, second.refresh_token)

    assert len({first.refresh_token, second.refresh_token, third.refresh_token}) == 3
    assert third.session.rotation_count == 2
    assert third.session.parent_session_id == second.session.id
    assert tokens.validate_access(third.access_token) == user.id

    chain = _family(db, first.session.token_family)
    assert [s.revoked for s in chain] == [True, True, False]
    assert [s.revoked_reason for s in chain[:2]] == [RevocationReason.ROTATED] * 2

    rotated_events = db.query(AuditLog).filter(AuditLog.event_type == AuditEventType.TOKEN_ROTATED.value).count()
    assert rotated_events == 2


def test_reuse_outside_grace_revokes_family(db, tokens, make_user, fake_clock):
    user = make_user()
    first = tokens.issue(db, user.id)
    second = tokens.rotate(db, first.refresh_token)
    fake_clock.advance(seconds=10)
    third = tokens.rotate(db, second.refresh_token)

    fake_clock.advance(seconds=10)
    with pytest.raises(TokenReusedError):
        tokens.rotate(db, first.refresh_token)

    # The last legitimate token of the family is dead too.
    with pytest.raises(TokenReusedError):
        tokens.rotate(db, third.refresh_token)
    with pytest.raises(TokenReusedError):
        tokens.rotate(db, second.refresh_token)

    chain = _family(db, first.session.token_family)
    assert all(s.revoked for s in chain)
    assert {s.revoked_reason for s in chain} == {RevocationReason.REUSE_DETECTED}

    event = db.query(AuditLog).filter(AuditLog.event_type == AuditEventType.TOKEN_REUSE_DETECTED.value).one()
    assert event.success is False
    assert event.user_id == user.id
    assert event.data["sessions_revoked"] == 1


def test_reuse_does_not_touch_other_families(db, tokens, make_user, fake_clock):
    user = make_user()
    laptop = tokens.issue(db, user.id)
    phone = tokens.issue(db, user.id)
    tokens.rotate(db, laptop.refresh_token)
    fake_clock.advance(seconds=60)

    with pytest.raises(TokenReusedError):
        tokens.rotate(db, laptop.refresh_token)
    assert tokens.rotate(db, phone.refresh_token).session.token_family == phone.session.token_family


def test_duplicate_rotation_inside_grace_returns_same_tokens(db, tokens, make_user, fake_clock):
    user = make_user()
    original = tokens.issue(db, user.id)

    winner = tokens.rotate(db, original.refresh_token)
    fake_clock.advance(milliseconds=100)
    retry = tokens.rotate(db, original.refresh_token)

    assert winner.duplicate is False
    assert retry.duplicate is True
    assert retry.refresh_token == winner.refresh_token
    assert retry.session.id == winner.session.id

    chain = _family(db, original.session.token_family)
    assert [s.revoked for s in chain] == [True, False]

    # Whichever response the client kept, the chain continues.
    fake_clock.advance(seconds=1)
    assert tokens.rotate(db, retry.refresh_token).session.rotation_count == 2


def test_duplicates_beyond_bound_count_as_reuse(db, tokens, make_user, fake_clock):
    user = make_user()
    original = tokens.issue(db, user.id)
    tokens.rotate(db, original.refresh_token)
    fake_clock.advance(milliseconds=50)
    tokens.rotate(db, original.refresh_token)
    fake_clock.advance(milliseconds=50)

    with pytest.raises(TokenReusedError):
        tokens.rotate(db, original.refresh_token)


def test_replay_after_successor_rotated_is_reuse(db, tokens, make_user, fake_clock):
    user = make_user()
    original = tokens.issue(db, user.id)
    second = tokens.rotate(db, original.refresh_token)
    tokens.rotate(db, second.refresh_token)
    fake_clock.advance(seconds=1)

    with pytest.raises(TokenReusedError):
        tokens.rotate(db, original.refresh_token)


def test_unknown_refresh_token_is_invalid(db, tokens):
    with pytest.raises(TokenInvalidError):
        tokens.rotate(db, "does-not-exist")
    with pytest.raises(TokenInvalidError):
        tokens.rotate(db, "")


def test_logged_out_token_is_invalid_not_reused(db, tokens, make_user, fake_clock):
    user = make_user()
    pair = tokens.issue(db, user.id)
    revoked = tokens.revoke_refresh_token(db, pair.refresh_token)
    assert revoked.revoked_reason == RevocationReason.LOGOUT

    with pytest.raises(TokenInvalidError):
        tokens.rotate(db, pair.refresh_token)


def test_expired_session_cannot_rotate(db, tokens, make_user, fake_clock):
    user = make_user()
    pair = tokens.issue(db, user.id)
    fake_clock.advance(days=7, seconds=1)

    with pytest.raises(TokenExpiredError):
        tokens.rotate(db, pair.refresh_token)
    session = db.get(AuthSession, pair.session.id)
    assert session.revoked_reason == RevocationReason.EXPIRED


def test_rotation_ceiling_forces_login(db, tokens, make_user, fake_clock, monkeypatch):
    monkeypatch.setattr(settings, "MAX_ROTATION_COUNT", 2)
    user = make_user()
    pair = tokens.issue(db, user.id)
    pair = tokens.rotate(db, pair.refresh_token)
    pair = tokens.rotate(db, pair.refresh_token)
    assert pair.session.rotation_count == 2

    with pytest.raises(TokenExpiredError):
        tokens.rotate(db, pair.refresh_token)
    db.expire_all()
    assert db.get(AuthSession, pair.session.id).revoked_reason == RevocationReason.ROTATION_LIMIT
    assert db.query(AuditLog).filter(
        AuditLog.event_type == AuditEventType.ROTATION_LIMIT_REACHED.value
    ).count() == 1


def test_inactive_user_cannot_rotate(db, tokens, make_user):
    user = make_user()
    pair = tokens.issue(db, user.id)
    user.is_active = False
    db.commit()

    with pytest.raises(TokenInvalidError):
        tokens.rotate(db, pair.refresh_token)

    event = db.query(AuditLog).filter(AuditLog.event_type == AuditEventType.TOKEN_FAMILY_REVOKED.value).one()
    assert event.data["reason"] == RevocationReason.ADMIN


def test_validate_access_rejects_bad_tokens(tokens):
    expired = create_access_token({"sub": "1"}, expires_delta=timedelta(seconds=-5))
    with pytest.raises(TokenExpiredError):
        tokens.validate_access(expired)
    with pytest.raises(TokenInvalidError):
        tokens.validate_access("garbage")
    with pytest.raises(TokenInvalidError):
        tokens.validate_access(create_access_token({"sub": "not-a-number"}))


def test_revoke_session_checks_ownership(db, tokens, make_user):
    alice = make_user()
    bob = make_user(email="bob@example.com")
    pair = tokens.issue(db, alice.id)

    with pytest.raises(ResourceNotFoundError):
        tokens.revoke_session(db, pair.session.id, user_id=bob.id)
    assert tokens.revoke_session(db, pair.session.id, user_id=alice.id) is True
    assert tokens.revoke_session(db, pair.session.id, user_id=alice.id) is False


def test_revoke_all_for_user_can_keep_current(db, tokens, make_user):
    user = make_user()
    current = tokens.issue(db, user.id)
    tokens.issue(db, user.id)
    tokens.issue(db, user.id)

    assert tokens.revoke_all_for_user(db, user.id, except_session_id=current.session.id) == 2
    assert [s.id for s in tokens.list_active_sessions(db, user.id)] == [current.session.id]
    assert tokens.revoke_all_for_user(db, user.id) == 1
    assert tokens.list_active_sessions(db, user.id) == []


def test_revoke_family(db, tokens, make_user):
    user = make_user()
    pair = tokens.issue(db, user.id)
    rotated = tokens.rotate(db, pair.refresh_token)

    assert tokens.revoke_family(db, pair.session.token_family, ip_address="10.0.0.7") == 1
    with pytest.raises(TokenInvalidError):
        tokens.rotate(db, rotated.refresh_token)

    event = db.query(AuditLog).filter(AuditLog.event_type == AuditEventType.TOKEN_FAMILY_REVOKED.value).one()
    assert event.user_id == user.id
    assert event.ip_address == "10.0.0.7"
    assert event.data == {
        "token_family": pair.session.token_family,
        "reason": RevocationReason.ADMIN,
        "sessions_revoked": 1,
    }


def test_sweep_expired_marks_deletes_and_clears_orphans(db, tokens, make_user, fake_clock):
    user = make_user()
    short_id = tokens.issue(db, user.id).session.id
    long_lived = tokens.issue(db, user.id, remember_me=True)
    fake_clock.advance(seconds=10)
    successor_id = tokens.rotate(db, long_lived.refresh_token).session.id

    fake_clock.advance(days=8)
    stats = tokens.sweep_expired(db)
    assert stats.expired_marked == 1
    assert stats.deleted == 0
    assert db.get(AuthSession, short_id).revoked_reason == RevocationReason.EXPIRED

    stats = tokens.sweep_expired(db, retention_days=1)
    assert stats.deleted == 2
    assert stats.orphans_cleared == 1
    db.expire_all()
    assert db.get(AuthSession, short_id) is None
    live = db.get(AuthSession, successor_id)
    assert live.revoked is False
    assert live.parent_session_id is None

    again = tokens.sweep_expired(db, retention_days=1)
    assert (again.expired_marked, again.deleted, again.orphans_cleared) == (0, 0, 0)


def test_session_stats(db, tokens, make_user, fake_clock):
    user = make_user()
    pair = tokens.issue(db, user.id)
    tokens.rotate(db, pair.refresh_token)
    tokens.issue(db, user.id)

    stats = tokens.session_stats(db)
    assert stats["total"] == 3
    assert stats["active"] == 2
    assert stats["revoked"] == 1
    assert stats["avg_rotation_count"] == pytest.approx(0.5)
    assert stats["by_device_type"] == {"unknown": 2}


IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def test_sessions_record_device_metadata(db, tokens, make_user, fake_clock):
    user = make_user()
    phone = tokens.issue(db, user.id, user_agent=IPHONE_UA)
    tokens.issue(db, user.id, user_agent=DESKTOP_UA)

    fake_clock.advance(seconds=1)
    rotated = tokens.rotate(db, phone.refresh_token, user_agent=IPHONE_UA)
    assert rotated.session.device_type == "mobile"
    assert rotated.session.os.startswith("iOS")
    assert "iPhone" in rotated.session.device_name

    assert tokens.active_sessions_by_device(db, user.id) == {"mobile": 1, "desktop": 1}
    assert tokens.session_stats(db)["by_device_type"] == {"mobile": 1, "desktop": 1}
