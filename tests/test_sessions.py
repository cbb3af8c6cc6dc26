import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from chirp.errors import BadRequest, Internal, NotFound, Unauthorized
from chirp.models import AuthToken, TokenKind
from chirp.services.credential_store import DeviceInfo
from chirp.services.sessions import RefreshStrategy, SessionManager, device_label_for
from chirp.services.users import UserDirectory


def test_login_persists_hashed_refresh_token(session_manager, codec, db, test_user):
    device = DeviceInfo(user_agent="Mozilla/5.0 (iPhone)", ip="10.0.0.1", device_label="Mobile Device")
    tokens = session_manager.login(test_user.id, device)

    record = db.query(AuthToken).one()
    assert record.kind == TokenKind.REFRESH.value
    assert record.public_id == tokens.public_id
    assert record.token_value == codec.hash(tokens.refresh_token)
    assert record.token_value != tokens.refresh_token
    assert record.device_label == "Mobile Device"
    assert codec.verify_access_token(tokens.access_token).user_id == test_user.id


def test_rotated_refresh_token_cannot_be_reused(session_manager, test_user):
    first = session_manager.login(test_user.id)

    second = session_manager.refresh(first.refresh_token, RefreshStrategy.ROTATE)
    assert second.refresh_token != first.refresh_token
    assert second.public_id != first.public_id

    with pytest.raises(Unauthorized, match="Session expired or invalid"):
        session_manager.refresh(first.refresh_token, RefreshStrategy.ROTATE)

    third = session_manager.refresh(second.refresh_token, RefreshStrategy.ROTATE)
    assert third.refresh_token not in {first.refresh_token, second.refresh_token}


def test_rotation_keeps_a_single_record(session_manager, db, test_user):
    tokens = session_manager.login(test_user.id)
    session_manager.refresh(tokens.refresh_token)

    assert db.query(AuthToken).count() == 1


def test_lost_rotation_race_is_unauthorized(session_manager, test_user, monkeypatch):
    tokens = session_manager.login(test_user.id)
    monkeypatch.setattr(session_manager.store, "replace_value", MagicMock(return_value=False))

    with pytest.raises(Unauthorized, match="Session expired or invalid"):
        session_manager.refresh(tokens.refresh_token)


def test_reuse_strategy_keeps_token_and_session(session_manager, test_user):
    tokens = session_manager.login(test_user.id)

    refreshed = session_manager.refresh(tokens.refresh_token, RefreshStrategy.REUSE)
    assert refreshed.refresh_token == tokens.refresh_token
    assert refreshed.public_id == tokens.public_id

    again = session_manager.refresh(tokens.refresh_token, RefreshStrategy.REUSE)
    assert again.public_id == tokens.public_id


def test_expired_refresh_token_is_unauthorized(store, codec, db, test_user):
    past = datetime.now(timezone.utc) - timedelta(days=8)
    issuing = SessionManager(store, codec, UserDirectory(db), clock=lambda: past)
    tokens = issuing.login(test_user.id)

    manager = SessionManager(store, codec, UserDirectory(db))
    with pytest.raises(Unauthorized, match="Your session has expired"):
        manager.refresh(tokens.refresh_token)


def test_revocation_preempts_embedded_expiry(session_manager, test_user):
    tokens = session_manager.login(test_user.id)
    assert session_manager.logout(tokens.refresh_token, test_user.id) is True

    with pytest.raises(Unauthorized, match="Session expired or invalid"):
        session_manager.refresh(tokens.refresh_token)


def test_access_token_cannot_be_used_to_refresh(session_manager, test_user):
    tokens = session_manager.login(test_user.id)

    with pytest.raises(Unauthorized, match="Invalid authentication token"):
        session_manager.refresh(tokens.access_token)


def test_tampered_refresh_token_is_unauthorized(session_manager, test_user):
    tokens = session_manager.login(test_user.id)

    with pytest.raises(Unauthorized):
        session_manager.refresh(tokens.refresh_token + "x")


def test_refresh_for_deactivated_user_revokes_session(session_manager, db, test_user):
    tokens = session_manager.login(test_user.id)
    test_user.is_active = False
    db.commit()

    with pytest.raises(Unauthorized, match="User account not found or deactivated"):
        session_manager.refresh(tokens.refresh_token)

    record = db.query(AuthToken).one()
    assert record.is_active is False
    assert record.revoked_at is not None


def test_logout_only_revokes_own_session(session_manager, test_user, test_user2):
    tokens = session_manager.login(test_user.id)

    assert session_manager.logout(tokens.refresh_token, test_user2.id) is False
    assert session_manager.logout(tokens.refresh_token, test_user.id) is True
    assert session_manager.logout(tokens.refresh_token, test_user.id) is False


def test_logout_all_revokes_every_session(session_manager, test_user, test_user2):
    first = session_manager.login(test_user.id)
    second = session_manager.login(test_user.id)
    other = session_manager.login(test_user2.id)

    assert session_manager.logout_all(test_user.id) == 2
    assert session_manager.list_sessions(test_user.id) == []

    for tokens in (first, second):
        with pytest.raises(Unauthorized):
            session_manager.refresh(tokens.refresh_token)
    assert session_manager.refresh(other.refresh_token).public_id


def test_list_sessions_never_exposes_token_values(session_manager, test_user):
    tokens = session_manager.login(test_user.id, DeviceInfo(user_agent="pytest-agent", ip="127.0.0.1"))

    sessions = session_manager.list_sessions(test_user.id)
    assert len(sessions) == 1
    session = sessions[0]
    assert session.public_id == tokens.public_id
    assert session.user_agent == "pytest-agent"
    assert session.device_label == "Unknown Device"
    assert tokens.refresh_token not in vars(session).values()


def test_revoke_session_of_other_user_is_not_found(session_manager, test_user, test_user2):
    tokens = session_manager.login(test_user.id)

    with pytest.raises(NotFound, match="Session not found"):
        session_manager.revoke_session(test_user2.id, tokens.public_id)

    assert len(session_manager.list_sessions(test_user.id)) == 1


def test_revoke_session_by_public_id(session_manager, test_user):
    kept = session_manager.login(test_user.id)
    dropped = session_manager.login(test_user.id)

    session_manager.revoke_session(test_user.id, dropped.public_id)

    assert [s.public_id for s in session_manager.list_sessions(test_user.id)] == [kept.public_id]
    with pytest.raises(Unauthorized):
        session_manager.refresh(dropped.refresh_token)
    with pytest.raises(NotFound):
        session_manager.revoke_session(test_user.id, dropped.public_id)


def test_email_verification_token_is_single_use(session_manager, codec, db, test_user):
    secret = session_manager.create_email_verification_token(test_user.id)

    stored = db.query(AuthToken).filter(AuthToken.kind == TokenKind.EMAIL_VERIFICATION.value).one()
    assert stored.token_value == codec.hash(secret)
    assert stored.public_id is None

    assert session_manager.consume_email_verification_token(secret) == test_user.id
    with pytest.raises(BadRequest, match="Invalid or expired verification token"):
        session_manager.consume_email_verification_token(secret)


def test_second_reset_token_invalidates_first(session_manager, test_user):
    first = session_manager.create_password_reset_token(test_user.id)
    second = session_manager.create_password_reset_token(test_user.id)

    with pytest.raises(BadRequest, match="Invalid or expired reset token"):
        session_manager.consume_password_reset_token(first)
    assert session_manager.consume_password_reset_token(second) == test_user.id


def test_reset_tokens_leave_a_single_active_row(session_manager, db, test_user, test_user2):
    session_manager.create_password_reset_token(test_user.id)
    session_manager.create_password_reset_token(test_user.id)
    session_manager.create_password_reset_token(test_user2.id)

    active = (
        db.query(AuthToken)
        .filter(
            AuthToken.user_id == test_user.id,
            AuthToken.kind == TokenKind.PASSWORD_RESET,
            AuthToken.is_active.is_(True),
        )
        .count()
    )
    assert active == 1
    assert db.query(AuthToken).filter(AuthToken.user_id == test_user2.id, AuthToken.is_active.is_(True)).count() == 1


def test_reset_token_creation_locks_owner_before_revoking(codec):
    store = MagicMock()
    manager = SessionManager(store, codec, MagicMock())

    manager.create_password_reset_token(7)

    calls = [name for name, _, _ in store.mock_calls]
    assert calls.index("lock_owner") < calls.index("revoke_all") < calls.index("create")
    store.lock_owner.assert_called_once_with(7)
    store.commit.assert_called_once()


def test_verification_token_creation_takes_no_owner_lock(codec):
    store = MagicMock()
    manager = SessionManager(store, codec, MagicMock())

    manager.create_email_verification_token(7)

    store.lock_owner.assert_not_called()
    store.revoke_all.assert_not_called()


def test_reset_token_cannot_verify_email(session_manager, test_user):
    secret = session_manager.create_password_reset_token(test_user.id)

    with pytest.raises(BadRequest):
        session_manager.consume_email_verification_token(secret)


def test_expired_reset_token_is_rejected(store, codec, db, test_user):
    past = datetime.now(timezone.utc) - timedelta(minutes=30)
    issuing = SessionManager(store, codec, UserDirectory(db), clock=lambda: past)
    secret = issuing.create_password_reset_token(test_user.id)

    manager = SessionManager(store, codec, UserDirectory(db))
    with pytest.raises(BadRequest):
        manager.consume_password_reset_token(secret)


def test_empty_one_shot_secret_is_bad_request(session_manager):
    with pytest.raises(BadRequest):
        session_manager.consume_password_reset_token("")


def test_last_issued_at(session_manager, test_user):
    assert session_manager.last_issued_at(test_user.id, TokenKind.EMAIL_VERIFICATION) is None

    session_manager.create_email_verification_token(test_user.id)
    assert session_manager.last_issued_at(test_user.id, TokenKind.EMAIL_VERIFICATION) is not None


def test_purge_stale_removes_revoked_and_expired_rows(store, codec, db, test_user):
    past = datetime.now(timezone.utc) - timedelta(days=30)
    old = SessionManager(store, codec, UserDirectory(db), clock=lambda: past)
    old.login(test_user.id)
    old.create_password_reset_token(test_user.id)

    manager = SessionManager(store, codec, UserDirectory(db))
    manager.login(test_user.id)

    assert manager.purge_stale() == 2
    assert db.query(AuthToken).count() == 1


def test_store_failure_is_internal_and_does_not_log_secrets(codec, caplog):
    store = MagicMock()
    store.create.side_effect = OperationalError("INSERT ...", {"token_value": "secret-hash"}, Exception("timeout"))
    manager = SessionManager(store, codec, MagicMock())

    with caplog.at_level(logging.ERROR, logger="chirp.services.sessions"):
        with pytest.raises(Internal):
            manager.login(1)

    store.rollback.assert_called_once()
    store.commit.assert_not_called()
    assert "OperationalError" in caplog.text
    assert "secret-hash" not in caplog.text


def test_device_label_for():
    assert device_label_for(None) == "Unknown Device"
    assert device_label_for("Mozilla/5.0 (Linux; Android 14)") == "Mobile Device"
    assert device_label_for("Mozilla/5.0 (iPad; CPU OS 17_0)") == "Tablet"
    assert device_label_for("Mozilla/5.0 (X11; Linux x86_64)") == "Desktop Computer"
