from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import (
    AuthService,
    InvalidCredentials,
    UsernameTaken,
    hash_password,
    session_id_for_token,
    verify_password,
)
from csrf import generate_csrf_token, validate_csrf_token
from database import Base, build_engine
from models import UserSession, utcnow
from schemas import RegisterIn


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_password_hash_round_trip() -> None:
    hashed = hash_password("hunter22")

    assert hashed != "hunter22"
    assert verify_password("hunter22", hashed)
    assert not verify_password("hunter23", hashed)


def test_register_and_authenticate() -> None:
    session = make_session()
    service = AuthService(session)
    user = service.register(RegisterIn(username="alice", password="secret1", age=30))

    assert user.password_hash != "secret1"
    assert service.authenticate("alice", "secret1").id == user.id
    assert service.authenticate("ALICE", "secret1").id == user.id
    with pytest.raises(InvalidCredentials):
        service.authenticate("alice", "wrong-password")
    with pytest.raises(InvalidCredentials):
        service.authenticate("nobody", "secret1")


def test_register_rejects_taken_username_case_insensitively() -> None:
    session = make_session()
    service = AuthService(session)
    service.register(RegisterIn(username="alice", password="secret1"))

    with pytest.raises(UsernameTaken):
        service.register(RegisterIn(username="Alice", password="secret2"))


@pytest.mark.parametrize(
    "payload",
    [
        {"username": "al", "password": "secret1"},
        {"username": "alice smith", "password": "secret1"},
        {"username": "alice", "password": "short"},
        {"username": "alice", "password": "secret1", "age": -1},
    ],
)
def test_register_input_is_validated(payload) -> None:
    with pytest.raises(ValidationError):
        RegisterIn(**payload)


def test_session_token_is_stored_hashed() -> None:
    session = make_session()
    service = AuthService(session)
    user = service.register(RegisterIn(username="alice", password="secret1"))

    token = service.create_session(user.id)

    stored = session.scalars(select(UserSession)).one()
    assert stored.id == session_id_for_token(token)
    assert stored.id != token
    user_session, found = service.validate_session_token(token)
    assert found.id == user.id
    assert user_session.id == stored.id


def test_unknown_token_is_rejected() -> None:
    session = make_session()

    assert AuthService(session).validate_session_token("not-a-token") is None


def test_expired_session_is_deleted_on_validation() -> None:
    session = make_session()
    service = AuthService(session)
    user = service.register(RegisterIn(username="alice", password="secret1"))
    token = service.create_session(user.id)
    stored = session.scalars(select(UserSession)).one()
    stored.expires_at = utcnow() - timedelta(minutes=1)
    session.commit()

    assert service.validate_session_token(token) is None
    assert session.scalars(select(UserSession)).all() == []


def test_session_is_extended_when_close_to_expiry() -> None:
    session = make_session()
    service = AuthService(session)
    user = service.register(RegisterIn(username="alice", password="secret1"))
    token = service.create_session(user.id)
    stored = session.scalars(select(UserSession)).one()
    stored.expires_at = utcnow() + timedelta(days=1)
    session.commit()

    user_session, _ = service.validate_session_token(token)

    assert user_session.expires_at > utcnow() + service.lifetime - timedelta(minutes=1)


def test_invalidate_session_logs_out() -> None:
    session = make_session()
    service = AuthService(session)
    user = service.register(RegisterIn(username="alice", password="secret1"))
    token = service.create_session(user.id)

    service.invalidate_session(session_id_for_token(token))

    assert service.validate_session_token(token) is None


def test_purge_expired_only_removes_expired_sessions() -> None:
    session = make_session()
    service = AuthService(session)
    user = service.register(RegisterIn(username="alice", password="secret1"))
    kept = service.create_session(user.id)
    service.create_session(user.id)
    kept_row = session.get(UserSession, session_id_for_token(kept))
    for row in session.scalars(select(UserSession)).all():
        if row is not kept_row:
            row.expires_at = utcnow() - timedelta(hours=1)
    session.commit()

    assert service.purge_expired() == 1
    remaining = session.scalars(select(UserSession)).all()
    assert [row.id for row in remaining] == [session_id_for_token(kept)]


def test_csrf_token_is_bound_to_user() -> None:
    token = generate_csrf_token("user-1")

    assert validate_csrf_token(token, "user-1")
    assert not validate_csrf_token(token, "user-2")
    assert not validate_csrf_token(token)
    assert not validate_csrf_token("")
    assert not validate_csrf_token(token + "tampered", "user-1")


def test_anonymous_csrf_token_validates_without_user() -> None:
    token = generate_csrf_token()

    assert validate_csrf_token(token)
    assert not validate_csrf_token(token, "user-1")
