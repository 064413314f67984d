import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from schemas import LoginIn, RegisterIn
from security import REFRESH, decode_token, hash_password, issue_token, verify_password
from services import AuthService, Unauthorized, ValidationFailed


def _register(service: AuthService, username: str = "alice"):
    return service.register(
        RegisterIn(
            username=username,
            email=f"{username}@Example.com",
            password="correct horse",
            first_name="Alice",
        )
    )


def test_password_hashing_roundtrip() -> None:
    hashed = hash_password("s3cret-pass")
    assert hashed != "s3cret-pass"
    assert verify_password("s3cret-pass", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("s3cret-pass", "not-a-hash")


def test_register_issues_working_token_pair() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = AuthService(session)
        result = _register(service)

        assert result.user.email == "alice@example.com"
        assert result.expires_in == 900
        assert service.authenticate(result.token).id == result.user.id

        refreshed = service.refresh(result.refresh_token)
        assert service.authenticate(refreshed.token).username == "alice"


def test_tokens_are_not_interchangeable() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = AuthService(session)
        result = _register(service)

        with pytest.raises(Unauthorized):
            service.authenticate(result.refresh_token)
        with pytest.raises(Unauthorized):
            service.refresh(result.token)
        with pytest.raises(Unauthorized):
            service.authenticate(result.token + "tampered")

        assert decode_token(issue_token(1, "x", REFRESH)) is None


def test_duplicate_registration_and_bad_login() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = AuthService(session)
        _register(service)

        with pytest.raises(ValidationFailed):
            _register(service)

        with pytest.raises(Unauthorized):
            service.login(LoginIn(username="alice", password="wrong password"))
        with pytest.raises(Unauthorized):
            service.login(LoginIn(username="nobody", password="correct horse"))

        logged_in = service.login(LoginIn(username="ALICE", password="correct horse"))
        assert logged_in.user.username == "alice"


def test_deactivated_user_cannot_authenticate() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = AuthService(session)
        result = _register(service)
        user = service.authenticate(result.token)
        user.is_active = False
        session.commit()

        with pytest.raises(Unauthorized):
            service.authenticate(result.token)
