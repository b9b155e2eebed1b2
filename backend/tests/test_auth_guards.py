import time
import uuid

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy import select

from safeguard import auth_service, main
from safeguard.auth_service import (
    decode_token,
    ensure_default_users,
    get_current_user,
    is_non_dev_env,
    is_weak_jwt_secret,
    issue_token,
    require_role,
    should_seed_default_users,
)
from safeguard.workflow_models import User


def _creds(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_is_non_dev_env():
    assert is_non_dev_env("prod") is True
    assert is_non_dev_env("staging") is True
    assert is_non_dev_env("dev") is False
    assert is_non_dev_env("local") is False
    assert is_non_dev_env("test") is False


def test_is_weak_jwt_secret():
    assert is_weak_jwt_secret("dev-change-me") is True
    assert is_weak_jwt_secret("change-me") is True
    assert is_weak_jwt_secret("short") is True
    assert is_weak_jwt_secret("this-is-a-strong-secret-value") is False


def test_should_seed_default_users():
    assert should_seed_default_users("dev", None) is True
    assert should_seed_default_users("test", None) is True
    assert should_seed_default_users("prod", None) is False
    assert should_seed_default_users("prod", "true") is True
    assert should_seed_default_users("dev", "false") is False


def test_startup_refuses_weak_secret_outside_dev(monkeypatch, tmp_path):
    monkeypatch.setattr(main, "DATA_DIR", str(tmp_path))
    monkeypatch.setattr(main, "JWT_SECRET", "dev-change-me")
    monkeypatch.setenv("APP_ENV", "prod")

    with pytest.raises(RuntimeError):
        main._startup_db_bootstrap()


def test_token_round_trip_resolves_profile_role(make_user):
    partner = make_user("partner")

    user = get_current_user(_creds(issue_token(partner.id, partner.email)))

    assert user.id == partner.id
    assert user.role == "partner"


def test_missing_token_is_unauthenticated():
    with pytest.raises(HTTPException) as exc:
        get_current_user(None)
    assert exc.value.status_code == 401
    assert exc.value.detail == "missing_auth_token"


@pytest.mark.parametrize(
    "token,detail",
    [
        ("not-a-jwt", "invalid_token"),
        (issue_token(uuid.uuid4(), "x@example.com", secret="some-other-secret-value"), "invalid_token_signature"),
    ],
)
def test_bad_tokens_are_rejected(token, detail):
    with pytest.raises(HTTPException) as exc:
        decode_token(token)
    assert exc.value.status_code == 401
    assert exc.value.detail == detail


def test_expired_token(monkeypatch):
    monkeypatch.setattr(auth_service, "JWT_EXP_SECONDS", -(auth_service.JWT_LEEWAY_SECONDS + 60))
    token = issue_token(uuid.uuid4(), "x@example.com")

    with pytest.raises(HTTPException) as exc:
        decode_token(token)
    assert exc.value.detail == "token_expired"


def test_token_used_before_not_before(monkeypatch):
    token = issue_token(uuid.uuid4(), "x@example.com")
    monkeypatch.setattr(auth_service.time, "time", lambda: 0)

    with pytest.raises(HTTPException) as exc:
        decode_token(token)
    assert exc.value.detail == "token_not_yet_valid"


def test_wrong_issuer(monkeypatch):
    issuer = auth_service.JWT_ISS
    monkeypatch.setattr(auth_service, "JWT_ISS", "someone-else")
    token = issue_token(uuid.uuid4(), "x@example.com")
    monkeypatch.setattr(auth_service, "JWT_ISS", issuer)

    with pytest.raises(HTTPException) as exc:
        decode_token(token)
    assert exc.value.detail == "invalid_token_issuer"


def test_unknown_or_inactive_profile(make_user):
    inactive = make_user("agent", is_active=False)

    for uid in (uuid.uuid4(), inactive.id):
        with pytest.raises(HTTPException) as exc:
            get_current_user(_creds(issue_token(uid, "x@example.com")))
        assert exc.value.status_code == 401
        assert exc.value.detail == "user_not_found"


def test_profile_with_unknown_role_is_forbidden(make_user):
    odd = make_user("credit_evaluator")

    with pytest.raises(HTTPException) as exc:
        get_current_user(_creds(issue_token(odd.id, odd.email)))
    assert exc.value.status_code == 403
    assert exc.value.detail == "forbidden_role"


def test_require_role_guard():
    guard = require_role("admin")
    admin = auth_service.AuthUser(id=uuid.uuid4(), email="a@example.com", role="admin")
    agent = auth_service.AuthUser(id=uuid.uuid4(), email="b@example.com", role="agent")

    assert guard(admin) is admin
    with pytest.raises(HTTPException) as exc:
        guard(agent)
    assert exc.value.status_code == 403


def test_ensure_default_users_is_idempotent(session_factory):
    ensure_default_users()
    ensure_default_users()

    with session_factory() as s:
        rows = list(s.execute(select(User.email, User.role).order_by(User.role)))
    assert [tuple(r) for r in rows] == [
        ("admin@example.com", "admin"),
        ("agent@example.com", "agent"),
        ("partner@example.com", "partner"),
    ]


def test_issued_token_carries_expiry():
    payload = decode_token(issue_token(uuid.uuid4(), "x@example.com"))
    assert payload["exp"] > int(time.time())
    assert payload["iss"] == auth_service.JWT_ISS
