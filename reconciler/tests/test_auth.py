from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from jose import jwt

import reconciler.main as reconciler_main


def _token(claims, secret=None):
    return jwt.encode(claims, secret or reconciler_main.JWT_SECRET_KEY, algorithm=reconciler_main.JWT_ALGORITHM)


def test_session_token_resolves_caller_and_role():
    caller = reconciler_main.resolve_caller_from_session_token(_token({"sub": "42", "role": "admin"}))

    assert caller == reconciler_main.CallerIdentity(id="42", role="admin")


def test_role_defaults_to_user():
    caller = reconciler_main.resolve_caller_from_session_token(_token({"sub": "7"}))

    assert caller.id == "7"
    assert caller.role == "user"


@pytest.mark.parametrize(
    "token",
    ["not-a-token", _token({"sub": "42"}, secret="someone-else"), _token({"role": "admin"})],
)
def test_invalid_tokens_resolve_to_nobody(token):
    assert reconciler_main.resolve_caller_from_session_token(token) is None


def test_missing_cookie_is_unauthenticated():
    with pytest.raises(HTTPException) as excinfo:
        reconciler_main.get_current_user(None)

    assert excinfo.value.status_code == 401


def test_admin_routes_resolve_user_through_app_context(monkeypatch):
    from reconciler import app_context
    from reconciler.app.routes import payment_batches

    monkeypatch.setattr(
        app_context,
        "_get_current_user",
        lambda session_token: SimpleNamespace(id="1", role="admin", token=session_token),
    )

    user = payment_batches._get_current_user(session_token="abc")

    assert user.token == "abc"
    assert payment_batches.require_admin(current_user=user) is user
