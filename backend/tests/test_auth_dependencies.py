import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from jose import jwt


ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import backend.main as backend_main


def _session_token(subject: str, expires_delta: timedelta = timedelta(hours=1)) -> str:
    payload = {"sub": subject, "exp": datetime.now(timezone.utc) + expires_delta}
    return jwt.encode(payload, backend_main.JWT_SECRET_KEY, algorithm=backend_main.JWT_ALGORITHM)


def test_get_current_user_missing_cookie_is_unauthorized():
    with pytest.raises(HTTPException) as excinfo:
        backend_main.get_current_user(None)

    assert excinfo.value.status_code == 401


def test_get_current_user_invalid_token_is_unauthorized():
    with pytest.raises(HTTPException) as excinfo:
        backend_main.get_current_user("not-a-valid-token")

    assert excinfo.value.status_code == 401


def test_get_current_user_expired_token_is_unauthorized():
    expired_token = _session_token("payer_42", timedelta(minutes=-5))

    with pytest.raises(HTTPException):
        backend_main.get_current_user(expired_token)


def test_get_current_user_valid_token_returns_payer():
    token = _session_token("payer_42")

    payer = backend_main.get_current_user(token)

    assert payer == backend_main.PayerOut(id="payer_42")


def test_app_context_resolves_configured_dependencies():
    from backend import app_context

    token = _session_token("payer_7")

    assert app_context.get_current_user(session_token=token).id == "payer_7"
