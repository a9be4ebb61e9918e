import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from linkhub import app as app_module
from linkhub.api import schemas


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module to respect env overrides for CORS tests."""

    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded
    finally:
        monkeypatch.undo()
        importlib.reload(app_module)


def test_security_headers_and_cors(fresh_app):
    client = TestClient(fresh_app.app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["API-Version"] == app_module.__version__
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert response.headers["access-control-allow-credentials"] == "true"


def test_unknown_origin_gets_no_cors_grant(fresh_app):
    client = TestClient(fresh_app.app)
    response = client.get("/healthz", headers={"Origin": "https://evil.example"})

    assert "access-control-allow-origin" not in response.headers


def test_allowed_origins_default(fresh_app):
    origins = fresh_app._allowed_origins()

    assert "http://localhost" in origins
    assert "http://127.0.0.1:5173" in origins
    assert "*" not in origins


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://example.com, https://demo.local")
    reloaded = importlib.reload(app_module)
    try:
        assert reloaded._allowed_origins() == ["https://example.com", "https://demo.local"]
    finally:
        monkeypatch.delenv("CORS_ALLOW_ORIGINS")
        importlib.reload(app_module)


def test_signup_request_normalizes_email_and_checks_password():
    with pytest.raises(ValidationError):
        schemas.SignupRequest(email="invalid", username="bob", password="Password1")
    with pytest.raises(ValidationError):
        schemas.SignupRequest(email="a@x.com", username="bob", password="Short1")

    req = schemas.SignupRequest(email=" User@Example.com ", username="bob", password="Password1")
    assert req.email == "user@example.com"


@pytest.mark.parametrize("username", ["ab", "x" * 33, "bad name", "semi;colon"])
def test_username_rules(username):
    with pytest.raises(ValidationError):
        schemas.SignupRequest(email="a@x.com", username=username, password="Password1")


def test_zero_width_characters_are_stripped():
    req = schemas.SignupRequest(
        email="a\u200b@x.com", username="b\u200dob", password="Password1"
    )

    assert req.email == "a@x.com"
    assert req.username == "bob"


def test_two_factor_request_method_is_restricted():
    assert schemas.TwoFactorRequest(method=" TOTP ").method == "totp"
    with pytest.raises(ValidationError):
        schemas.TwoFactorRequest(method="sms")


def test_password_change_checks_new_password():
    with pytest.raises(ValidationError):
        schemas.PasswordChangeRequest(current_password="Password1", new_password="weak")
