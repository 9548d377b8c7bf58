"""Caller identity: Bearer JWT and the local X-User-Id fallback."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from subsync.core import auth
from subsync.core.auth import Identity, get_current_identity
from subsync.core.errors import AppError, app_error_handler


def _token(secret="test-jwt-secret", **claims):
    claims.setdefault("sub", "user_jwt")
    claims.setdefault("exp", datetime.now(timezone.utc) + timedelta(minutes=5))
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def client():
    test_app = FastAPI()
    test_app.add_exception_handler(AppError, app_error_handler)

    @test_app.get("/me")
    async def me(identity: Identity = Depends(get_current_identity)):
        return {"user_id": identity.user_id, "email": identity.email}

    return TestClient(test_app)


def test_bearer_token_identity(client):
    resp = client.get("/me", headers={"Authorization": f"Bearer {_token(email='a@example.com')}"})
    assert resp.status_code == 200
    assert resp.json() == {"user_id": "user_jwt", "email": "a@example.com"}


def test_expired_token_rejected(client):
    token = _token(exp=datetime.now(timezone.utc) - timedelta(minutes=1))
    resp = client.get("/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthenticated"


def test_forged_token_rejected_even_with_header(client):
    """An invalid token is final; the X-User-Id fallback is not consulted."""
    resp = client.get(
        "/me",
        headers={"Authorization": f"Bearer {_token(secret='forged')}", "X-User-Id": "user_alice"},
    )
    assert resp.status_code == 401


def test_user_id_header_when_enabled(client):
    resp = client.get("/me", headers={"X-User-Id": "user_alice", "X-User-Email": "alice@example.com"})
    assert resp.json() == {"user_id": "user_alice", "email": "alice@example.com"}


def test_user_id_header_disabled(client, monkeypatch):
    monkeypatch.setattr(auth.settings, "AUTH_ALLOW_USER_ID_HEADER", False)
    resp = client.get("/me", headers={"X-User-Id": "user_alice"})
    assert resp.status_code == 401


def test_missing_identity(client):
    assert client.get("/me").status_code == 401


def test_token_without_secret_configured(client, monkeypatch):
    monkeypatch.setattr(auth.settings, "AUTH_JWT_SECRET", None)
    resp = client.get("/me", headers={"Authorization": f"Bearer {_token()}"})
    assert resp.status_code == 401
