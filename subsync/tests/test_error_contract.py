"""Tests for normalized error responses."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from subsync.core.errors import (
    AppError,
    ConflictError,
    FailedPreconditionError,
    TransientError,
    UnauthenticatedError,
    ValidationError,
    WebhookSignatureError,
    app_error_handler,
    unhandled_exception_handler,
)
from subsync.core.middleware.request_id import RequestIdMiddleware
from subsync.features.billing.service import get_billing_service
from subsync.main import app


def _app_raising(exc: Exception) -> FastAPI:
    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_exception_handler(AppError, app_error_handler)
    test_app.add_exception_handler(Exception, unhandled_exception_handler)

    @test_app.get("/boom")
    async def boom():
        raise exc

    return test_app


def test_error_taxonomy_status_codes():
    cases = [
        (UnauthenticatedError("x"), 401, "unauthenticated"),
        (WebhookSignatureError("x"), 400, "unauthorized"),
        (ValidationError("x"), 400, "invalid_argument"),
        (FailedPreconditionError("x"), 409, "failed_precondition"),
        (TransientError("x"), 503, "temporarily_unavailable"),
        (ConflictError("x"), 503, "conflict_retry_exhausted"),
    ]
    for exc, status, code in cases:
        resp = TestClient(_app_raising(exc)).get("/boom")
        assert resp.status_code == status, code
        body = resp.json()
        assert body["error"]["code"] == code
        assert body["error"]["request_id"] == resp.headers["x-request-id"]
        assert body["detail"] == "x"


def test_transient_errors_suggest_retry():
    resp = TestClient(_app_raising(TransientError("store down"))).get("/boom")
    assert resp.headers["retry-after"] == "5"


def test_unexpected_error_hides_details():
    client = TestClient(_app_raising(RuntimeError("secret stack detail")), raise_server_exceptions=False)
    resp = client.get("/boom")

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "internal_error"
    assert "secret" not in resp.text


def test_malformed_body_is_invalid_argument():
    app.dependency_overrides[get_billing_service] = lambda: None
    try:
        resp = TestClient(app).post("/api/billing/portal", headers={"X-User-Id": "user_alice"}, json={})
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "invalid_argument"
    assert "return_url" in body["error"]["message"]
