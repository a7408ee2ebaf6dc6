"""Every failure shares one JSON shape and carries the request id."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from personachat.core.errors import (
    AppError,
    QuotaExceededError,
    app_error_handler,
    unhandled_exception_handler,
)
from personachat.core.middleware.request_id import RequestIdMiddleware


def _assert_shape(resp, code):
    body = resp.json()
    assert set(body) == {"success", "error", "code", "request_id"}
    assert body["success"] is False
    assert body["code"] == code
    assert body["request_id"] == resp.headers["x-request-id"]


def test_unknown_route_is_not_found(client):
    resp = client.get("/does-not-exist")
    assert resp.status_code == 404
    _assert_shape(resp, "not_found")


def test_method_not_allowed(client):
    resp = client.get("/payment/confirm")
    assert resp.status_code == 405
    _assert_shape(resp, "method_not_allowed")


def test_provided_request_id_is_echoed(client):
    resp = client.get("/user/status", headers={"x-request-id": "rid-123"})
    assert resp.status_code == 401
    assert resp.headers["x-request-id"] == "rid-123"
    assert resp.json()["request_id"] == "rid-123"


def test_app_error_handler_uses_error_status():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)

    @app.get("/boom")
    async def boom():
        raise QuotaExceededError("Daily message limit (20) reached.")

    resp = TestClient(app).get("/boom")
    assert resp.status_code == 403
    _assert_shape(resp, "quota_exceeded")


def test_unhandled_exception_is_generic():
    app = FastAPI()
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.get("/crash")
    async def crash():
        raise RuntimeError("database password is hunter2")

    resp = TestClient(app, raise_server_exceptions=False).get("/crash")
    assert resp.status_code == 500
    body = resp.json()
    assert body["code"] == "internal_error"
    assert body["error"] == "Internal server error"
    assert "hunter2" not in resp.text
