"""Tests for normalized error responses."""

from fastapi.testclient import TestClient

from backend.main import app

client = TestClient(app)


def _assert_shape(resp, code):
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == code
    assert body["error"]["request_id"] == rid
    assert body["detail"] == body["error"]["message"]


def test_validation_error_has_standard_shape():
    resp = client.post("/api/sites", headers={"X-User-Id": "err_user"}, json={"url": "   "})
    assert resp.status_code == 400
    _assert_shape(resp, "invalid_url")


def test_not_found_normalized():
    resp = client.post(
        "/api/overrides/check",
        headers={"X-User-Id": "err_user"},
        json={"site_url": "never-added.com"},
    )
    assert resp.status_code == 404
    _assert_shape(resp, "site_not_found")


def test_conflict_normalized():
    headers = {"X-User-Id": "err_user"}
    assert client.post("/api/sites", headers=headers, json={"url": "reddit.com"}).status_code == 200
    resp = client.post("/api/sites", headers=headers, json={"url": "https://www.reddit.com/r/all"})
    assert resp.status_code == 409
    _assert_shape(resp, "site_already_tracked")


def test_unauthorized_normalized():
    resp = client.get("/api/me")
    assert resp.status_code == 401
    _assert_shape(resp, "unauthorized")


def test_unhandled_exception_is_masked():
    from fastapi import FastAPI
    from backend.core.errors import unhandled_exception_handler
    from backend.core.middleware.request_id import RequestIdMiddleware

    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_exception_handler(Exception, unhandled_exception_handler)

    @test_app.get("/boom")
    def boom():
        raise RuntimeError("secret internals")

    resp = TestClient(test_app, raise_server_exceptions=False).get("/boom")
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "internal_error"
    assert "secret" not in body["detail"]
