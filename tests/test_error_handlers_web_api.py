from __future__ import annotations

from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.testclient import TestClient

from app.errors import register_error_handlers
from app.observability import ObservabilityMiddleware
from app.services.errors import (
    ConflictError,
    InternalError,
    LockContentionError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)


def _build_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)
    register_error_handlers(app)

    api_router = APIRouter(prefix="/api")

    @api_router.get("/http-403")
    def api_http_403():
        raise HTTPException(status_code=403, detail="Forbidden api")

    @api_router.get("/needs-int")
    def api_needs_int(value: int):
        return {"value": value}

    @api_router.get("/billing/{kind}")
    def billing_failure(kind: str):
        errors = {
            "validation": ValidationError("Bad input"),
            "not-found": NotFoundError("Subscription not found"),
            "conflict": ConflictError("Payment linked elsewhere", details={"reference": "R1"}),
            "upstream": UpstreamError("Payment provider is unavailable"),
            "lock": LockContentionError("subscription:1", 3),
            "internal": InternalError("Database write failed"),
        }
        raise errors[kind]

    @api_router.get("/crash")
    def crash():
        raise RuntimeError("boom")

    app.include_router(api_router)
    return app


def test_http_exception_returns_json() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/http-403")
    assert resp.status_code == 403
    body = resp.json()
    assert body["code"] == "http_403"
    assert body["message"] == "Forbidden api"
    assert body["request_id"] == resp.headers["x-request-id"]


def test_missing_route_returns_json() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/missing")
    assert resp.status_code == 404
    assert resp.json()["code"] == "http_404"


def test_validation_error_is_sanitised() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/needs-int", params={"value": "abc"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["code"] == "validation_error"
    assert body["details"][0]["loc"] == ["query", "value"]
    assert "ctx" not in body["details"][0]


def test_billing_errors_map_to_status_codes() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    expected = {
        "validation": (400, "validation_error"),
        "not-found": (404, "not_found"),
        "conflict": (409, "conflict"),
        "upstream": (502, "upstream_error"),
        "lock": (409, "lock_contention"),
        "internal": (500, "internal_error"),
    }
    for kind, (status_code, code) in expected.items():
        resp = client.get(f"/api/billing/{kind}")
        assert resp.status_code == status_code, kind
        assert resp.json()["code"] == code, kind


def test_conflict_details_are_returned() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/billing/conflict")
    assert resp.json()["details"] == {"reference": "R1"}


def test_lock_contention_sets_retry_after() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/billing/lock")
    assert resp.headers["retry-after"] == "1"
    assert resp.json()["details"] == {"resource": "subscription:1", "attempts": 3}


def test_unhandled_exception_returns_json_500() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/crash")
    assert resp.status_code == 500
    assert resp.json()["code"] == "internal_error"
    assert resp.json()["message"] == "Internal server error"
