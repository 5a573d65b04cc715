"""Tests for structured error responses with request_id."""
from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from clubpay.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    SignatureInvalidError,
    register_error_handlers,
)
from clubpay.observability import ObservabilityMiddleware


class _Body(BaseModel):
    amount: int


@pytest.fixture
def app_with_errors() -> FastAPI:
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)
    register_error_handlers(app)

    @app.get("/ok")
    def ok():
        return {"ok": True}

    @app.get("/http-error")
    def http_error():
        raise HTTPException(status_code=403, detail="Forbidden")

    @app.get("/http-error-dict")
    def http_error_dict():
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_input", "message": "Bad field", "details": {"field": "name"}},
        )

    @app.get("/not-found")
    def not_found():
        raise NotFoundError("Subscription not found", {"subscription_id": "abc"})

    @app.get("/transition")
    def transition():
        raise InvalidTransitionError("cancelled", "active")

    @app.get("/conflict")
    def conflict():
        raise ConflictError("Child already has an open subscription")

    @app.get("/provider")
    def provider():
        raise ProviderError("Mandate is cancelled", provider="gocardless", http_status=422)

    @app.get("/signature")
    def signature():
        raise SignatureInvalidError("Invalid webhook signature")

    @app.post("/validate")
    def validate(body: _Body):
        return body

    @app.get("/crash")
    def crash():
        raise RuntimeError("boom")

    return app


@pytest.fixture
def client(app_with_errors: FastAPI) -> TestClient:
    return TestClient(app_with_errors, raise_server_exceptions=False)


class TestErrorResponses:
    def test_http_error_includes_request_id(self, client: TestClient) -> None:
        resp = client.get("/http-error")
        assert resp.status_code == 403
        body = resp.json()
        assert "request_id" in body
        assert body["code"] == "http_403"
        assert body["message"] == "Forbidden"

    def test_http_error_dict_detail(self, client: TestClient) -> None:
        resp = client.get("/http-error-dict")
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "invalid_input"
        assert body["message"] == "Bad field"
        assert body["details"] == {"field": "name"}

    def test_not_found(self, client: TestClient) -> None:
        resp = client.get("/not-found")
        assert resp.status_code == 404
        body = resp.json()
        assert body["code"] == "not_found"
        assert body["details"] == {"subscription_id": "abc"}

    def test_invalid_transition_reports_both_states(self, client: TestClient) -> None:
        resp = client.get("/transition")
        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "invalid_transition"
        assert body["message"] == "Cannot transition from cancelled to active"
        assert body["details"] == {"current_status": "cancelled", "requested_status": "active"}

    def test_conflict(self, client: TestClient) -> None:
        resp = client.get("/conflict")
        assert resp.status_code == 409
        assert resp.json()["details"] is None

    def test_provider_error_is_bad_gateway(self, client: TestClient) -> None:
        resp = client.get("/provider")
        assert resp.status_code == 502
        body = resp.json()
        assert body["code"] == "provider_error"
        assert body["details"]["provider"] == "gocardless"
        assert body["details"]["http_status"] == 422

    def test_invalid_signature(self, client: TestClient) -> None:
        resp = client.get("/signature")
        assert resp.status_code == 401
        assert resp.json()["code"] == "invalid_signature"

    def test_request_validation(self, client: TestClient) -> None:
        resp = client.post("/validate", json={"amount": "lots"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["code"] == "validation_error"
        assert body["details"][0]["loc"] == ["body", "amount"]

    def test_unhandled_exception_includes_request_id(self, client: TestClient) -> None:
        resp = client.get("/crash")
        assert resp.status_code == 500
        body = resp.json()
        assert body["code"] == "internal_error"
        assert body["message"] == "Internal server error"
        assert "request_id" in body
        # Should NOT leak exception details
        assert body["details"] is None

    def test_request_id_propagated_from_header(self, client: TestClient) -> None:
        custom_id = "test-request-id-12345"
        resp = client.get("/not-found", headers={"X-Request-Id": custom_id})
        assert resp.json()["request_id"] == custom_id

    def test_success_response_has_request_id_header(self, client: TestClient) -> None:
        resp = client.get("/ok")
        assert resp.status_code == 200
        assert "x-request-id" in resp.headers
