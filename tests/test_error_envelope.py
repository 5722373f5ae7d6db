"""Tests for the error envelope and exception handlers.

Error responses have the shape::

    {"status": "error", "error": {"code": ..., "message": ..., "details": ...}, "request_id": ...}
"""

import pydantic
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from govsso_client.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from govsso_client.api.schemas import Envelope, ErrorBody
from govsso_client.service.errors import (
    ConcurrencyConflict,
    SessionExpiredError,
    UpstreamError,
    ValidationError,
)


class TestErrorBody:
    def test_oauth_error_codes_are_accepted(self):
        assert ErrorBody(code="invalid_grant", message="refused").code == "invalid_grant"

    def test_malformed_code_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            ErrorBody(code="Not A Code", message="x")

    def test_envelope_has_request_id(self):
        envelope = Envelope(status="error", error=ErrorBody(code="conflict", message="x"))
        assert envelope.request_id

    def test_status_must_be_ok_or_error(self):
        with pytest.raises(pydantic.ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    def test_known_statuses(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(502) == "token_endpoint_unavailable"
        assert _STATUS_TO_CODE[409] == "conflict"

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = error_response(409, "changed", {"session_id": "s1"}, code="conflict")
        assert response.status_code == 409
        assert b'"code":"conflict"' in response.body
        assert b'"session_id":"s1"' in response.body


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/upstream")
    async def upstream():
        raise UpstreamError("token endpoint rejected the request", error_code="invalid_grant")

    @app.get("/expired")
    async def expired():
        raise SessionExpiredError("session expired")

    @app.get("/invalid")
    async def invalid():
        raise ValidationError("bad token", detail={"reason": "aud"})

    @app.get("/conflict")
    async def conflict():
        raise ConcurrencyConflict("changed")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return app


class TestHandlers:
    def test_service_errors_map_to_envelope(self):
        client = TestClient(_app())

        upstream = client.get("/upstream")
        assert upstream.status_code == 502
        assert upstream.json()["error"]["code"] == "invalid_grant"

        expired = client.get("/expired")
        assert expired.status_code == 401
        assert expired.json()["error"]["code"] == "expired_session"

        invalid = client.get("/invalid")
        assert invalid.status_code == 400
        assert invalid.json()["error"]["details"] == {"reason": "aud"}

        assert client.get("/conflict").status_code == 409

    def test_unhandled_exception_hides_detail(self):
        client = TestClient(_app(), raise_server_exceptions=False)
        response = client.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "server_error"
        assert "secret" not in response.text

    def test_unknown_route_is_404_envelope(self):
        client = TestClient(_app())
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
