"""Error responses share one envelope:

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...},
    "request_id": "<id>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from tenantguard.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from tenantguard.api.schemas import Envelope, ErrorBody
from tenantguard.service.errors import (
    DeliveryError,
    InvalidCredentialsError,
    SessionRevokedError,
    TenantInactiveError,
)
from tenantguard.storage.errors import ConstraintViolation, StorageError


class Payload(BaseModel):
    name: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/credentials")
    async def credentials():
        raise InvalidCredentialsError("Invalid email or password")

    @app.get("/revoked")
    async def revoked():
        raise SessionRevokedError("Session has been revoked. Please log in again.")

    @app.get("/tenant")
    async def tenant():
        raise TenantInactiveError("Your organization is inactive.")

    @app.get("/delivery")
    async def delivery():
        raise DeliveryError("There was an error sending the email. Try again later.")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/storage")
    async def storage():
        raise StorageError("connection reset by peer at 10.0.0.3", operation="get_user")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    @app.post("/validate")
    async def validate(body: Payload):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestEnvelopeModels:
    def test_error_body_defaults(self):
        error = ErrorBody(code="unauthorized", message="nope")
        assert error.details is None

    def test_envelope_status_is_constrained(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")

    def test_envelope_generates_request_id(self):
        assert Envelope(status="ok").request_id

    def test_status_code_mapping(self):
        assert _STATUS_TO_CODE[404] == "not_found"
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = error_response(409, "conflict", {"field": "email"}, code="conflict")
        assert response.status_code == 409


class TestHandlers:
    @pytest.mark.parametrize(
        "path,status,code",
        [
            ("/credentials", 401, "invalid_credentials"),
            ("/revoked", 401, "session_revoked"),
            ("/tenant", 403, "tenant_inactive"),
            ("/delivery", 502, "delivery_failed"),
            ("/constraint", 409, "conflict"),
        ],
    )
    def test_service_and_constraint_errors(self, client, path, status, code):
        response = client.get(path)

        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["data"] is None
        assert body["request_id"]

    def test_storage_error_is_generic(self, client):
        response = client.get("/storage")

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "storage_error",
            "message": "storage failure",
            "details": None,
        }

    def test_unhandled_error_does_not_leak(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "secret" not in response.text

    def test_request_validation_is_400(self, client):
        response = client.post("/validate", json={})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "name"]

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
