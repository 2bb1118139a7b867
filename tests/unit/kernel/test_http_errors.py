from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from spark.api.middleware.request_id import RequestIDMiddleware
from spark.kernel.errors import CsrfMismatch, NotFoundError, SparkError
from spark.kernel.http.errors import register_exception_handlers


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware)
    register_exception_handlers(app)
    return app


@pytest.mark.unit
def test_spark_error_payload_shape_includes_code_and_request_id():
    app = _app()

    @app.get("/boom")
    async def boom():  # pragma: no cover - exercised via request
        raise SparkError(code="test.bad_request", message="Nope", status_code=400)

    client = TestClient(app)
    response = client.get("/boom", headers={"X-Request-ID": "req_123"})
    assert response.status_code == 400
    assert response.json() == {"detail": "Nope", "code": "test.bad_request", "request_id": "req_123"}


@pytest.mark.unit
def test_typed_errors_keep_status_and_meta():
    app = _app()

    @app.get("/missing")
    async def missing():  # pragma: no cover - exercised via request
        raise NotFoundError(code="integration.not_found", meta={"integration_id": "i1"})

    @app.get("/csrf")
    async def csrf():  # pragma: no cover - exercised via request
        raise CsrfMismatch()

    client = TestClient(app)
    missing_response = client.get("/missing")
    assert missing_response.status_code == 404
    assert missing_response.json()["meta"] == {"integration_id": "i1"}

    csrf_response = client.get("/csrf")
    assert csrf_response.status_code == 403
    assert csrf_response.json()["code"] == "oauth.csrf_invalid"


@pytest.mark.unit
def test_http_exception_payload_shape_preserves_detail():
    app = _app()

    @app.get("/forbidden")
    async def forbidden():  # pragma: no cover - exercised via request
        raise HTTPException(status_code=403, detail="Forbidden")

    client = TestClient(app)
    response = client.get("/forbidden", headers={"X-Request-ID": "req_999"})
    assert response.status_code == 403
    payload = response.json()
    assert payload["detail"] == "Forbidden"
    assert payload["code"] == "http.403"
    assert payload["request_id"] == "req_999"


@pytest.mark.unit
def test_request_validation_error_payload_shape_is_stable():
    app = _app()

    class Body(BaseModel):
        value: int

    @app.post("/validate")
    async def validate(body: Body):  # pragma: no cover - exercised via request
        return {"ok": True, "value": body.value}

    client = TestClient(app)
    response = client.post("/validate", json={"value": "not-an-int"})
    assert response.status_code == 422
    payload = response.json()
    assert isinstance(payload.get("detail"), list)
    assert payload.get("code") == "http.validation_error"


@pytest.mark.unit
def test_unhandled_exception_is_hidden():
    app = _app()

    @app.get("/crash")
    async def crash():  # pragma: no cover - exercised via request
        raise RuntimeError("secret internals")

    client = TestClient(app, raise_server_exceptions=False)
    response = client.get("/crash")
    assert response.status_code == 500
    assert response.json()["code"] == "internal.unhandled"
    assert "secret internals" not in response.text


@pytest.mark.unit
def test_error_codes_must_be_dotted_lowercase():
    with pytest.raises(ValueError):
        SparkError(code="Not-A-Code", message="x")
