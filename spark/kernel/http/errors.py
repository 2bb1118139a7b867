from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from spark.kernel.errors import SparkError

logger = structlog.get_logger()


def _get_request_id(request: Request) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None)


def _with_request_id(payload: dict[str, Any], request: Request) -> dict[str, Any]:
    request_id = _get_request_id(request)
    if request_id:
        payload["request_id"] = request_id
    return payload


def register_exception_handlers(app: FastAPI) -> None:
    """Register the error payload shape on a FastAPI app.

    Every error body carries `detail` (FastAPI-compatible) plus a stable `code`.
    """

    @app.exception_handler(SparkError)
    async def _spark_error_handler(request: Request, exc: SparkError) -> Response:
        if exc.status_code >= 500:
            logger.error("Request failed", code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_public_dict(request_id=_get_request_id(request)),
        )

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException) -> Response:
        payload = _with_request_id({"detail": exc.detail, "code": f"http.{exc.status_code}"}, request)
        return JSONResponse(status_code=int(exc.status_code), content=payload, headers=dict(exc.headers or {}))

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        payload = _with_request_id({"detail": exc.errors(), "code": "http.validation_error"}, request)
        return JSONResponse(status_code=422, content=payload)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception) -> Response:
        logger.exception("Unhandled exception", request_id=_get_request_id(request), error=str(exc))
        payload = _with_request_id({"detail": "Internal Server Error", "code": "internal.unhandled"}, request)
        return JSONResponse(status_code=500, content=payload)
