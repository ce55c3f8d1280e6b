from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import ServiceError

logger = logging.getLogger(__name__)

# Stable error types for plain HTTPExceptions raised in routes
HTTP_ERROR_TYPES = {
    400: "bad_request",
    401: "unauthorized",
    402: "payment_required",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    503: "service_unavailable",
}


def request_id(request: Request) -> str:
    rid = request.headers.get("x-request-id") or getattr(request.state, "request_id", None)
    return str(rid) if rid else str(uuid.uuid4())


def error_response(request: Request, status: int, err_type: str, message: str,
                   extra: dict[str, Any] | None = None) -> JSONResponse:
    """Build the error envelope.

    {
      "type": "error",
      "error": {"type": "<error_code>", "message": "<human message>", ...remediation fields},
      "request_id": "<uuid>"
    }

    Remediation fields (portalUrl, remainingCents, ...) sit beside the message
    so clients can act on a 402 without a second call.
    """
    rid = request_id(request)
    error: dict[str, Any] = {"type": err_type, "message": message}
    if extra:
        error.update(extra)
    return JSONResponse(
        status_code=status,
        content={"type": "error", "error": error, "request_id": rid},
        headers={"X-Request-ID": rid},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map every failure to the JSON error envelope."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):  # type: ignore[override]
        if exc.status_code >= 500:
            logger.error("ServiceError %s on %s: %s", exc.code, request.url.path, exc)
        else:
            logger.warning("ServiceError %s on %s: %s", exc.code, request.url.path, exc)
        return error_response(request, exc.status_code, exc.code, str(exc), exc.extra)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):  # type: ignore[override]
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return error_response(request, exc.status_code, HTTP_ERROR_TYPES.get(exc.status_code, "api_error"),
                              detail or "Request failed")

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
        return error_response(request, 422, "validation_error", "Invalid request payload",
                              {"fields": [f for f in fields if f]})

    @app.exception_handler(PydanticValidationError)
    async def pydantic_validation_handler(request: Request, exc: PydanticValidationError):  # type: ignore[override]
        return error_response(request, 422, "validation_error", "Invalid request payload")

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):  # type: ignore[override]
        logger.exception("Database error on %s", request.url.path)
        return error_response(request, 500, "database_error", "An internal database error occurred.")

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logger.exception("Unhandled error on %s", request.url.path)
        return error_response(request, 500, "api_error", "Internal server error")
