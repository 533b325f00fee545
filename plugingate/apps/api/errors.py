from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError
from starlette.exceptions import HTTPException as StarletteHTTPException

from plugingate.core.errors import (
    BatchTooLargeError,
    BillingEventError,
    BillingSignatureError,
    ConfigurationDefectError,
    HandoffClosedError,
    HandoffOriginError,
    PlanNotFoundError,
    PluginGateError,
    QuotaExceededError,
    TokenInvalidError,
    TransientStorageError,
    UserNotFoundError,
)
from plugingate.persistence.db import is_unavailable


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    410: "GONE",
    422: "VALIDATION_ERROR",
    429: "QUOTA_EXCEEDED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors that map to a fixed status and code; richer bodies are handled below.
_DOMAIN_ERRORS: list[tuple[type[PluginGateError], int, str]] = [
    (BatchTooLargeError, 400, "BATCH_TOO_LARGE"),
    (BillingSignatureError, 400, "BILLING_SIGNATURE_INVALID"),
    (UserNotFoundError, 404, "USER_NOT_FOUND"),
    (PlanNotFoundError, 404, "PLAN_NOT_FOUND"),
    (HandoffOriginError, 403, "HANDOFF_ORIGIN_REJECTED"),
    (BillingEventError, 500, "BILLING_EVENT_FAILED"),
]

RETRY_AFTER_S = 1


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def error_body(message: str, code: str, **extra: Any) -> dict[str, Any]:
    return {"error": message, "code": code, **extra}


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any]]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details
    if isinstance(detail, str):
        return _default_code(status_code), detail, {}
    return _default_code(status_code), "Request failed", {}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(
        content=error_body(message, code, **details),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Surface validation errors with structured details for plugin-side parsing.
    return JSONResponse(
        content=error_body("Validation error", "VALIDATION_ERROR", details=exc.errors()),
        status_code=422,
    )


async def token_invalid_handler(request: Request, exc: TokenInvalidError) -> JSONResponse:
    # Reasons stay distinguishable for clients and logs; the status is always 401.
    return JSONResponse(
        content=error_body("Invalid token", "AUTH_UNAUTHORIZED", reason=exc.reason),
        status_code=401,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def quota_exceeded_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
    return JSONResponse(
        content=error_body(
            "Usage limit reached",
            "QUOTA_EXCEEDED",
            action=exc.action,
            **exc.decision.to_json(),
        ),
        status_code=429,
    )


async def transient_storage_handler(request: Request, exc: TransientStorageError) -> JSONResponse:
    return JSONResponse(
        content=error_body("Service temporarily unavailable", "SERVICE_UNAVAILABLE"),
        status_code=503,
        headers={"Retry-After": str(RETRY_AFTER_S)},
    )


async def database_error_handler(request: Request, exc: DBAPIError) -> JSONResponse:
    # Outages raised outside the guarded reads, e.g. during a usage write.
    if not is_unavailable(exc):
        return await unhandled_exception_handler(request, exc)
    logger.warning(
        "datastore_unavailable path=%s error=%s", request.url.path, type(exc.orig).__name__
    )
    return await transient_storage_handler(request, TransientStorageError(str(exc)))


async def configuration_defect_handler(
    request: Request, exc: ConfigurationDefectError
) -> JSONResponse:
    logger.error("configuration_defect path=%s error=%s", request.url.path, exc)
    return JSONResponse(
        content=error_body("Service misconfigured", "CONFIGURATION_DEFECT"),
        status_code=500,
    )


async def handoff_closed_handler(request: Request, exc: HandoffClosedError) -> JSONResponse:
    return JSONResponse(
        content=error_body(str(exc), "HANDOFF_CLOSED", state=exc.state),
        status_code=410,
    )


async def domain_error_handler(request: Request, exc: PluginGateError) -> JSONResponse:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            extra: dict[str, Any] = {}
            if isinstance(exc, BatchTooLargeError):
                extra = {"requested": exc.requested, "maxBatchSize": exc.ceiling}
            message = str(exc) if status_code < 500 else "Request failed"
            return JSONResponse(content=error_body(message, code, **extra), status_code=status_code)
    return await unhandled_exception_handler(request, exc)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.error(
        "unhandled_exception path=%s request_id=%s",
        request.url.path,
        getattr(request.state, "request_id", None),
        exc_info=exc,
    )
    return JSONResponse(
        content=error_body("Internal server error", "INTERNAL_ERROR"),
        status_code=500,
    )


def register_exception_handlers(app: Any) -> None:
    # Most specific first; Starlette resolves handlers by walking the exception MRO.
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TokenInvalidError, token_invalid_handler)
    app.add_exception_handler(QuotaExceededError, quota_exceeded_handler)
    app.add_exception_handler(TransientStorageError, transient_storage_handler)
    app.add_exception_handler(DBAPIError, database_error_handler)
    app.add_exception_handler(ConfigurationDefectError, configuration_defect_handler)
    app.add_exception_handler(HandoffClosedError, handoff_closed_handler)
    app.add_exception_handler(PluginGateError, domain_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
