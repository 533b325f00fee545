from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class ErrorBody(BaseModel):
    # Extra keys (reason, limit, used, remaining, ...) ride alongside error/code.
    model_config = ConfigDict(extra="allow")

    error: str
    code: str


def _error_example(*, code: str, message: str, **extra: Any) -> dict[str, Any]:
    # Build a consistent error body example for OpenAPI docs.
    return {"error": message, "code": code, **extra}


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorBody,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    500: _response(
        "Internal error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    503: _response(
        "Datastore temporarily unavailable; retry after the Retry-After delay",
        _error_example(code="SERVICE_UNAVAILABLE", message="Service temporarily unavailable"),
    ),
}

AUTH_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response(
        "Missing, expired, revoked or unknown access token",
        _error_example(code="AUTH_UNAUTHORIZED", message="Invalid token", reason="revoked"),
    ),
}

QUOTA_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Batch larger than the plan allows",
        _error_example(
            code="BATCH_TOO_LARGE",
            message="Batch of 10 exceeds plan ceiling of 5",
            requested=10,
            maxBatchSize=5,
        ),
    ),
    429: _response(
        "Usage limit reached for the current period",
        _error_example(
            code="QUOTA_EXCEEDED",
            message="Usage limit reached",
            action="resize",
            limit=25,
            used=25,
            remaining=0,
        ),
    ),
}
