from __future__ import annotations

from typing import Any

from aquaschema.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    404: _error_response(
        "Not found",
        code="NOT_FOUND",
        message="Schema not found for tenant: tenant-123",
    ),
    409: _error_response(
        "Conflict",
        code="CONFLICT",
        message="Migration 1.1.0 already applied to tenant tenant-123",
    ),
    422: _error_response(
        "Validation error",
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
    ),
    500: _error_response(
        "Internal server error",
        code="INTERNAL_ERROR",
        message="Internal server error",
    ),
}
