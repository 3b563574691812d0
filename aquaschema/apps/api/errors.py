from __future__ import annotations

import logging
import re
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from aquaschema.apps.api.response import error_response
from aquaschema.core.config import get_settings
from aquaschema.core.errors import AquaSchemaError, InvalidStateError, NotFoundError


logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An error occurred while processing your request"

# Messages touching credentials or SQL internals never leave a production process verbatim.
_SENSITIVE_MESSAGE = re.compile(
    r"password|secret|token|api[\s_-]?key|credential|sql|query|database",
    re.IGNORECASE,
)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def redact_message(message: str, *, environment: str | None = None) -> str:
    environment = environment or get_settings().environment
    if environment.lower() == "production" and _SENSITIVE_MESSAGE.search(message):
        return GENERIC_ERROR_MESSAGE
    return message


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _envelope(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(
        request=request,
        code=code,
        message=redact_message(message),
        details=details,
    )
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def domain_exception_handler(request: Request, exc: AquaSchemaError) -> JSONResponse:
    # Lifecycle preconditions map onto 404/409; anything else in the hierarchy is a server fault.
    if isinstance(exc, NotFoundError):
        status_code, code = 404, "NOT_FOUND"
    elif isinstance(exc, InvalidStateError):
        status_code, code = 409, "CONFLICT"
    else:
        logger.error("domain_error path=%s error=%s", request.url.path, exc)
        status_code, code = 500, "INTERNAL_ERROR"
    return _envelope(
        request,
        status_code=status_code,
        code=code,
        message=exc.message,
        details=exc.details,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    return _envelope(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
