from __future__ import annotations

from dataclasses import asdict, is_dataclass
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


class PageResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int


def get_request_id(request: Request) -> str:
    # The middleware normally sets this; handlers invoked outside it fall back to the header.
    cached = getattr(request.state, "request_id", None)
    if cached:
        return cached
    request.state.request_id = request.headers.get("X-Request-Id") or str(uuid4())
    return request.state.request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    # Service results are dataclasses; route models are already pydantic.
    if is_dataclass(data) and not isinstance(data, type):
        data = asdict(data)
    elif isinstance(data, list):
        data = [asdict(item) if is_dataclass(item) and not isinstance(item, type) else item for item in data]
    return {"data": jsonable_encoder(data), "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    detail = ErrorDetail(code=code, message=message, details=details)
    return {"error": detail.model_dump(exclude_none=True), "meta": _meta(request)}
