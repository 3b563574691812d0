from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from aquaschema.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from aquaschema.apps.api.response import API_VERSION
from aquaschema.apps.api.routes.backups import router as backups_router
from aquaschema.apps.api.routes.health import router as health_router
from aquaschema.apps.api.routes.migrations import router as migrations_router
from aquaschema.apps.api.routes.monitoring import router as monitoring_router
from aquaschema.core.errors import AquaSchemaError
from aquaschema.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="AquaSchema Admin API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(AquaSchemaError)
    async def _domain_exception_handler(request: Request, exc: AquaSchemaError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(migrations_router, prefix=f"/{API_VERSION}")
    app.include_router(backups_router, prefix=f"/{API_VERSION}")
    app.include_router(monitoring_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
