from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from aquaschema.apps.api.deps import get_db, get_runner
from aquaschema.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from aquaschema.apps.api.response import SuccessEnvelope, success_response
from aquaschema.persistence.sql import SqlRunner
from aquaschema.services import monitoring


router = APIRouter(
    prefix="/admin/db/monitoring",
    tags=["monitoring"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class AnalyzeQueryRequest(BaseModel):
    query: str = Field(min_length=1)
    schema_name: str | None = None


class QueryValidationResponse(BaseModel):
    valid: bool
    error: str | None = None


class SlowQueryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str | None
    schema_name: str | None
    query: str
    normalized_query: str
    execution_time_ms: int
    user_id: str | None
    recorded_at: datetime


class SlowQueryGroupResponse(BaseModel):
    query: str
    count: int
    avg_time_ms: float


class HealthCheckResponse(BaseModel):
    name: str
    status: str
    value: str
    message: str
    threshold: str | None = None


class DatabaseHealthResponse(BaseModel):
    status: str
    score: int
    checks: list[HealthCheckResponse]
    recommendations: list[str]


class TenantStorageResponse(BaseModel):
    tenant_id: str
    schema_name: str
    total_size_bytes: int
    data_size_bytes: int
    index_size_bytes: int
    table_count: int


class StorageTotalsResponse(BaseModel):
    total_size_bytes: int
    data_size_bytes: int
    index_size_bytes: int


class StorageResponse(BaseModel):
    totals: StorageTotalsResponse
    tenants: list[TenantStorageResponse]


class IndexRecommendationResponse(BaseModel):
    table_name: str
    columns: list[str]
    index_type: str
    reason: str
    estimated_impact: str
    statement: str


@router.post("/validate-query", response_model=SuccessEnvelope[QueryValidationResponse])
async def validate_query(payload: AnalyzeQueryRequest, request: Request) -> dict[str, Any]:
    return success_response(
        request=request,
        data=monitoring.validate_query_for_explain(payload.query),
    )


@router.post("/analyze", response_model=SuccessEnvelope[dict[str, Any] | list[Any]])
async def analyze_query(
    payload: AnalyzeQueryRequest,
    request: Request,
    runner: SqlRunner = Depends(get_runner),
) -> dict[str, Any]:
    plan = await monitoring.analyze_query(
        payload.query,
        schema_name=payload.schema_name,
        sql_runner=runner,
    )
    return success_response(request=request, data=plan)


@router.get(
    "/slow-queries",
    response_model=SuccessEnvelope[list[SlowQueryResponse] | list[SlowQueryGroupResponse]],
)
async def list_slow_queries(
    request: Request,
    tenant_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    min_execution_time_ms: int | None = Query(default=None, ge=0),
    group_by_query: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await monitoring.get_slow_queries(
        db,
        tenant_id=tenant_id,
        limit=limit,
        min_execution_time_ms=min_execution_time_ms,
        group_by_query=group_by_query,
    )
    if group_by_query:
        return success_response(request=request, data=rows)
    return success_response(
        request=request, data=[SlowQueryResponse.model_validate(row) for row in rows]
    )


@router.get("/health", response_model=SuccessEnvelope[DatabaseHealthResponse])
async def database_health(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    health = await monitoring.get_database_health(db)
    return success_response(request=request, data=health)


@router.get("/storage", response_model=SuccessEnvelope[StorageResponse])
async def storage_usage(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    totals = await monitoring.get_total_storage(db)
    tenants = await monitoring.get_storage_by_tenant(db)
    return success_response(request=request, data={"totals": totals, "tenants": tenants})


@router.get("/index-recommendations", response_model=SuccessEnvelope[list[IndexRecommendationResponse]])
async def index_recommendations(
    request: Request,
    schema_name: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    recommendations = await monitoring.get_index_recommendations(db, schema_name=schema_name)
    return success_response(request=request, data=recommendations)


@router.post("/tenant-stats/refresh", response_model=SuccessEnvelope[dict[str, int]])
async def refresh_tenant_stats(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    refreshed = await monitoring.refresh_tenant_stats(db)
    return success_response(request=request, data={"refreshed": refreshed})


class LogSlowQueryRequest(BaseModel):
    query: str = Field(min_length=1)
    execution_time_ms: int = Field(ge=0)
    tenant_id: str | None = None
    schema_name: str | None = None
    user_id: str | None = None


class ConnectionStatsResponse(BaseModel):
    total: int
    active: int
    idle: int
    waiting: int
    max_connections: int
    utilization_percent: float


class QueryPerformanceResponse(BaseModel):
    total_queries: int
    avg_execution_time_ms: float
    slow_queries: int
    cache_hit_ratio: float
    queries_per_second: float


class MetricResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str | None
    metric_type: str
    metrics_json: dict[str, Any]
    recorded_at: datetime


@router.post("/slow-queries", response_model=SuccessEnvelope[SlowQueryResponse])
async def record_slow_query(
    payload: LogSlowQueryRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    entry = await monitoring.log_slow_query(
        db,
        query=payload.query,
        execution_time_ms=payload.execution_time_ms,
        tenant_id=payload.tenant_id,
        schema_name=payload.schema_name,
        user_id=payload.user_id,
    )
    return success_response(request=request, data=SlowQueryResponse.model_validate(entry))


@router.get("/connections", response_model=SuccessEnvelope[ConnectionStatsResponse])
async def connection_stats(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    stats = await monitoring.get_connection_stats(db)
    return success_response(request=request, data=stats)


@router.get("/performance", response_model=SuccessEnvelope[QueryPerformanceResponse])
async def query_performance(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    stats = await monitoring.get_query_performance_stats(db)
    return success_response(request=request, data=stats)


@router.get("/metrics", response_model=SuccessEnvelope[list[MetricResponse]])
async def metrics_history(
    request: Request,
    hours: int = Query(default=24, ge=1, le=24 * 90),
    tenant_id: str | None = Query(default=None),
    metric_type: str = Query(default="system"),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await monitoring.get_metrics_history(
        db, hours=hours, tenant_id=tenant_id, metric_type=metric_type
    )
    return success_response(
        request=request, data=[MetricResponse.model_validate(row) for row in rows]
    )
