"""
Error tracking endpoints for operators.

GET  /errors/                         → Filtered, paginated error log + health verdict
GET  /errors/stats                    → Counts by category / type / severity
GET  /errors/{entry_id}               → One entry, stack trace included
POST /errors/cleanup                  → Run retention cleanup now
POST /errors/circuit-breakers/reset   → Close one breaker, or all of them

All reads go through ErrorTrackingService (sync), so these are plain `def`
endpoints that FastAPI runs in its threadpool.
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_breakers, get_tracking
from api.schemas.errors import (
    CircuitResetRequest,
    CleanupRequest,
    CleanupResponse,
    ErrorListResponse,
    ErrorLogResponse,
    ErrorSummary,
    Pagination,
)
from errors.circuit_breaker import CircuitBreakerRegistry
from errors.tracking import ErrorLogFilters, ErrorStats, ErrorTrackingService

router = APIRouter(prefix="/errors", tags=["errors"])


def _summary(stats: ErrorStats) -> ErrorSummary:
    return ErrorSummary(
        total_errors=stats.total,
        critical_count=stats.critical_count,
        retryable_count=stats.retryable_count,
        by_category=stats.by_category,
        by_type=stats.by_type,
        by_severity=stats.by_severity,
    )


def health_verdict(stats: ErrorStats, breakers: CircuitBreakerRegistry) -> str:
    if stats.critical_count > 0:
        return "critical"
    if breakers.any_open():
        return "degraded"
    return "healthy"


@router.get("/", response_model=ErrorListResponse)
def list_errors(
    job_type: Optional[str] = Query(None),
    job_id: Optional[str] = Query(None),
    site_id: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    retryable: Optional[bool] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, description="Substring match on the error message"),
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=100),
    tracking: ErrorTrackingService = Depends(get_tracking),
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
) -> ErrorListResponse:
    filters = ErrorLogFilters(
        job_type=job_type,
        job_id=job_id,
        site_id=site_id,
        category=category,
        severity=severity,
        retryable=retryable,
        since=since,
        until=until,
        search=search,
    )
    result = tracking.query(filters, page=page, limit=limit)
    stats = tracking.stats()

    return ErrorListResponse(
        health=health_verdict(stats, breakers),
        errors=[ErrorLogResponse.model_validate(e) for e in result.entries],
        pagination=Pagination(
            page=result.page,
            limit=result.limit,
            total=result.total,
            total_pages=result.total_pages,
        ),
        summary=_summary(stats),
        circuit_breakers=breakers.all_status(),
    )


@router.get("/stats", response_model=ErrorSummary)
def error_stats(
    hours: int = Query(24, ge=1, le=24 * 30, description="Window size in hours"),
    tracking: ErrorTrackingService = Depends(get_tracking),
) -> ErrorSummary:
    return _summary(tracking.stats(window=timedelta(hours=hours)))


@router.get("/{entry_id}", response_model=ErrorLogResponse)
def get_error(
    entry_id: str,
    tracking: ErrorTrackingService = Depends(get_tracking),
) -> ErrorLogResponse:
    entry = tracking.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Error log not found")
    return ErrorLogResponse.model_validate(entry)


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_errors(
    body: CleanupRequest,
    tracking: ErrorTrackingService = Depends(get_tracking),
) -> CleanupResponse:
    deleted = tracking.cleanup(body.retention_days)
    return CleanupResponse(deleted=deleted, retention_days=body.retention_days)


@router.post("/circuit-breakers/reset")
def reset_circuit_breakers(
    body: CircuitResetRequest,
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
) -> dict:
    if body.service is None:
        breakers.reset_all()
    elif not breakers.reset(body.service):
        raise HTTPException(status_code=404, detail=f"No circuit breaker for {body.service}")
    return {"circuit_breakers": breakers.all_status()}
