"""
Pydantic schemas for the /errors endpoints.

ErrorLogResponse mirrors one ErrorLog row. ErrorListResponse wraps a page of them
with pagination and the overall health verdict operators see first:

    critical  → CRITICAL entries in the last 24h
    degraded  → no CRITICAL entries, but some circuit breaker is OPEN
    healthy   → neither
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ErrorLogResponse(BaseModel):
    id: UUID
    job_id: str
    job_type: str
    site_id: Optional[str] = None
    error_name: str
    error_message: str
    category: str
    severity: str
    retryable: bool
    attempt_number: int
    context: dict
    stack_trace: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ErrorSummary(BaseModel):
    total_errors: int
    critical_count: int
    retryable_count: int
    by_category: dict[str, int]
    by_type: dict[str, int]
    by_severity: dict[str, int]


class ErrorListResponse(BaseModel):
    health: str
    errors: list[ErrorLogResponse]
    pagination: Pagination
    summary: ErrorSummary
    circuit_breakers: dict[str, dict]


class CleanupRequest(BaseModel):
    retention_days: int = Field(default=30, ge=1)


class CleanupResponse(BaseModel):
    deleted: int
    retention_days: int


class CircuitResetRequest(BaseModel):
    """Reset one breaker by service name, or all of them when service is omitted."""

    service: Optional[str] = None
