"""
Pydantic schemas for the /jobs endpoints.

These are NOT database models — they define the HTTP API contract:
- JobCreate: what the caller sends to admit a job (request body)
- JobAdmission: what admission decided (created / existing / sentinel)
- JobResponse: what we send back for a single job (response body)
- JobListResponse: paginated list of jobs
- JobStats: aggregate statistics across all jobs

Range checks (priority 1-10, attempts ≥ 1) live in the admission pipeline,
so the same rules hold for callers that skip HTTP entirely.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from queues.registry import JobOptions


class JobCreate(BaseModel):
    """Request body for POST /jobs/."""

    type: str = Field(..., examples=["CONTENT_GENERATE"])
    payload: dict = Field(
        default_factory=dict,
        examples=[{"siteId": "site-1", "opportunityId": "opp-1", "contentType": "destination"}],
    )
    priority: Optional[int] = Field(default=None, description="1 = highest priority, 10 = lowest")
    delay: Optional[float] = Field(default=None, ge=0, description="Seconds before the job becomes runnable")
    attempts: Optional[int] = None
    remove_on_complete: Optional[int | bool] = None
    remove_on_fail: Optional[int | bool] = None

    def options(self) -> JobOptions:
        return JobOptions(
            priority=self.priority,
            delay=self.delay,
            attempts=self.attempts,
            remove_on_complete=self.remove_on_complete,
            remove_on_fail=self.remove_on_fail,
        )


class JobAdmission(BaseModel):
    """Response body for POST /jobs/. `value` is the job id or a sentinel string."""

    outcome: str
    value: str
    job_id: Optional[str] = None


class JobResponse(BaseModel):
    """Response body for a single job — returned by GET /jobs/{id}."""

    id: UUID
    type: str
    queue: str
    site_id: Optional[str] = None
    status: str
    priority: int
    attempts: int
    max_attempts: int
    payload: dict
    result: Optional[dict] = None
    error: Optional[str] = None
    correlation_key: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime

    # from_attributes=True tells Pydantic to read from SQLAlchemy model attributes
    model_config = {"from_attributes": True}


class JobListResponse(BaseModel):
    """Paginated list of jobs — returned by GET /jobs/."""

    jobs: list[JobResponse]
    total: int       # total matching jobs (ignoring pagination)
    page: int        # current page number
    page_size: int   # jobs per page


class JobStats(BaseModel):
    """Aggregate job statistics — returned by GET /jobs/stats."""

    total_jobs: int
    pending: int
    scheduled: int
    running: int
    retrying: int
    completed: int
    failed: int
    avg_execution_time_ms: Optional[float] = None
