"""
Pydantic schemas for the /schedules and /queues endpoints.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ScheduleCreate(BaseModel):
    """Request body for POST /schedules/."""

    type: str = Field(..., examples=["GSC_SYNC"])
    pattern: str = Field(..., examples=["0 */6 * * *"], description="5-field cron expression")
    payload: dict = Field(default_factory=dict)
    priority: Optional[int] = None
    attempts: Optional[int] = None


class ScheduleDelete(BaseModel):
    """Request body for DELETE /schedules/. Omit both fields to remove every schedule."""

    type: Optional[str] = None
    pattern: Optional[str] = None


class ScheduleResponse(BaseModel):
    job_type: str
    queue: str
    pattern: str
    description: str
    registered: bool
    next_run: Optional[datetime] = None
    payload: dict

    model_config = {"from_attributes": True}


class ScheduleRegistered(BaseModel):
    key: str


class ScheduleRemoved(BaseModel):
    removed: int


class QueueMetrics(BaseModel):
    queue: str
    waiting: int
    active: int
    delayed: int
    completed: int
    failed: int
    paused: int
    total: int


class QueueOverview(BaseModel):
    queues: list[QueueMetrics]
    counters: dict[str, int]
    compensation_failures: int


class StuckJobInfo(BaseModel):
    job_id: str
    job_type: str
    site_id: Optional[str] = None
    status: str
    action: str
    stuck_count: int
    stuck_minutes: int
    broker_removed: Optional[bool] = None

    model_config = {"from_attributes": True}


class SweepResponse(BaseModel):
    healed: int
    permanently_failed: int
    details: list[StuckJobInfo]
    errors: list[str]


class QueueState(BaseModel):
    queue: str
    paused: bool


class DrainResponse(BaseModel):
    queue: str
    removed: int
    jobs_failed: int

    model_config = {"from_attributes": True}
