"""
Job endpoints.

POST /jobs/          → Admit a new job (dedup → budget → record → broker)
GET  /jobs/          → List jobs with filtering + pagination
GET  /jobs/stats     → Aggregate statistics (how many pending, completed, etc.)
GET  /jobs/{job_id}  → Get a single job by ID

Admission goes through QueueRegistry, which is synchronous, so POST is a plain
`def` endpoint and FastAPI runs it in its threadpool. The read endpoints query
the Job Store directly with the async session.

POST answers 201 only when a job was created. A duplicate or over-budget request
is not an error: it answers 200 with the sentinel string, and a request that lost
the race to a concurrent admission answers 200 with the winner's job id.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, get_registry
from api.schemas.job import JobAdmission, JobCreate, JobListResponse, JobResponse, JobStats
from errors.classifier import JobValidationError
from models.enums import JobStatus
from models.job import Job
from queues.registry import QueueRegistry

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/", response_model=JobAdmission, status_code=201)
def create_job(
    job_in: JobCreate,
    response: Response,
    registry: QueueRegistry = Depends(get_registry),
) -> JobAdmission:
    """Run the admission pipeline for one job."""
    try:
        handle = registry.admit(job_in.type, job_in.payload, job_in.options())
    except JobValidationError as e:
        raise HTTPException(status_code=422, detail=e.message)
    except RedisError as e:
        raise HTTPException(status_code=503, detail=f"Broker unavailable: {e}")

    if not handle.created:
        response.status_code = 200
    return JobAdmission(outcome=handle.outcome.value, value=handle.value, job_id=handle.job_id)


@router.get("/", response_model=JobListResponse)
async def list_jobs(
    status: Optional[JobStatus] = Query(None, description="Filter by job status"),
    job_type: Optional[str] = Query(None, description="Filter by job type"),
    site_id: Optional[str] = Query(None, description="Filter by owning site"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Jobs per page"),
    db: AsyncSession = Depends(get_db),
) -> JobListResponse:
    """
    List jobs with optional filtering and pagination.

    Two queries: one counts every matching row (for `total`), the other
    fetches the requested page with OFFSET/LIMIT.
    """
    conditions = []
    if status:
        conditions.append(Job.status == status.value)
    if job_type:
        conditions.append(Job.type == job_type)
    if site_id:
        conditions.append(Job.site_id == site_id)

    total = (await db.execute(select(func.count(Job.id)).where(*conditions))).scalar() or 0

    offset = (page - 1) * page_size
    query = (
        select(Job)
        .where(*conditions)
        .order_by(Job.created_at.desc())
        .offset(offset)
        .limit(page_size)
    )
    jobs = (await db.execute(query)).scalars().all()

    return JobListResponse(
        jobs=[JobResponse.model_validate(j) for j in jobs],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/stats", response_model=JobStats)
async def get_job_stats(
    db: AsyncSession = Depends(get_db),
) -> JobStats:
    """Counts per status + average execution time of completed jobs."""
    rows = (await db.execute(
        select(Job.status, func.count(Job.id)).group_by(Job.status)
    )).all()
    by_status = {status: count for status, count in rows}

    # Average execution time for completed jobs (completed_at - started_at)
    avg_query = select(
        func.avg(
            func.extract("epoch", Job.completed_at) - func.extract("epoch", Job.started_at)
        )
    ).where(
        Job.status == JobStatus.COMPLETED.value,
        Job.started_at.is_not(None),
        Job.completed_at.is_not(None),
    )
    avg_seconds = (await db.execute(avg_query)).scalar()
    avg_ms = round(avg_seconds * 1000, 2) if avg_seconds else None

    return JobStats(
        total_jobs=sum(by_status.values()),
        pending=by_status.get(JobStatus.PENDING.value, 0),
        scheduled=by_status.get(JobStatus.SCHEDULED.value, 0),
        running=by_status.get(JobStatus.RUNNING.value, 0),
        retrying=by_status.get(JobStatus.RETRYING.value, 0),
        completed=by_status.get(JobStatus.COMPLETED.value, 0),
        failed=by_status.get(JobStatus.FAILED.value, 0),
        avg_execution_time_ms=avg_ms,
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """Get a single job by its UUID."""
    result = await db.execute(select(Job).where(Job.id == job_id))
    job = result.scalar_one_or_none()
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobResponse.model_validate(job)
