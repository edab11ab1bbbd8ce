"""
Recurring schedule endpoints.

GET    /schedules/  → Every registered repeatable, plus defaults not yet registered
POST   /schedules/  → Register (or replace) a recurring job
DELETE /schedules/  → Remove one schedule, or every schedule when the body is empty
"""

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_scheduler
from api.schemas.schedule import ScheduleCreate, ScheduleDelete, ScheduleRegistered, ScheduleRemoved, ScheduleResponse
from errors.classifier import JobValidationError
from queues.registry import JobOptions
from scheduler.recurring import RecurringScheduler

router = APIRouter(prefix="/schedules", tags=["schedules"])


@router.get("/", response_model=list[ScheduleResponse])
def list_schedules(
    scheduler: RecurringScheduler = Depends(get_scheduler),
) -> list[ScheduleResponse]:
    return [ScheduleResponse.model_validate(s) for s in scheduler.list_schedules()]


@router.post("/", response_model=ScheduleRegistered, status_code=201)
def register_schedule(
    body: ScheduleCreate,
    scheduler: RecurringScheduler = Depends(get_scheduler),
) -> ScheduleRegistered:
    options = JobOptions(priority=body.priority, attempts=body.attempts)
    try:
        key = scheduler.register_recurring(body.type, body.payload, body.pattern, options)
    except JobValidationError as e:
        raise HTTPException(status_code=422, detail=e.message)
    return ScheduleRegistered(key=key)


@router.delete("/", response_model=ScheduleRemoved)
def remove_schedules(
    body: ScheduleDelete,
    scheduler: RecurringScheduler = Depends(get_scheduler),
) -> ScheduleRemoved:
    if body.type is None and body.pattern is None:
        return ScheduleRemoved(removed=scheduler.unregister_all())
    if body.type is None or body.pattern is None:
        raise HTTPException(status_code=422, detail="Both type and pattern are required to remove one schedule")
    try:
        removed = scheduler.unregister(body.type, body.pattern)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown job type: {body.type}")
    if not removed:
        raise HTTPException(status_code=404, detail=f"No schedule for {body.type} with pattern '{body.pattern}'")
    return ScheduleRemoved(removed=1)
