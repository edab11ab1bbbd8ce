"""
Queue operations endpoints.

GET  /queues/               → Per-queue counts, fail-open counters, compensation failures
POST /queues/stuck-sweep    → Run the stuck-task detector now instead of waiting for the worker
POST /queues/{name}/pause   → Workers stop leasing from the queue (admission still adds to it)
POST /queues/{name}/resume  → Undo a pause
POST /queues/{name}/drain   → Drop every waiting item (?delayed=true for delayed ones too);
                              their job records are marked FAILED
"""

from fastapi import APIRouter, Depends

from api.dependencies import get_detector, get_registry
from api.schemas.schedule import (
    DrainResponse,
    QueueMetrics,
    QueueOverview,
    QueueState,
    StuckJobInfo,
    SweepResponse,
)
from models.enums import QueueName
from queues.registry import QueueRegistry
from recovery.stuck_tasks import StuckTaskDetector

router = APIRouter(prefix="/queues", tags=["queues"])


@router.get("/", response_model=QueueOverview)
def queue_overview(
    registry: QueueRegistry = Depends(get_registry),
) -> QueueOverview:
    return QueueOverview(
        queues=[QueueMetrics(**m) for m in registry.queue_metrics()],
        counters=dict(registry.counters),
        compensation_failures=len(registry.compensation_log.failures()),
    )


@router.post("/stuck-sweep", response_model=SweepResponse)
def run_stuck_sweep(
    detector: StuckTaskDetector = Depends(get_detector),
) -> SweepResponse:
    result = detector.detect()
    return SweepResponse(
        healed=result.healed,
        permanently_failed=result.permanently_failed,
        details=[StuckJobInfo.model_validate(d) for d in result.details],
        errors=result.errors,
    )


@router.post("/{name}/pause", response_model=QueueState)
def pause_queue(
    name: QueueName,
    registry: QueueRegistry = Depends(get_registry),
) -> QueueState:
    registry.pause_queue(name)
    return QueueState(queue=name.value, paused=True)


@router.post("/{name}/resume", response_model=QueueState)
def resume_queue(
    name: QueueName,
    registry: QueueRegistry = Depends(get_registry),
) -> QueueState:
    registry.resume_queue(name)
    return QueueState(queue=name.value, paused=False)


@router.post("/{name}/drain", response_model=DrainResponse)
def drain_queue(
    name: QueueName,
    delayed: bool = False,
    registry: QueueRegistry = Depends(get_registry),
) -> DrainResponse:
    return DrainResponse.model_validate(registry.drain_queue(name, include_delayed=delayed))
