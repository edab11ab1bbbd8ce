"""
Stuck-task detector — periodic repair of drift between the Job Store and the broker.

Two timeout classes per sweep:
    waiting   PENDING (and overdue SCHEDULED / RETRYING) rows whose due time,
              coalesce(scheduled_for, created_at), is more than 30 min ago.
              Admitted but never picked up. Rows on the "planned" placeholder
              queue are not real admissions and are ignored.
    running   RUNNING rows whose started_at is more than 60 min ago.
              The worker holding them most likely died.

Each stuck job is re-read under a row lock first; one that was picked up or
finished since detection is skipped. For the rest the (site, type) counter
goes up by one:

    count ≤ 3   HEAL     remove the broker item named by correlation_key (best effort),
                         delete the Job row so the upstream planner re-issues it fresh,
                         log StuckTaskHealed (MEDIUM on first occurrence, HIGH after)
    count > 3   FAIL     mark the row FAILED and keep it for a human,
                         log StuckTaskPermanentFailure (CRITICAL)

A success upstream calls reset_stuck_count(site, type). Counters live in an
injected store; the in-memory one forgets everything on restart, which is accepted:
a fresh worker process is itself a recovery action.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings
from errors.tracking import ErrorLogEntry, ErrorTrackingService
from models.enums import ErrorCategory, IncidentSeverity, JobStatus, PLANNED_QUEUE
from models.job import Job, as_utc, utcnow
from queues.broker import RedisBroker
from queues.compensation import CompensationLog

logger = logging.getLogger(__name__)

GLOBAL_OWNER = "global"
SWEEP_BATCH_SIZE = 100

WAITING_STATUSES = (JobStatus.PENDING.value, JobStatus.SCHEDULED.value, JobStatus.RETRYING.value)

CounterKey = tuple[str, str]


class StuckCounterStore(Protocol):
    def increment(self, key: CounterKey) -> int: ...
    def get(self, key: CounterKey) -> int: ...
    def reset(self, key: CounterKey) -> None: ...
    def clear(self) -> None: ...


class InMemoryStuckCounterStore:

    def __init__(self):
        self._counts: dict[CounterKey, int] = {}
        self._lock = threading.Lock()

    def increment(self, key: CounterKey) -> int:
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + 1
            return self._counts[key]

    def get(self, key: CounterKey) -> int:
        with self._lock:
            return self._counts.get(key, 0)

    def reset(self, key: CounterKey) -> None:
        with self._lock:
            self._counts.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()


def counter_key(site_id: Optional[str], job_type: str) -> CounterKey:
    return (site_id or GLOBAL_OWNER, str(job_type))


@dataclass
class _StuckJob:
    id: uuid.UUID
    type: str
    site_id: Optional[str]
    status: str
    correlation_key: Optional[str]
    attempts: int
    stuck_since: datetime


@dataclass
class StuckJobDetail:
    job_id: str
    job_type: str
    site_id: Optional[str]
    status: str
    action: str                  # "healed" | "permanently_failed" | "skipped"
    stuck_count: int
    stuck_minutes: int
    broker_removed: Optional[bool] = None


@dataclass
class SweepResult:
    healed: int = 0
    permanently_failed: int = 0
    details: list[StuckJobDetail] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class StuckTaskDetector:

    def __init__(self, session_factory: sessionmaker, broker: RedisBroker,
                 tracking: ErrorTrackingService, counters: StuckCounterStore,
                 compensation_log: Optional[CompensationLog] = None,
                 pending_timeout: timedelta = timedelta(minutes=settings.STUCK_PENDING_TIMEOUT_MINUTES),
                 running_timeout: timedelta = timedelta(minutes=settings.STUCK_RUNNING_TIMEOUT_MINUTES),
                 max_stuck_retries: int = settings.MAX_STUCK_RETRIES):
        self._session_factory = session_factory
        self._broker = broker
        self._tracking = tracking
        self._counters = counters
        self._compensation = compensation_log or CompensationLog()
        self._pending_timeout = pending_timeout
        self._running_timeout = running_timeout
        self._max_stuck_retries = max_stuck_retries

    def reset_stuck_count(self, site_id: Optional[str], job_type: str) -> None:
        self._counters.reset(counter_key(site_id, job_type))

    def stuck_count(self, site_id: Optional[str], job_type: str) -> int:
        return self._counters.get(counter_key(site_id, job_type))

    def detect(self, now: Optional[datetime] = None) -> SweepResult:
        """Run one sweep. A failure on one job is logged and the sweep moves on."""
        now = now or utcnow()
        result = SweepResult()

        for stuck in self._find_stuck(now):
            try:
                detail = self._process(stuck, now)
            except Exception as e:
                logger.error(f"Failed to recover stuck job {stuck.id}: {e}", exc_info=True)
                result.errors.append(f"{stuck.id}: {e}")
                continue

            result.details.append(detail)
            if detail.action == "healed":
                result.healed += 1
            elif detail.action == "permanently_failed":
                result.permanently_failed += 1

        if result.healed or result.permanently_failed or result.errors:
            logger.info(
                f"Stuck-task sweep: {result.healed} healed, "
                f"{result.permanently_failed} permanently failed, {len(result.errors)} errors"
            )
        return result

    # ── Detection ───────────────────────────────────────────────
    def _find_stuck(self, now: datetime) -> list[_StuckJob]:
        waiting_since = func.coalesce(Job.scheduled_for, Job.created_at)
        running_since = func.coalesce(Job.started_at, Job.created_at)

        with self._session_factory() as session:
            waiting = session.execute(
                select(Job, waiting_since)
                .where(
                    Job.status.in_(WAITING_STATUSES),
                    Job.queue != PLANNED_QUEUE,
                    waiting_since < now - self._pending_timeout,
                )
                .order_by(Job.created_at)
                .limit(SWEEP_BATCH_SIZE)
            ).all()
            running = session.execute(
                select(Job, running_since)
                .where(
                    Job.status == JobStatus.RUNNING.value,
                    running_since < now - self._running_timeout,
                )
                .order_by(Job.created_at)
                .limit(SWEEP_BATCH_SIZE)
            ).all()

            return [
                _StuckJob(
                    id=job.id,
                    type=job.type,
                    site_id=job.site_id,
                    status=job.status,
                    correlation_key=job.correlation_key,
                    attempts=job.attempts,
                    stuck_since=as_utc(since) if isinstance(since, datetime) else as_utc(job.created_at),
                )
                for job, since in [*waiting, *running]
            ]

    # ── Recovery ────────────────────────────────────────────────
    def _process(self, stuck: _StuckJob, now: datetime) -> StuckJobDetail:
        """
        Lock the row and re-check it before touching either store. A row that moved
        on since detection (a worker picked it up, it finished, it was deleted) is
        skipped and does not count against its (site, type).
        """
        key = counter_key(stuck.site_id, stuck.type)
        stuck_minutes = int((now - stuck.stuck_since).total_seconds() // 60)
        detail = StuckJobDetail(
            job_id=str(stuck.id),
            job_type=stuck.type,
            site_id=stuck.site_id,
            status=stuck.status,
            action="skipped",
            stuck_count=self._counters.get(key),
            stuck_minutes=stuck_minutes,
        )

        session: Session = self._session_factory()
        try:
            job = self._lock_if_unchanged(session, stuck)
            if job is None:
                session.rollback()
                logger.info(f"Stuck job {stuck.id} [{stuck.type}] changed since detection, skipping")
                return detail

            count = self._counters.increment(key)
            detail.stuck_count = count
            if count > self._max_stuck_retries:
                self._permanently_fail(session, job, stuck, count, stuck_minutes, now)
                detail.action = "permanently_failed"
            else:
                healed, detail.broker_removed = self._heal(session, job, stuck, count, stuck_minutes)
                if healed:
                    detail.action = "healed"
            return detail
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _lock_if_unchanged(session: Session, stuck: _StuckJob) -> Optional[Job]:
        """SELECT ... FOR UPDATE; None when the row is gone or its status moved on."""
        job = session.execute(
            select(Job).where(Job.id == stuck.id).with_for_update()
        ).scalar_one_or_none()
        if job is None or job.status != stuck.status:
            return None
        return job

    def _permanently_fail(self, session: Session, job: Job, stuck: _StuckJob, count: int,
                          stuck_minutes: int, now: datetime) -> None:
        message = (
            f"Exceeded max retries ({self._max_stuck_retries}) for stuck task: "
            f"{stuck.type} stuck in {stuck.status} for {stuck_minutes} minutes "
            f"({count} consecutive detections)"
        )
        job.status = JobStatus.FAILED.value
        job.error = message
        job.completed_at = now
        session.commit()

        logger.error(f"Stuck job {stuck.id} [{stuck.type}] permanently failed: {message}")
        self._tracking.record(ErrorLogEntry(
            job_id=str(stuck.id),
            job_type=stuck.type,
            site_id=stuck.site_id,
            error_name="StuckTaskPermanentFailure",
            error_message=message,
            category=ErrorCategory.UNKNOWN.value,
            severity=IncidentSeverity.CRITICAL.value,
            retryable=False,
            attempt_number=stuck.attempts,
            context={
                "stuck_count": count,
                "status": stuck.status,
                "stuck_minutes": stuck_minutes,
                "correlation_key": stuck.correlation_key,
            },
        ))

    def _heal(self, session: Session, job: Job, stuck: _StuckJob, count: int,
              stuck_minutes: int) -> tuple[bool, Optional[bool]]:
        """
        With the row locked: remove the broker item, then delete the row.
        Returns (healed, broker_removed); broker_removed is None when the row had no key.
        """
        reason = f"stuck in {stuck.status} for {stuck_minutes} minutes"
        broker_removed = None

        if stuck.correlation_key:
            queue, _, item_id = stuck.correlation_key.partition(":")
            outcome = {}
            record = self._compensation.run(
                "remove_broker_item", stuck.correlation_key, reason,
                lambda: outcome.setdefault("found", self._broker.remove(queue, item_id)),
            )
            broker_removed = bool(record.succeeded and outcome.get("found"))

        def delete_row():
            session.delete(job)
            session.commit()

        record = self._compensation.run("delete_job_record", str(stuck.id), reason, delete_row)
        if not record.succeeded:
            session.rollback()
            return False, broker_removed

        severity = IncidentSeverity.MEDIUM if count == 1 else IncidentSeverity.HIGH
        logger.warning(
            f"Healed stuck job {stuck.id} [{stuck.type}] for site {stuck.site_id or GLOBAL_OWNER}: "
            f"{reason}, occurrence {count}/{self._max_stuck_retries}"
        )
        self._tracking.record(ErrorLogEntry(
            job_id=str(stuck.id),
            job_type=stuck.type,
            site_id=stuck.site_id,
            error_name="StuckTaskHealed",
            error_message=f"Stuck task healed: {stuck.type} {reason}",
            category=ErrorCategory.UNKNOWN.value,
            severity=severity.value,
            retryable=True,
            attempt_number=stuck.attempts,
            context={
                "stuck_count": count,
                "status": stuck.status,
                "stuck_minutes": stuck_minutes,
                "correlation_key": stuck.correlation_key,
                "broker_removed": broker_removed,
            },
        ))
        return True, broker_removed
