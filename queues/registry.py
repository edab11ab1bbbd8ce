"""
Queue registry — the single entry point that turns a request into a tracked job.

    admit(type, payload, options)
        1. validate     type known, payload fits the type's model, siteId present
                        unless the type is site-optional           → JobValidationError
        2. dedup        SET dedup:{siteId}:{type} NX EX             → DEDUPLICATED sentinel
        3. budget       INCR budget:{queue}:{type}:{day}            → BUDGET_EXCEEDED sentinel
        4. create       Job row, PENDING (or SCHEDULED when delayed)
        5. dispatch     broker.add(...) with only the options the caller set
                        (failure → delete the row, release the claim, re-raise)
        6. write back   correlation_key = "{queue}:{itemId}"

Steps 2 and 3 fail open: if Redis is unreachable we admit anyway, log a warning
and bump a counter, so an unrelated cache outage doesn't stop all work. The
partial unique index on jobs(site_id, type) is the backstop; losing that race
returns the existing job (EXISTING).
"""

import enum
import logging
import uuid
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Optional

from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings
from errors.classifier import JobValidationError
from models.catalog import ALL_SITES, DEDUP_EXEMPT_TYPES, SITE_OPTIONAL_TYPES, queue_for
from models.enums import NON_TERMINAL_STATUSES, PLANNED_QUEUE, JobStatus, JobType, QueueName
from models.job import Job, utcnow
from models.payloads import JobPayload, parse_payload
from queues.broker import RedisBroker
from queues.compensation import CompensationLog
from queues.config import DAILY_BUDGETS, get_queue_config

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5


class AdmissionOutcome(str, enum.Enum):
    CREATED = "CREATED"
    EXISTING = "EXISTING"              # lost the race to another admission; its job id is returned
    DEDUPLICATED = "DEDUPLICATED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"


@dataclass(frozen=True)
class JobHandle:
    """Result of admit(). `value` is the job id, or the sentinel string when no job was created."""
    outcome: AdmissionOutcome
    value: str
    job_id: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.outcome == AdmissionOutcome.CREATED


@dataclass
class JobOptions:
    """Caller-supplied overrides. Anything left as None keeps the queue default."""
    priority: Optional[int] = None          # 1 = highest, 10 = lowest
    delay: Optional[float] = None           # seconds
    attempts: Optional[int] = None
    backoff: Optional[dict] = None
    remove_on_complete: Optional[int | bool] = None
    remove_on_fail: Optional[int | bool] = None

    def explicit(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class DrainResult:
    queue: str
    removed: int
    jobs_failed: int


def dedup_sentinel(site_id: str, job_type: JobType) -> str:
    return f"dedup:{site_id}:{job_type.value}"


def budget_sentinel(queue: QueueName, job_type: JobType) -> str:
    return f"budget-exceeded:{queue.value}:{job_type.value}"


def validate_request(job_type, payload, options: Optional[JobOptions] = None) -> tuple[JobType, QueueName, JobPayload]:
    """Type known, payload fits its model, owner present unless site-optional. Raises JobValidationError."""
    options = options or JobOptions()
    try:
        job_type = JobType(job_type)
        queue = queue_for(job_type)
    except ValueError:
        raise JobValidationError(f"Unknown job type: {job_type}", context={"job_type": str(job_type)})

    try:
        model = parse_payload(job_type, payload)
    except (TypeError, ValidationError) as e:
        raise JobValidationError(
            f"Invalid payload for {job_type.value}: {e}",
            context={"job_type": job_type.value},
            original=e,
        )

    has_owner = bool(model.owner_site_id) or bool(getattr(model, "domain_id", None))
    if job_type not in SITE_OPTIONAL_TYPES and not has_owner:
        raise JobValidationError(
            f"siteId is required for {job_type.value}",
            context={"job_type": job_type.value},
        )

    if options.priority is not None and not 1 <= options.priority <= 10:
        raise JobValidationError(f"priority must be between 1 and 10, got {options.priority}")
    if options.attempts is not None and options.attempts < 1:
        raise JobValidationError(f"attempts must be at least 1, got {options.attempts}")

    return job_type, queue, model


class QueueRegistry:

    def __init__(self, session_factory: sessionmaker, broker: RedisBroker,
                 compensation_log: Optional[CompensationLog] = None,
                 daily_budgets: Optional[dict[QueueName, int]] = None,
                 dedup_ttl_seconds: int = settings.DEDUP_TTL_SECONDS,
                 budget_warning_ratio: float = settings.BUDGET_WARNING_RATIO):
        self._session_factory = session_factory
        self._broker = broker
        self.compensation_log = compensation_log or CompensationLog()
        self._budgets = DAILY_BUDGETS if daily_budgets is None else daily_budgets
        self._dedup_ttl = dedup_ttl_seconds
        self._warning_ratio = budget_warning_ratio
        # Fail-open events; exposed on GET /queues/ so a Redis outage is visible
        self.counters: Counter[str] = Counter()

    @property
    def broker(self) -> RedisBroker:
        return self._broker

    # ── Admission ───────────────────────────────────────────────
    def admit(self, job_type: "JobType | str", payload: "dict | JobPayload",
              options: Optional[JobOptions] = None) -> JobHandle:
        options = options or JobOptions()
        job_type, queue, model = validate_request(job_type, payload, options)

        site_id = model.owner_site_id
        owner = None if site_id in (None, ALL_SITES) else site_id

        # ── Dedup ───────────────────────────────────────────────
        dedup_claimed = False
        if owner and job_type not in DEDUP_EXEMPT_TYPES:
            try:
                if not self._broker.claim_dedup(owner, job_type.value, self._dedup_ttl):
                    logger.info(f"Deduplicated {job_type.value} for site {owner}")
                    return JobHandle(AdmissionOutcome.DEDUPLICATED, dedup_sentinel(owner, job_type))
                dedup_claimed = True
            except RedisError as e:
                self.counters["dedup_check_failed"] += 1
                logger.warning(f"Dedup check failed for {job_type.value}/{owner}, admitting anyway: {e}")

        # ── Budget ──────────────────────────────────────────────
        ceiling = self._budgets.get(queue)
        if ceiling:
            try:
                count = self._broker.incr_budget(queue.value, job_type.value, utcnow().date())
            except RedisError as e:
                self.counters["budget_check_failed"] += 1
                logger.warning(f"Budget check failed for {queue.value}:{job_type.value}, admitting anyway: {e}")
            else:
                if count > ceiling:
                    if dedup_claimed:
                        self._broker.release_dedup(owner, job_type.value)
                    logger.warning(
                        f"Daily budget exceeded for {queue.value}:{job_type.value} ({count}/{ceiling})"
                    )
                    return JobHandle(AdmissionOutcome.BUDGET_EXCEEDED, budget_sentinel(queue, job_type))
                if count >= ceiling * self._warning_ratio:
                    logger.warning(
                        f"Daily budget for {queue.value}:{job_type.value} at {count}/{ceiling}, "
                        f"past {self._warning_ratio:.0%} of the ceiling"
                    )

        # ── Durable creation ────────────────────────────────────
        try:
            job_id = self._create_record(job_type, queue, owner, model, options)
        except IntegrityError:
            existing = self._find_active(owner, job_type)
            if existing is None:
                raise
            logger.info(f"{job_type.value} for site {owner} already active as job {existing}")
            return JobHandle(AdmissionOutcome.EXISTING, existing, job_id=existing)
        except Exception:
            if dedup_claimed:
                self._broker.release_dedup(owner, job_type.value)
            raise

        # ── Dispatch ────────────────────────────────────────────
        try:
            item_id = self._broker.add(
                queue, job_type.value, {"dbJobId": job_id, **model.to_json()}, **options.explicit()
            )
        except Exception as e:
            logger.error(f"Dispatch of {job_type.value} (job {job_id}) failed: {e}")
            self.compensation_log.run(
                "delete_job_record", job_id, f"broker add failed: {e}",
                lambda: self._delete_record(job_id),
            )
            if dedup_claimed:
                self.compensation_log.run(
                    "release_dedup", dedup_sentinel(owner, job_type), f"job {job_id} was not dispatched",
                    lambda: self._broker.release_dedup(owner, job_type.value),
                )
            raise

        # ── Correlation write-back ──────────────────────────────
        correlation_key = f"{queue.value}:{item_id}"
        try:
            self._set_correlation_key(job_id, correlation_key)
        except Exception:
            # The job is live in the broker; the stuck-task sweep repairs the missing key
            logger.error(f"Failed to write correlation key {correlation_key} for job {job_id}", exc_info=True)

        logger.info(f"Admitted {job_type.value} as job {job_id} ({correlation_key})")
        return JobHandle(AdmissionOutcome.CREATED, job_id, job_id=job_id)

    # ── Job Store helpers ───────────────────────────────────────
    def _create_record(self, job_type: JobType, queue: QueueName, owner: Optional[str],
                       model: JobPayload, options: JobOptions) -> str:
        now = utcnow()
        delayed = bool(options.delay and options.delay > 0)

        session: Session = self._session_factory()
        try:
            job = Job(
                type=job_type.value,
                queue=queue.value,
                site_id=owner,
                status=(JobStatus.SCHEDULED if delayed else JobStatus.PENDING).value,
                priority=options.priority or DEFAULT_PRIORITY,
                attempts=0,
                max_attempts=options.attempts or get_queue_config(queue).default_attempts,
                payload=model.to_json(),
                scheduled_for=now + timedelta(seconds=options.delay) if delayed else None,
                created_at=now,
            )
            session.add(job)
            session.commit()
            return str(job.id)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _find_active(self, owner: Optional[str], job_type: JobType) -> Optional[str]:
        with self._session_factory() as session:
            job_id = session.execute(
                select(Job.id).where(
                    Job.site_id == owner,
                    Job.type == job_type.value,
                    Job.status.in_([s.value for s in NON_TERMINAL_STATUSES]),
                    Job.queue != PLANNED_QUEUE,
                ).limit(1)
            ).scalar()
        return str(job_id) if job_id else None

    def _delete_record(self, job_id: str) -> None:
        session: Session = self._session_factory()
        try:
            session.execute(delete(Job).where(Job.id == uuid.UUID(job_id)))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _set_correlation_key(self, job_id: str, correlation_key: str) -> None:
        session: Session = self._session_factory()
        try:
            job = session.get(Job, uuid.UUID(job_id))
            if job is not None:
                job.correlation_key = correlation_key
                session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ── Broker operations for operators and recovery ────────────
    def remove_job(self, queue: QueueName, item_id: str) -> bool:
        """Best-effort removal of one broker item. False if missing or Redis failed."""
        try:
            return self._broker.remove(queue, item_id)
        except RedisError as e:
            logger.error(f"Failed to remove broker item {item_id} from {queue}: {e}")
            return False

    def pause_queue(self, queue: QueueName) -> None:
        """Workers stop leasing from the queue; admission keeps adding to it."""
        self._broker.pause(queue)
        logger.warning(f"Queue {QueueName(queue).value} paused")

    def resume_queue(self, queue: QueueName) -> None:
        self._broker.resume(queue)
        logger.info(f"Queue {QueueName(queue).value} resumed")

    def drain_queue(self, queue: QueueName, include_delayed: bool = False) -> DrainResult:
        """
        Drop every waiting (optionally delayed) item from the queue. Their job rows
        would otherwise point at broker items that no longer exist, so non-terminal
        ones are marked FAILED and their dedup claims released.
        """
        queue = QueueName(queue)
        items = self._broker.drain(queue, include_delayed)
        job_ids = [uuid.UUID(item.db_job_id) for item in items if item.db_job_id]
        failed = self._fail_drained(job_ids, f"Drained from {queue.value} by operator")

        for site_id, job_type in failed:
            if site_id and JobType(job_type) not in DEDUP_EXEMPT_TYPES:
                try:
                    self._broker.release_dedup(site_id, job_type)
                except RedisError as e:
                    logger.warning(f"Could not release dedup claim for {job_type}/{site_id}: {e}")

        logger.warning(
            f"Drained {len(items)} item(s) from {queue.value}, {len(failed)} job record(s) marked FAILED"
        )
        return DrainResult(queue=queue.value, removed=len(items), jobs_failed=len(failed))

    def _fail_drained(self, job_ids: list[uuid.UUID], reason: str) -> list[tuple[Optional[str], str]]:
        """Mark the still-live rows FAILED. Returns (site_id, type) of each one."""
        if not job_ids:
            return []
        session: Session = self._session_factory()
        try:
            jobs = session.execute(
                select(Job).where(
                    Job.id.in_(job_ids),
                    Job.status.in_([s.value for s in NON_TERMINAL_STATUSES]),
                )
            ).scalars().all()
            now = utcnow()
            for job in jobs:
                job.status = JobStatus.FAILED.value
                job.error = reason
                job.completed_at = now
            session.commit()
            return [(job.site_id, job.type) for job in jobs]
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def queue_metrics(self) -> list[dict]:
        metrics = []
        for queue in QueueName:
            counts = self._broker.counts(queue)
            metrics.append({
                "queue": queue.value,
                **counts,
                "total": sum(counts.values()),
            })
        return metrics

    def clean_all_queues(self, completed_grace: float = 3600, failed_grace: float = 86400,
                         limit: int = 5000) -> int:
        """Drop old finished broker items from every queue. Returns the number removed."""
        total = 0
        for queue in QueueName:
            try:
                completed = self._broker.clean(queue, "completed", completed_grace, limit)
                failed = self._broker.clean(queue, "failed", failed_grace, limit)
            except RedisError as e:
                logger.error(f"Failed to clean {queue.value}: {e}")
                continue
            if completed or failed:
                logger.info(f"Cleaned {queue.value}: {len(completed)} completed, {len(failed)} failed")
            total += len(completed) + len(failed)
        return total


