"""
Job executor — runs a single broker item inside a worker thread.

This is the code that actually DOES THE WORK. Each worker thread calls
executor.execute(item), and this method handles the full lifecycle:

    1. Load the Job row named by item.data["dbJobId"]
       (repeatable deliveries have none yet: create it)
    2. Skip rows that are already terminal
    3. Mark RUNNING, attempts += 1 (a row already RUNNING is a stalled
       run and goes straight to the retry handler)
    4. Find the handler, call handler.run(context)
    5. On success: mark COMPLETED, complete the broker item, reset the
       stuck counter for (site, type), release the dedup claim
    6. On failure: delegate to RetryHandler (retry vs dead-letter)

Every database operation uses a SYNC session because this runs in a thread.

Thread safety:
- Each execute() call gets its OWN database session (created and closed within)
- Handlers are expected to be stateless
- Redis clients are thread-safe
So multiple threads can call execute() simultaneously without locks.
"""

import logging
import time
import uuid as _uuid
from typing import Optional

from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from errors.circuit_breaker import CircuitBreakerRegistry
from errors.classifier import JobError, JobValidationError, StalledJobError, to_job_error
from jobs.base import JobContext, JobResult
from jobs.registry import HandlerRegistry
from models.catalog import ALL_SITES
from models.enums import ErrorSeverity, JobStatus, JobType, QueueName
from models.job import Job, utcnow
from models.payloads import parse_payload
from queues.broker import BrokerItem, RedisBroker
from recovery.stuck_tasks import StuckTaskDetector
from worker.retry import RetryHandler, release_dedup_claim

logger = logging.getLogger(__name__)


def failure_from_result(result: JobResult) -> JobError:
    """A handler returning success=False is classified exactly like one that raised."""
    error = to_job_error(RuntimeError(result.error or result.message or "Handler reported failure"))
    if result.retryable is False:
        error.retryable = False
        if error.severity in (ErrorSeverity.TEMPORARY, ErrorSeverity.RECOVERABLE):
            error.severity = ErrorSeverity.PERMANENT
    elif result.retryable is True:
        error.retryable = True
    return error


class JobExecutor:

    def __init__(self, session_factory: sessionmaker, broker: RedisBroker,
                 handlers: HandlerRegistry, retry_handler: RetryHandler,
                 stuck_detector: Optional[StuckTaskDetector] = None,
                 breakers: Optional[CircuitBreakerRegistry] = None):
        self._session_factory = session_factory
        self._broker = broker
        self._handlers = handlers
        self._retry_handler = retry_handler
        self._stuck_detector = stuck_detector
        self._breakers = breakers

    def execute(self, item: BrokerItem) -> dict:
        """
        Execute one leased broker item. Called by WorkerPool from a thread.

        Returns:
            dict with execution status (for logging/debugging, not stored)
        """
        session: Session = self._session_factory()
        job: Optional[Job] = None
        try:
            # ── Step 1: Find (or create) the record ─────────────
            job = self._load_or_create(session, item)
            if job is None:
                self._broker.complete(item.queue, item.id)
                return {"status": "skipped", "item": item.correlation_key}

            if job.is_terminal:
                logger.info(f"Job {job.id} already {job.status}, dropping redelivered {item.correlation_key}")
                self._broker.complete(item.queue, item.id)
                return {"status": "skipped", "job_id": str(job.id)}

            # ── Step 2: Mark RUNNING ────────────────────────────
            self._check_redelivery(job, item)
            job.status = JobStatus.RUNNING.value
            job.started_at = utcnow()
            job.attempts += 1
            job.correlation_key = item.correlation_key
            session.commit()

            # ── Step 3: Find handler and execute ────────────────
            handler = self._handlers.get(job.type)
            try:
                payload = parse_payload(JobType(job.type), job.payload)
            except ValidationError as e:
                raise JobValidationError(f"Stored payload for {job.type} is invalid: {e}", original=e)

            context = JobContext(
                job_id=str(job.id),
                job_type=JobType(job.type),
                queue=QueueName(job.queue),
                payload=payload,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                correlation_key=item.correlation_key,
                site_id=job.site_id,
                breakers=self._breakers,
            )
            start_time = time.monotonic()
            result = handler.run(context)
            elapsed = time.monotonic() - start_time

            if not result.success:
                raise failure_from_result(result)

            # ── Step 4: Mark COMPLETED ──────────────────────────
            job.status = JobStatus.COMPLETED.value
            job.result = {
                **result.data,
                "message": result.message,
                "execution_time_sec": round(elapsed, 3),
            }
            job.error = None
            job.completed_at = utcnow()
            session.commit()

            logger.info(f"Job {job.id} [{job.type}] completed in {elapsed:.3f}s")
            self._after_success(item, job)
            return {"status": "completed", "job_id": str(job.id)}

        except Exception as e:
            # ── Step 5: Handle failure ──────────────────────────
            session.rollback()
            logger.error(f"Job {item.db_job_id} [{item.name}] failed: {e}")

            if job is None:
                # Couldn't even load the record; let the lease expire and redeliver
                raise

            status = self._retry_handler.handle_failure(item, e, session)
            return {"status": status.value.lower(), "job_id": str(job.id), "error": str(e)}

        finally:
            # Always close the session — prevents connection leaks
            session.close()

    @staticmethod
    def _check_redelivery(job: Job, item: BrokerItem) -> None:
        """
        A row still RUNNING at delivery means the previous lease expired without
        the worker reporting back (it crashed or was killed). That run counts as a
        failed attempt: the retry handler retries or dead-letters it, and the row
        keeps its attempts and started_at.
        """
        context = {"correlation_key": item.correlation_key, "attempts": job.attempts,
                   "max_attempts": job.max_attempts}
        if job.status == JobStatus.RUNNING.value:
            raise StalledJobError(
                f"Job stalled: lease expired during attempt {job.attempts}/{job.max_attempts}",
                context=context,
            )
        if job.attempts >= job.max_attempts:
            raise StalledJobError(
                f"Job redelivered with no attempts left ({job.attempts}/{job.max_attempts})",
                context=context,
            )

    def _load_or_create(self, session: Session, item: BrokerItem) -> Optional[Job]:
        if item.db_job_id:
            job = session.get(Job, _uuid.UUID(item.db_job_id))
            if job is None:
                logger.warning(f"Job {item.db_job_id} not found for {item.correlation_key}, dropping")
            return job

        if not item.repeat_key:
            logger.warning(f"Broker item {item.correlation_key} carries no job id, dropping")
            return None

        return self._create_repeat_record(session, item)

    def _create_repeat_record(self, session: Session, item: BrokerItem) -> Optional[Job]:
        """Repeatable fires bypass admission; give them a record on first delivery."""
        site_id = item.data.get("siteId")
        job = Job(
            type=item.name,
            queue=item.queue,
            site_id=None if site_id in (None, ALL_SITES) else site_id,
            status=JobStatus.PENDING.value,
            priority=item.opts.get("priority") or 5,
            max_attempts=int(item.opts.get("attempts") or 1),
            payload=item.data,
            correlation_key=item.correlation_key,
        )
        session.add(job)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info(f"{item.name} for site {site_id} already active, skipping repeat fire {item.correlation_key}")
            return None

        self._broker.update_data(item.queue, item.id, {**item.data, "dbJobId": str(job.id)})
        logger.info(f"Created job {job.id} for repeatable {item.repeat_key}")
        return job

    def _after_success(self, item: BrokerItem, job: Job) -> None:
        """The record already says COMPLETED; nothing here may send it back through retry."""
        if self._stuck_detector is not None:
            self._stuck_detector.reset_stuck_count(job.site_id, job.type)
        release_dedup_claim(self._broker, job.site_id, job.type)
        try:
            self._broker.complete(item.queue, item.id, job.result)
        except RedisError as e:
            # Lease expiry redelivers it; the terminal-status check drops it then
            logger.error(f"Failed to complete broker item {item.correlation_key} for job {job.id}: {e}")
