"""
Retry handler — decides what happens when a job fails.

Every failure is classified, recorded through the error tracking service, and
then goes one of two ways:

1. Retry: status RETRYING, scheduled_for = now + retry_delay(...), and the broker
   item goes back into the delayed set. The broker redelivers it when due and the
   executor flips it back to RUNNING.
2. Dead-letter: status FAILED, the broker item moves to its failed set and is
   never handed out again, and a CRITICAL/HIGH entry is logged.

Lifecycle on failure:
    RUNNING → (exception) → RETRYING → RUNNING → ...   (retry budget left)
    RUNNING → (exception) → FAILED                     (should_dead_letter, or
                                                        attempts reached max_attempts)

Why dead-letter before max_attempts? Because some errors never get better:
a missing API key (CONFIGURATION) or a CRITICAL error stops on the first try,
a PERMANENT one after the first attempt.
"""

import logging
import uuid as _uuid
from datetime import timedelta
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from errors.classifier import JobError, retry_delay, should_dead_letter, to_job_error
from errors.tracking import ErrorLogEntry, ErrorTrackingService
from models.catalog import DEDUP_EXEMPT_TYPES
from models.enums import ErrorCategory, ErrorSeverity, IncidentSeverity, JobStatus, JobType
from models.job import Job, utcnow
from queues.broker import BrokerItem, RedisBroker

logger = logging.getLogger(__name__)


def release_dedup_claim(broker: RedisBroker, site_id: Optional[str], job_type: str) -> None:
    """Let the next admission for (site, type) through. The claim's TTL covers us if Redis is down."""
    if not site_id or JobType(job_type) in DEDUP_EXEMPT_TYPES:
        return
    try:
        broker.release_dedup(site_id, job_type)
    except RedisError as e:
        logger.warning(f"Could not release dedup claim for {job_type}/{site_id}: {e}")


def dead_letter_severity(error: JobError) -> IncidentSeverity:
    if error.severity == ErrorSeverity.CRITICAL or error.category == ErrorCategory.CONFIGURATION:
        return IncidentSeverity.CRITICAL
    return IncidentSeverity.HIGH


class RetryHandler:

    def __init__(self, broker: RedisBroker, tracking: ErrorTrackingService):
        self._broker = broker
        self._tracking = tracking

    def handle_failure(self, item: BrokerItem, exc: BaseException, session: Session) -> JobStatus:
        """
        Called by JobExecutor when a job raises or returns a failed result.

        Args:
            item: the leased broker item
            exc: the raised (or synthesized) exception
            session: an open DB session (caller closes it)

        Returns:
            The status the job ended up in (RETRYING or FAILED).
        """
        error = to_job_error(exc)
        job = self._load_job(session, item.db_job_id)

        if job is None:
            # Row is gone (healed by the stuck-task sweep): nothing to retry against
            logger.warning(f"Job {item.db_job_id} not found during retry handling, dropping {item.correlation_key}")
            self._broker.fail(item.queue, item.id, error.message)
            return JobStatus.FAILED

        attempts_made = job.attempts
        job.error = error.message

        if should_dead_letter(error, attempts_made) or attempts_made >= job.max_attempts:
            # ── Dead-letter ─────────────────────────────────────
            job.status = JobStatus.FAILED.value
            job.completed_at = utcnow()
            session.commit()

            self._broker.fail(item.queue, item.id, error.message)
            self._tracking.record(ErrorLogEntry.from_error(
                error,
                job_id=str(job.id),
                job_type=job.type,
                site_id=job.site_id,
                attempt_number=attempts_made,
                severity=dead_letter_severity(error).value,
                context={"dead_letter": True, "max_attempts": job.max_attempts},
            ))
            release_dedup_claim(self._broker, job.site_id, job.type)
            logger.warning(
                f"Job {job.id} [{job.type}] dead-lettered after {attempts_made} attempt(s): "
                f"{error.category.value}/{error.severity.value} {error.message}"
            )
            return JobStatus.FAILED

        # ── Retry with backoff ──────────────────────────────────
        delay = retry_delay(error, attempts_made)
        job.status = JobStatus.RETRYING.value
        job.scheduled_for = utcnow() + timedelta(seconds=delay)
        session.commit()

        self._broker.retry(item.queue, item.id, delay, error.message)
        self._tracking.record(ErrorLogEntry.from_error(
            error,
            job_id=str(job.id),
            job_type=job.type,
            site_id=job.site_id,
            attempt_number=attempts_made,
            context={"retry_delay": round(delay, 3), "max_attempts": job.max_attempts},
        ))
        logger.info(
            f"Job {job.id} will be retried in {delay:.1f}s "
            f"({attempts_made}/{job.max_attempts})"
        )
        return JobStatus.RETRYING

    @staticmethod
    def _load_job(session: Session, job_id: Optional[str]) -> Optional[Job]:
        try:
            uid = _uuid.UUID(str(job_id))
        except (ValueError, AttributeError):
            logger.warning(f"Invalid job_id format: {job_id}")
            return None
        return session.get(Job, uid)
