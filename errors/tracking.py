"""
Error tracking service — persists failures, spots patterns, serves operator reads.

Write path:
    record(entry)      classify if needed → insert ErrorLog row → mirror message onto the Job row

    If the database is down, record() logs the entry and returns None.
    Error tracking must never fail the job it is reporting on.

Periodic:
    detect_patterns()  last hour, grouped by job type → "warning" alert above 10 failures,
                       "critical" alert whenever CRITICAL entries exist (with ≤20 examples)
    cleanup(days)      delete entries (and their FAILED job rows) past retention

Read path (no side effects):
    stats(window), query(filters, page, limit), get(entry_id)
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from errors.classifier import JobError, to_job_error
from models.enums import ErrorSeverity, JobStatus
from models.error_log import ErrorLog
from models.job import Job, utcnow

logger = logging.getLogger(__name__)

PATTERN_WINDOW = timedelta(hours=1)
FAILURE_RATE_THRESHOLD = 10
MAX_ALERT_EXAMPLES = 20
CRITICAL = ErrorSeverity.CRITICAL.value


@dataclass
class ErrorLogEntry:
    """
    One failure to record. category/severity/retryable may be left empty —
    record() classifies from `error` (or the message) when they are.
    """
    job_id: str
    job_type: str
    error_message: str
    error_name: str = "Error"
    site_id: Optional[str] = None
    category: Optional[str] = None
    severity: Optional[str] = None
    retryable: Optional[bool] = None
    attempt_number: int = 0
    context: dict = field(default_factory=dict)
    stack_trace: Optional[str] = None
    error: Optional[BaseException] = None

    @classmethod
    def from_error(cls, error: JobError, *, job_id: str, job_type: str,
                   site_id: Optional[str] = None, attempt_number: int = 0,
                   severity: Optional[str] = None, context: Optional[dict] = None) -> "ErrorLogEntry":
        return cls(
            job_id=job_id,
            job_type=job_type,
            site_id=site_id,
            error_name=error.name,
            error_message=error.message,
            category=error.category.value,
            severity=severity or error.severity.value,
            retryable=error.retryable,
            attempt_number=attempt_number,
            context={**error.context, **(context or {})},
            stack_trace=error.stack_trace,
            error=error,
        )

    @property
    def is_classified(self) -> bool:
        return None not in (self.category, self.severity, self.retryable)


@dataclass
class Alert:
    level: str        # "warning" | "critical"
    title: str
    message: str
    context: dict = field(default_factory=dict)


@dataclass
class ErrorStats:
    total: int
    by_category: dict[str, int]
    by_type: dict[str, int]
    by_severity: dict[str, int]
    critical_count: int
    retryable_count: int


@dataclass
class ErrorLogFilters:
    job_type: Optional[str] = None
    job_id: Optional[str] = None
    site_id: Optional[str] = None
    category: Optional[str] = None
    severity: Optional[str] = None
    retryable: Optional[bool] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    search: Optional[str] = None


@dataclass
class ErrorLogPage:
    entries: list[ErrorLog]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _log_alert(alert: Alert) -> None:
    log = logger.critical if alert.level == "critical" else logger.warning
    log(f"[ALERT] {alert.title}: {alert.message}")


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError):
        return None


class ErrorTrackingService:

    def __init__(self, session_factory: sessionmaker,
                 alert_sink: Callable[[Alert], None] = _log_alert):
        self._session_factory = session_factory
        self._alert_sink = alert_sink

    # ── Write path ──────────────────────────────────────────────
    def record(self, entry: ErrorLogEntry) -> Optional[str]:
        """Persist one failure. Returns the new ErrorLog id, or None if persistence failed."""
        if not entry.is_classified:
            self._classify(entry)

        session: Session = self._session_factory()
        try:
            row = ErrorLog(
                job_id=str(entry.job_id),
                job_type=str(entry.job_type),
                site_id=entry.site_id,
                error_name=entry.error_name,
                error_message=entry.error_message,
                category=entry.category,
                severity=entry.severity,
                retryable=entry.retryable,
                attempt_number=entry.attempt_number,
                context=entry.context,
                stack_trace=entry.stack_trace,
            )
            session.add(row)

            # Mirror onto the job row for quick status display. The job may already
            # be gone (stuck-task healing deletes it).
            job_uuid = _parse_uuid(entry.job_id)
            job = session.get(Job, job_uuid) if job_uuid else None
            if job is not None:
                job.error = entry.error_message

            session.commit()
            logger.warning(
                f"Tracked {entry.category}/{entry.severity} error for job {entry.job_id} "
                f"[{entry.job_type}] attempt {entry.attempt_number}: {entry.error_message}"
            )
            return str(row.id)

        except Exception:
            session.rollback()
            logger.error(
                "Failed to persist error log, original error follows: "
                f"job_id={entry.job_id} job_type={entry.job_type} name={entry.error_name} "
                f"category={entry.category} severity={entry.severity} "
                f"attempt={entry.attempt_number} message={entry.error_message!r}",
                exc_info=True,
            )
            return None
        finally:
            session.close()

    def _classify(self, entry: ErrorLogEntry) -> None:
        source = entry.error if entry.error is not None else Exception(entry.error_message)
        error = to_job_error(source)
        if entry.category is None:
            entry.category = error.category.value
        if entry.severity is None:
            entry.severity = error.severity.value
        if entry.retryable is None:
            entry.retryable = error.retryable
        if entry.stack_trace is None:
            entry.stack_trace = error.stack_trace

    # ── Periodic ────────────────────────────────────────────────
    def detect_patterns(self, now: Optional[datetime] = None) -> list[Alert]:
        """Raise alerts for failure spikes and critical errors in the last hour."""
        since = (now or utcnow()) - PATTERN_WINDOW
        alerts: list[Alert] = []

        with self._session_factory() as session:
            counts = session.execute(
                select(ErrorLog.job_type, func.count(ErrorLog.id))
                .where(ErrorLog.created_at >= since)
                .group_by(ErrorLog.job_type)
            ).all()

            for job_type, count in counts:
                if count > FAILURE_RATE_THRESHOLD:
                    alerts.append(Alert(
                        level="warning",
                        title=f"High failure rate for {job_type}",
                        message=f"{count} {job_type} failures in the last hour",
                        context={"job_type": job_type, "count": count, "window": "1 hour"},
                    ))

            critical_filter = (ErrorLog.created_at >= since, ErrorLog.severity == CRITICAL)
            critical_count = session.execute(
                select(func.count(ErrorLog.id)).where(*critical_filter)
            ).scalar() or 0

            if critical_count:
                examples = session.execute(
                    select(ErrorLog)
                    .where(*critical_filter)
                    .order_by(ErrorLog.created_at.desc())
                    .limit(MAX_ALERT_EXAMPLES)
                ).scalars().all()
                alerts.append(Alert(
                    level="critical",
                    title="Critical errors detected",
                    message=f"{critical_count} critical errors in the last hour",
                    context={
                        "count": critical_count,
                        "errors": [
                            {
                                "id": str(e.id),
                                "job_id": e.job_id,
                                "job_type": e.job_type,
                                "error": e.error_message,
                            }
                            for e in examples
                        ],
                    },
                ))

        for alert in alerts:
            self._alert_sink(alert)
        return alerts

    def cleanup(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete entries older than the retention window, plus their FAILED job rows."""
        cutoff = (now or utcnow()) - timedelta(days=retention_days)

        session: Session = self._session_factory()
        try:
            old_job_ids = session.execute(
                select(ErrorLog.job_id).where(ErrorLog.created_at < cutoff).distinct()
            ).scalars().all()

            removed = session.execute(
                delete(ErrorLog).where(ErrorLog.created_at < cutoff)
            ).rowcount or 0

            job_uuids = [u for u in (_parse_uuid(j) for j in old_job_ids) if u is not None]
            removed_jobs = 0
            if job_uuids:
                removed_jobs = session.execute(
                    delete(Job).where(
                        Job.id.in_(job_uuids),
                        Job.status == JobStatus.FAILED.value,
                        Job.updated_at < cutoff,
                    )
                ).rowcount or 0

            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            f"Cleaned up {removed} error log entries and {removed_jobs} failed jobs "
            f"older than {retention_days} days"
        )
        return removed

    # ── Read path ───────────────────────────────────────────────
    def stats(self, window: timedelta = timedelta(hours=24),
              now: Optional[datetime] = None) -> ErrorStats:
        since = (now or utcnow()) - window
        in_window = ErrorLog.created_at >= since

        with self._session_factory() as session:
            def grouped(column) -> dict[str, int]:
                rows = session.execute(
                    select(column, func.count(ErrorLog.id)).where(in_window).group_by(column)
                ).all()
                return {key: count for key, count in rows}

            by_category = grouped(ErrorLog.category)
            by_type = grouped(ErrorLog.job_type)
            by_severity = grouped(ErrorLog.severity)
            retryable_count = session.execute(
                select(func.count(ErrorLog.id)).where(in_window, ErrorLog.retryable.is_(True))
            ).scalar() or 0

        return ErrorStats(
            total=sum(by_type.values()),
            by_category=by_category,
            by_type=by_type,
            by_severity=by_severity,
            critical_count=by_severity.get(CRITICAL, 0),
            retryable_count=retryable_count,
        )

    def query(self, filters: Optional[ErrorLogFilters] = None,
              page: int = 1, limit: int = 25) -> ErrorLogPage:
        """Newest-first page of error log entries matching filters."""
        filters = filters or ErrorLogFilters()
        page = max(page, 1)
        limit = max(limit, 1)

        conditions = []
        if filters.job_type:
            conditions.append(ErrorLog.job_type == filters.job_type)
        if filters.job_id:
            conditions.append(ErrorLog.job_id == filters.job_id)
        if filters.site_id:
            conditions.append(ErrorLog.site_id == filters.site_id)
        if filters.category:
            conditions.append(ErrorLog.category == filters.category)
        if filters.severity:
            conditions.append(ErrorLog.severity == filters.severity)
        if filters.retryable is not None:
            conditions.append(ErrorLog.retryable.is_(filters.retryable))
        if filters.since:
            conditions.append(ErrorLog.created_at >= filters.since)
        if filters.until:
            conditions.append(ErrorLog.created_at < filters.until)
        if filters.search:
            conditions.append(ErrorLog.error_message.ilike(f"%{filters.search}%"))

        with self._session_factory() as session:
            total = session.execute(
                select(func.count(ErrorLog.id)).where(*conditions)
            ).scalar() or 0
            entries = session.execute(
                select(ErrorLog)
                .where(*conditions)
                .order_by(ErrorLog.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars().all()

        return ErrorLogPage(entries=list(entries), page=page, limit=limit, total=total)

    def get(self, entry_id: str) -> Optional[ErrorLog]:
        entry_uuid = _parse_uuid(entry_id)
        if entry_uuid is None:
            return None
        with self._session_factory() as session:
            return session.get(ErrorLog, entry_uuid)
