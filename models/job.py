"""
Job ORM model — maps to the "jobs" table, the durable record of every job.

Key design decisions:
- UUID primary key, assigned by the store
- JSONB payload/result on Postgres (plain JSON elsewhere, e.g. SQLite in tests)
- correlation_key ties the record to its broker item: "{queue}:{brokerItemId}".
  It is NULL until dispatch succeeds; broker item ids are only unique per queue.
- A partial unique index on (site_id, type) for non-terminal, non-exempt,
  non-placeholder rows backs the one-active-job-per-owner rule at the store level.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base
from models.catalog import DEDUP_EXEMPT_TYPES
from models.enums import NON_TERMINAL_STATUSES, PLANNED_QUEUE, JobStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _sql_list(values) -> str:
    return ", ".join(f"'{v.value}'" for v in sorted(values, key=lambda v: v.value))


# Rendered into DDL for both Postgres and SQLite.
_ACTIVE_OWNER_PREDICATE = (
    f"status IN ({_sql_list(NON_TERMINAL_STATUSES)}) "
    f"AND queue <> '{PLANNED_QUEUE}' "
    f"AND type NOT IN ({_sql_list(DEDUP_EXEMPT_TYPES)})"
)


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index(
            "uq_jobs_active_site_type",
            "site_id",
            "type",
            unique=True,
            postgresql_where=text(_ACTIVE_OWNER_PREDICATE),
            sqlite_where=text(_ACTIVE_OWNER_PREDICATE),
        ),
        Index("ix_jobs_status_created_at", "status", "created_at"),
    )

    # ── Identity ────────────────────────────────────────────────
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    queue: Mapped[str] = mapped_column(String(32), nullable=False)
    correlation_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # ── Ownership ───────────────────────────────────────────────
    site_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # ── Lifecycle ───────────────────────────────────────────────
    status: Mapped[str] = mapped_column(
        String(20), default=JobStatus.PENDING.value, nullable=False, index=True
    )
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    # ── Payload & results ───────────────────────────────────────
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # ── Timestamps ──────────────────────────────────────────────
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

    def __repr__(self) -> str:
        return f"<Job {self.id} [{self.type}] {self.status}>"
