"""
ErrorLog ORM model — one immutable row per recorded failure.

Append-only: rows are only ever removed by the retention cleanup sweep.
Indexed by created_at and job_type because every read path (pattern detection,
stats, paginated queries) slices by time window and groups by job type.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base
from models.job import JSONType, utcnow


class ErrorLog(Base):
    __tablename__ = "error_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    site_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    error_name: Mapped[str] = mapped_column(String(128), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    context: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<ErrorLog {self.id} [{self.job_type}] {self.category}/{self.severity}>"
