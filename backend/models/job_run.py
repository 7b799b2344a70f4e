"""Scheduler run history for observability.

Every reconciliation sweep and cleanup run is recorded here so the
/api/system/status endpoint can tell whether the loop is alive, across
workers and restarts. Rows are pruned by the cleanup job.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from database import Base
from models.job_execution import utcnow


class JobRun(Base):
    """One execution of a scheduled job (a sweep or a cleanup)."""

    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    job_id: Mapped[str] = mapped_column(String(64), index=True)
    run_id: Mapped[str] = mapped_column(String(36))  # UUID for log correlation

    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # "running", "success", "failed"
    status: Mapped[str] = mapped_column(String(16), default="running")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Executions touched by the sweep / rows removed by cleanup
    records_processed: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # Per-execution failures isolated inside a sweep
    error_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_job_runs_job_id_started_at", "job_id", "started_at"),
    )

    def mark_success(
        self,
        records_processed: Optional[int] = None,
        error_count: Optional[int] = None,
    ) -> None:
        self.status = "success"
        self.completed_at = utcnow()
        if records_processed is not None:
            self.records_processed = records_processed
        if error_count is not None:
            self.error_count = error_count

    def mark_failed(self, error_message: str) -> None:
        self.status = "failed"
        self.completed_at = utcnow()
        self.error_message = error_message

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at and self.started_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None
