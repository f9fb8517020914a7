"""
Durable background job queue tables and queue monitoring history
"""
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from iplicensing.database import Base
from iplicensing.models.base import IdMixin, TimestampMixin
from iplicensing.utils.time import utc_now


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class BackgroundJob(IdMixin, TimestampMixin, Base):
    """
    A unit of background work.

    Lower `priority` numbers run first. A running job holds a lease; if
    the lease expires the reaper makes the job runnable again.
    """

    __tablename__ = "background_jobs"

    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        SQLEnum(JobStatus),
        nullable=False,
        default=JobStatus.QUEUED,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    timed_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("queue_name", "idempotency_key", name="uq_job_queue_idempotency"),
        Index("idx_job_claim", "status", "priority", "run_at"),
        Index("idx_job_queue_status", "queue_name", "status"),
    )

    def __repr__(self) -> str:
        return f"<BackgroundJob {self.queue_name}/{self.job_type} ({self.status.value})>"


class QueueMetricSample(IdMixin, Base):
    """Point-in-time queue metrics, kept for the retention window."""

    __tablename__ = "queue_metric_samples"

    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)
    collected_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    waiting: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delayed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_per_minute: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    timeout_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    p95_processing_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    p99_processing_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    oldest_waiting_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_metric_queue_collected", "queue_name", "collected_at"),
    )


class QueueAlert(IdMixin, TimestampMixin, Base):
    __tablename__ = "queue_alerts"

    queue_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    metric: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(SQLEnum(AlertSeverity), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<QueueAlert {self.queue_name} {self.metric} {self.severity.value}>"
