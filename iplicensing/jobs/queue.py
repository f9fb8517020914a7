"""Database-backed durable background job queue."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.config import settings
from iplicensing.errors import ValidationError
from iplicensing.jobs.config import JOB_TYPE_QUEUES, get_queue_priority
from iplicensing.models.job import BackgroundJob, JobStatus
from iplicensing.utils.time import utc_now

logger = structlog.get_logger()


@dataclass(frozen=True)
class EnqueueJobRequest:
    job_type: str
    payload: dict[str, Any]
    queue_name: str | None = None
    priority: int | None = None
    run_at: datetime | None = None
    max_attempts: int | None = None
    idempotency_key: str | None = None


async def _find_by_idempotency_key(db: AsyncSession, queue_name: str, key: str) -> str | None:
    return await db.scalar(
        select(BackgroundJob.id).where(
            BackgroundJob.queue_name == queue_name,
            BackgroundJob.idempotency_key == key,
        )
    )


async def enqueue_job(db: AsyncSession, request: EnqueueJobRequest) -> str:
    """
    Enqueue a durable job.

    Idempotency: if `idempotency_key` is provided, the (queue_name, idempotency_key)
    unique constraint ensures deduplication and the existing job id is returned.
    """
    queue_name = request.queue_name or JOB_TYPE_QUEUES.get(request.job_type)
    if not queue_name:
        raise ValidationError(f"No queue configured for job type {request.job_type}", code="job.unknown_type")

    if request.idempotency_key:
        existing = await _find_by_idempotency_key(db, queue_name, request.idempotency_key)
        if existing:
            return existing

    priority = request.priority if request.priority is not None else int(get_queue_priority(queue_name))
    job = BackgroundJob(
        queue_name=queue_name,
        job_type=request.job_type,
        status=JobStatus.QUEUED,
        priority=priority,
        payload=request.payload,
        run_at=request.run_at or utc_now(),
        attempts=0,
        max_attempts=max(1, request.max_attempts or settings.job_default_max_attempts),
        idempotency_key=request.idempotency_key,
    )
    db.add(job)
    await db.flush()

    logger.info("Job enqueued", job_id=job.id, job_type=job.job_type, queue=queue_name, priority=priority)
    return job.id


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    queue_name: str
    job_type: str
    priority: int
    run_at: datetime
    attempts: int
    max_attempts: int
    payload: dict[str, Any]


async def claim_next_job(db: AsyncSession, *, worker_id: str, lease_seconds: int) -> ClaimedJob | None:
    """
    Claim the next runnable job using a lease (FOR UPDATE SKIP LOCKED on Postgres).

    Lower priority numbers win, then the earliest `run_at`, then the oldest job.
    """
    now = utc_now()
    job = await db.scalar(
        select(BackgroundJob)
        .where(BackgroundJob.status == JobStatus.QUEUED, BackgroundJob.run_at <= now)
        .order_by(BackgroundJob.priority.asc(), BackgroundJob.run_at.asc(), BackgroundJob.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    if not job:
        return None

    job.status = JobStatus.RUNNING
    job.locked_by = worker_id
    job.lease_until = now + timedelta(seconds=max(5, lease_seconds))
    job.attempts += 1
    job.started_at = job.started_at or now
    job.timed_out = False
    await db.flush()

    return ClaimedJob(
        id=job.id,
        queue_name=job.queue_name,
        job_type=job.job_type,
        priority=job.priority,
        run_at=job.run_at,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        payload=job.payload or {},
    )


async def get_job(db: AsyncSession, job_id: str) -> BackgroundJob | None:
    return await db.get(BackgroundJob, job_id)


async def list_jobs(
    db: AsyncSession,
    *,
    queue_name: str | None = None,
    status: JobStatus | None = None,
    limit: int = 50,
) -> list[BackgroundJob]:
    stmt = select(BackgroundJob).order_by(BackgroundJob.created_at.desc()).limit(max(1, min(limit, 500)))
    if queue_name:
        stmt = stmt.where(BackgroundJob.queue_name == queue_name)
    if status:
        stmt = stmt.where(BackgroundJob.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def mark_job_succeeded(
    db: AsyncSession,
    *,
    job_id: str,
    result: dict[str, Any] | None = None,
    duration_ms: int | None = None,
) -> None:
    job = await db.get(BackgroundJob, job_id)
    if not job:
        return
    job.status = JobStatus.SUCCEEDED
    job.completed_at = utc_now()
    job.lease_until = None
    job.result = result or {}
    job.last_error = None
    job.timed_out = False
    job.duration_ms = duration_ms
    await db.flush()


async def mark_job_failed(
    db: AsyncSession,
    *,
    job_id: str,
    error: str,
    attempts: int,
    max_attempts: int,
    backoff_seconds: int,
    timed_out: bool = False,
    duration_ms: int | None = None,
) -> JobStatus | None:
    job = await db.get(BackgroundJob, job_id)
    if not job:
        return None

    now = utc_now()
    status = JobStatus.QUEUED if attempts < max_attempts else JobStatus.FAILED
    job.status = status
    job.lease_until = None
    job.locked_by = None
    job.last_error = error
    job.timed_out = timed_out
    job.duration_ms = duration_ms
    if status == JobStatus.QUEUED:
        job.run_at = now + timedelta(seconds=max(1, backoff_seconds))
        job.completed_at = None
    else:
        job.completed_at = now
    await db.flush()
    return status


async def cancel_job(db: AsyncSession, *, job_id: str) -> bool:
    job = await db.get(BackgroundJob, job_id)
    if not job or job.status not in (JobStatus.QUEUED, JobStatus.RUNNING):
        return False
    job.status = JobStatus.CANCELLED
    job.completed_at = utc_now()
    job.lease_until = None
    await db.flush()
    logger.info("Job cancelled", job_id=job_id)
    return True


async def retry_failed_job(db: AsyncSession, *, job_id: str) -> bool:
    """Put a permanently failed job back on its queue with a fresh attempt budget."""
    job = await db.get(BackgroundJob, job_id)
    if not job or job.status != JobStatus.FAILED:
        return False
    job.status = JobStatus.QUEUED
    job.attempts = 0
    job.run_at = utc_now()
    job.completed_at = None
    job.locked_by = None
    job.lease_until = None
    job.timed_out = False
    await db.flush()
    logger.info("Job requeued for retry", job_id=job_id)
    return True


async def defer_job(db: AsyncSession, *, job_id: str, delay_seconds: float) -> bool:
    """Hand a claimed job back to its queue without spending an attempt."""
    job = await db.get(BackgroundJob, job_id)
    if not job or job.status != JobStatus.RUNNING:
        return False
    job.status = JobStatus.QUEUED
    job.attempts = max(0, job.attempts - 1)
    job.run_at = utc_now() + timedelta(seconds=max(1.0, delay_seconds))
    job.locked_by = None
    job.lease_until = None
    await db.flush()
    return True


async def extend_lease(db: AsyncSession, *, job_id: str, worker_id: str, lease_seconds: int) -> bool:
    job = await db.get(BackgroundJob, job_id)
    if not job or job.status != JobStatus.RUNNING or job.locked_by != worker_id:
        return False
    job.lease_until = utc_now() + timedelta(seconds=max(5, lease_seconds))
    await db.flush()
    return True


async def requeue_expired_running_jobs(db: AsyncSession, *, limit: int = 500) -> int:
    """
    Requeue jobs that were marked 'running' but whose lease expired.

    Without this, a worker crash can leave jobs stuck in 'running' forever.
    """
    now = utc_now()
    result = await db.execute(
        select(BackgroundJob)
        .where(
            BackgroundJob.status == JobStatus.RUNNING,
            BackgroundJob.lease_until.is_not(None),
            BackgroundJob.lease_until < now,
        )
        .order_by(BackgroundJob.lease_until.asc())
        .limit(max(1, limit))
        .with_for_update(skip_locked=True)
    )
    jobs = list(result.scalars().all())
    for job in jobs:
        exhausted = job.attempts >= job.max_attempts
        job.status = JobStatus.FAILED if exhausted else JobStatus.QUEUED
        job.completed_at = now if exhausted else None
        job.lease_until = None
        job.locked_by = None
        job.last_error = job.last_error or "Lease expired"
        if not exhausted:
            job.run_at = now
    await db.flush()
    return len(jobs)


async def count_by_status(db: AsyncSession, queue_name: str) -> dict[JobStatus, int]:
    result = await db.execute(
        select(BackgroundJob.status, func.count())
        .where(BackgroundJob.queue_name == queue_name)
        .group_by(BackgroundJob.status)
    )
    return {status: int(count) for status, count in result.all()}


def compute_backoff_seconds(*, attempt: int) -> int:
    # attempt=1 -> 2s, attempt=2 -> 4s, attempt=3 -> 8s
    return min(300, max(2, 2 ** attempt))
