"""
Admin endpoints for the background job queues

Queue metrics, health, alerts, scaling recommendations, job control and
worker resource stats. Admin access only.
"""
from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing import jobs
from iplicensing.auth.dependencies import AdminUser
from iplicensing.database import get_db
from iplicensing.jobs.config import QUEUE_PRIORITIES, get_queue_config
from iplicensing.jobs.monitoring import QueueMonitor, sample_to_dict
from iplicensing.jobs.queue import (
    EnqueueJobRequest,
    cancel_job,
    count_by_status,
    enqueue_job,
    get_job,
    list_jobs,
    retry_failed_job,
)
from iplicensing.jobs.scaling import Thresholds, collect_scaling_metrics
from iplicensing.models.job import AlertSeverity, JobStatus

router = APIRouter(prefix="/admin/jobs", tags=["admin-jobs"])


# ============================================================================
# Schemas
# ============================================================================


class AlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    queue_name: str
    metric: str
    severity: AlertSeverity
    value: float
    threshold: float
    message: str
    acknowledged: bool
    acknowledged_by: str | None
    acknowledged_at: datetime | None
    created_at: datetime


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    queue_name: str
    job_type: str
    status: JobStatus
    priority: int
    payload: dict[str, Any]
    result: dict[str, Any] | None
    idempotency_key: str | None
    run_at: datetime
    attempts: int
    max_attempts: int
    locked_by: str | None
    lease_until: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    last_error: str | None
    timed_out: bool
    duration_ms: int | None
    created_at: datetime


class ThresholdsModel(BaseModel):
    queue_depth: int = Field(ge=0)
    queue_latency_ms: int = Field(ge=0)
    cpu_percent: int = Field(ge=0, le=100)
    memory_percent: int = Field(ge=0, le=100)


class ScalingPolicyUpdate(BaseModel):
    min_workers: int | None = None
    max_workers: int | None = None
    scale_up: ThresholdsModel | None = None
    scale_down: ThresholdsModel | None = None
    scale_up_cooldown_seconds: int | None = Field(default=None, ge=0)
    scale_down_cooldown_seconds: int | None = Field(default=None, ge=0)


class EnqueueRequest(BaseModel):
    job_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = None
    run_at: datetime | None = None
    max_attempts: int | None = Field(default=None, ge=1)
    idempotency_key: str | None = None


def _require_queue(queue_name: str) -> None:
    if queue_name not in QUEUE_PRIORITIES:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown queue {queue_name}")


# ============================================================================
# Queues and monitoring
# ============================================================================


@router.get("/queues")
async def list_queues(
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> list[dict]:
    """List every queue with its configuration and live job counts."""
    monitor = QueueMonitor(db)
    queues = []
    for queue_name in QUEUE_PRIORITIES:
        config = get_queue_config(queue_name)
        sample = await monitor.collect_metrics(queue_name, persist=False)
        queues.append({
            **asdict(config),
            "priority": int(config.priority),
            "metrics": sample_to_dict(sample),
        })
    return queues


@router.get("/queues/{queue_name}/metrics")
async def get_queue_metrics(
    queue_name: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
    history: int = Query(default=60, ge=1, le=1440),
) -> dict:
    _require_queue(queue_name)
    monitor = QueueMonitor(db)
    current = await monitor.collect_metrics(queue_name, persist=False)
    samples = await monitor.get_metrics_history(queue_name, history)
    return {
        "current": sample_to_dict(current),
        "history": [sample_to_dict(s) for s in samples],
        "counts": {s.value: n for s, n in (await count_by_status(db, queue_name)).items()},
    }


@router.get("/queues/{queue_name}/health")
async def get_queue_health(
    queue_name: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    _require_queue(queue_name)
    return await QueueMonitor(db).get_health(queue_name)


@router.get("/dashboard")
async def get_dashboard(
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await QueueMonitor(db).get_dashboard()


@router.get("/alerts", response_model=list[AlertResponse])
async def list_alerts(
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
    queue_name: str | None = None,
    include_acknowledged: bool = False,
) -> list[AlertResponse]:
    alerts = await QueueMonitor(db).list_alerts(queue_name, include_acknowledged)
    return [AlertResponse.model_validate(a) for a in alerts]


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(
    alert_id: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> AlertResponse:
    alert = await QueueMonitor(db).acknowledge_alert(alert_id, admin.id)
    return AlertResponse.model_validate(alert)


# ============================================================================
# Scaling
# ============================================================================


@router.get("/scaling/{queue_name}")
async def get_scaling_decision(
    queue_name: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
    current_workers: int | None = Query(default=None, ge=0),
) -> dict:
    """Recommend a worker count for a queue from its current metrics."""
    policy = jobs.scaling_manager.get_scaling_policy(queue_name)
    workers = current_workers if current_workers is not None else policy.min_workers
    metrics = await collect_scaling_metrics(
        db,
        queue_name,
        workers,
        jobs.memory_monitor.get_current_memory_stats().percentage,
    )
    decision = jobs.scaling_manager.make_scaling_decision(queue_name, metrics)
    return {"decision": asdict(decision), "policy": asdict(policy)}


@router.get("/scaling/{queue_name}/history")
async def get_scaling_history(
    queue_name: str,
    admin: AdminUser,
    limit: int = Query(default=20, ge=1, le=100),
) -> list[dict]:
    jobs.scaling_manager.get_scaling_policy(queue_name)
    return [asdict(d) for d in jobs.scaling_manager.get_scaling_history(queue_name, limit)]


@router.put("/scaling/{queue_name}/policy")
async def update_scaling_policy(
    queue_name: str,
    request: ScalingPolicyUpdate,
    admin: AdminUser,
) -> dict:
    updates: dict[str, Any] = request.model_dump(exclude_none=True, exclude={"scale_up", "scale_down"})
    if request.scale_up:
        updates["scale_up"] = Thresholds(**request.scale_up.model_dump())
    if request.scale_down:
        updates["scale_down"] = Thresholds(**request.scale_down.model_dump())
    policy = jobs.scaling_manager.update_scaling_policy(queue_name, **updates)
    return asdict(policy)


# ============================================================================
# Jobs
# ============================================================================


@router.get("", response_model=list[JobResponse])
async def list_background_jobs(
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
    queue_name: str | None = None,
    job_status: JobStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[JobResponse]:
    found = await list_jobs(db, queue_name=queue_name, status=job_status, limit=limit)
    return [JobResponse.model_validate(j) for j in found]


@router.post("", status_code=status.HTTP_201_CREATED)
async def enqueue(
    request: EnqueueRequest,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    job_id = await enqueue_job(db, EnqueueJobRequest(**request.model_dump()))
    return {"job_id": job_id}


@router.get("/stats/execution")
async def get_execution_stats(admin: AdminUser) -> dict:
    """Per job type execution time stats from this process."""
    stats = {}
    for job_type in jobs.timeout_handler.job_types():
        result = jobs.timeout_handler.get_execution_stats(job_type)
        if result:
            stats[job_type] = asdict(result)
    return stats


@router.get("/stats/memory")
async def get_memory_summary(admin: AdminUser) -> dict:
    return jobs.memory_monitor.get_summary()


@router.get("/{job_id}", response_model=JobResponse)
async def get_background_job(
    job_id: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    job = await get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return JobResponse.model_validate(job)


@router.post("/{job_id}/retry")
async def retry_job(
    job_id: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    if not await retry_failed_job(db, job_id=job_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only failed jobs can be retried")
    return {"job_id": job_id, "status": JobStatus.QUEUED.value}


@router.post("/{job_id}/cancel")
async def cancel_background_job(
    job_id: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    if not await cancel_job(db, job_id=job_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only queued or running jobs can be cancelled")
    return {"job_id": job_id, "status": JobStatus.CANCELLED.value}
