"""
Background job queue configuration

Priorities, per-queue concurrency, scaling and alert thresholds, worker
memory limits and job timeouts.
"""
from dataclasses import dataclass
from enum import IntEnum


class JobPriority(IntEnum):
    """Lower numbers are claimed first."""

    CRITICAL = 1
    HIGH = 3
    NORMAL = 5
    LOW = 7
    BACKGROUND = 10


QUEUE_PRIORITIES: dict[str, JobPriority] = {
    # Critical
    "payment-processing": JobPriority.CRITICAL,
    "notification-delivery": JobPriority.CRITICAL,
    # Normal
    "message-delivery": JobPriority.NORMAL,
    "license-management": JobPriority.NORMAL,
    "payout-processing": JobPriority.NORMAL,
    "asset-processing": JobPriority.NORMAL,
    # Low
    "royalty-calculation": JobPriority.LOW,
    "cache-maintenance": JobPriority.LOW,
    "metrics-rollup": JobPriority.LOW,
    # Background
    "session-cleanup": JobPriority.BACKGROUND,
    "token-cleanup": JobPriority.BACKGROUND,
    "asset-cleanup": JobPriority.BACKGROUND,
    "upload-cleanup": JobPriority.BACKGROUND,
    "notification-cleanup": JobPriority.BACKGROUND,
}

WORKER_CONCURRENCY: dict[str, int] = {
    "notification-delivery": 10,
    "payment-processing": 5,
    "message-delivery": 8,
    "license-management": 3,
    "payout-processing": 3,
    "asset-processing": 8,
    "royalty-calculation": 5,
    "cache-maintenance": 2,
    "metrics-rollup": 2,
    "session-cleanup": 1,
    "token-cleanup": 1,
    "asset-cleanup": 2,
    "upload-cleanup": 2,
    "notification-cleanup": 1,
}
DEFAULT_CONCURRENCY = 5

# Queue each job type is enqueued on
JOB_TYPE_QUEUES: dict[str, str] = {
    "license.expiry_check": "license-management",
    "royalty.calculate_run": "royalty-calculation",
    "payout.process": "payout-processing",
    "notification.cleanup": "notification-cleanup",
    "jobs.metrics_cleanup": "metrics-rollup",
}


class ScalingConfig:
    SCALE_UP_QUEUE_DEPTH = 100
    SCALE_UP_QUEUE_LATENCY_MS = 30_000
    SCALE_UP_CPU_THRESHOLD = 75
    SCALE_UP_MEMORY_THRESHOLD = 80

    SCALE_DOWN_QUEUE_DEPTH = 10
    SCALE_DOWN_QUEUE_LATENCY_MS = 5_000
    SCALE_DOWN_CPU_THRESHOLD = 30
    SCALE_DOWN_MEMORY_THRESHOLD = 40

    MIN_WORKERS = 1
    MAX_WORKERS = 10
    CRITICAL_MIN_WORKERS = 2
    CRITICAL_MAX_WORKERS = 20
    BACKGROUND_MIN_WORKERS = 1
    BACKGROUND_MAX_WORKERS = 5

    SCALE_UP_COOLDOWN_SECONDS = 60
    SCALE_DOWN_COOLDOWN_SECONDS = 300


class MonitoringConfig:
    METRICS_COLLECTION_INTERVAL_MS = 60_000
    METRICS_RETENTION_HOURS = 168

    ALERT_QUEUE_DEPTH_CRITICAL = 500
    ALERT_QUEUE_DEPTH_WARNING = 200
    ALERT_ERROR_RATE_CRITICAL = 10.0
    ALERT_ERROR_RATE_WARNING = 5.0
    ALERT_TIMEOUT_RATE_CRITICAL = 5.0
    ALERT_TIMEOUT_RATE_WARNING = 2.0
    ALERT_PROCESSING_TIME_P99_MS = 300_000
    ALERT_PROCESSING_TIME_P95_MS = 120_000


class MemoryLimits:
    WORKER_SOFT_LIMIT_MB = 512
    WORKER_HARD_LIMIT_MB = 1024
    WARNING_THRESHOLD = 75
    CRITICAL_THRESHOLD = 90
    RECYCLE_AFTER_JOBS = 1000
    RECYCLE_AFTER_SECONDS = 4 * 60 * 60


# Hard timeouts in milliseconds
JOB_TIMEOUTS: dict[str, int] = {
    "notification-delivery": 30_000,
    "payment-processing": 120_000,
    "message-delivery": 30_000,
    "license-management": 120_000,
    "payout-processing": 120_000,
    "asset-processing": 180_000,
    "royalty-calculation": 600_000,
    "cache-maintenance": 300_000,
    "metrics-rollup": 3_600_000,
}
DEFAULT_JOB_TIMEOUT_MS = 120_000
SOFT_TIMEOUT_PERCENTAGE = 80


@dataclass(frozen=True)
class QueueConfig:
    name: str
    concurrency: int
    priority: JobPriority
    min_workers: int
    max_workers: int
    timeout_ms: int


def get_queue_priority(queue_name: str) -> JobPriority:
    return QUEUE_PRIORITIES.get(queue_name, JobPriority.NORMAL)


def get_job_timeout(queue_name: str) -> tuple[int, int]:
    """Return the (hard, soft) timeout in milliseconds for a queue."""
    hard = JOB_TIMEOUTS.get(queue_name, DEFAULT_JOB_TIMEOUT_MS)
    return hard, hard * SOFT_TIMEOUT_PERCENTAGE // 100


def get_queue_config(queue_name: str) -> QueueConfig:
    priority = get_queue_priority(queue_name)

    min_workers = ScalingConfig.MIN_WORKERS
    max_workers = ScalingConfig.MAX_WORKERS
    if priority == JobPriority.CRITICAL:
        min_workers = ScalingConfig.CRITICAL_MIN_WORKERS
        max_workers = ScalingConfig.CRITICAL_MAX_WORKERS
    elif priority == JobPriority.BACKGROUND:
        min_workers = ScalingConfig.BACKGROUND_MIN_WORKERS
        max_workers = ScalingConfig.BACKGROUND_MAX_WORKERS

    return QueueConfig(
        name=queue_name,
        concurrency=WORKER_CONCURRENCY.get(queue_name, DEFAULT_CONCURRENCY),
        priority=priority,
        min_workers=min_workers,
        max_workers=max_workers,
        timeout_ms=get_job_timeout(queue_name)[0],
    )
