"""
Worker memory monitoring and recycling

A worker is flagged for recycling when it passes the hard memory limit,
has processed too many jobs or has been up too long. The worker loop
checks the flag and exits so the process supervisor can restart it.
"""
import os
import resource
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from iplicensing.jobs.config import MemoryLimits
from iplicensing.utils.time import utc_now

logger = structlog.get_logger()


class MemoryLimitError(RuntimeError):
    pass


@dataclass(frozen=True)
class MemoryStats:
    rss_mb: int
    percentage: int
    timestamp: datetime


@dataclass(frozen=True)
class MemoryCheck:
    within_limits: bool
    exceeds_warning: bool
    exceeds_critical: bool
    stats: MemoryStats


@dataclass
class WorkerMemoryState:
    worker_id: str
    queue_name: str
    started_monotonic: float
    last_check: MemoryStats
    jobs_processed: int = 0
    should_recycle: bool = False
    recycle_reason: str | None = None
    start_time: datetime = field(default_factory=utc_now)


def _current_rss_mb() -> int:
    """Resident set size of this process in MB."""
    try:
        with open("/proc/self/statm") as f:
            pages = int(f.read().split()[1])
        return round(pages * os.sysconf("SC_PAGE_SIZE") / 1024 / 1024)
    except (OSError, ValueError, IndexError):
        # Peak RSS; kilobytes on Linux, bytes on macOS
        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
        return round(peak / divisor)


def default_memory_probe() -> MemoryStats:
    rss = _current_rss_mb()
    return MemoryStats(
        rss_mb=rss,
        percentage=round(rss / MemoryLimits.WORKER_HARD_LIMIT_MB * 100),
        timestamp=utc_now(),
    )


class MemoryMonitor:
    def __init__(
        self,
        probe: Callable[[], MemoryStats] = default_memory_probe,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = probe
        self._clock = clock
        self._workers: dict[str, WorkerMemoryState] = {}

    def get_current_memory_stats(self) -> MemoryStats:
        return self._probe()

    def start_monitoring(self, worker_id: str, queue_name: str = "*") -> WorkerMemoryState:
        state = WorkerMemoryState(
            worker_id=worker_id,
            queue_name=queue_name,
            started_monotonic=self._clock(),
            last_check=self._probe(),
        )
        self._workers[worker_id] = state
        return state

    def stop_monitoring(self, worker_id: str) -> None:
        self._workers.pop(worker_id, None)

    def check_memory(self) -> MemoryCheck:
        stats = self._probe()
        exceeds_critical = (
            stats.rss_mb > MemoryLimits.WORKER_HARD_LIMIT_MB
            or stats.percentage >= MemoryLimits.CRITICAL_THRESHOLD
        )
        exceeds_warning = exceeds_critical or (
            stats.rss_mb > MemoryLimits.WORKER_SOFT_LIMIT_MB
            or stats.percentage >= MemoryLimits.WARNING_THRESHOLD
        )
        return MemoryCheck(
            within_limits=not exceeds_critical,
            exceeds_warning=exceeds_warning,
            exceeds_critical=exceeds_critical,
            stats=stats,
        )

    def check_recycle_conditions(self, worker_id: str) -> None:
        state = self._workers.get(worker_id)
        if not state:
            return

        check = self.check_memory()
        state.last_check = check.stats

        if check.exceeds_critical:
            state.should_recycle = True
            state.recycle_reason = (
                f"Critical memory limit exceeded: {check.stats.rss_mb}MB > "
                f"{MemoryLimits.WORKER_HARD_LIMIT_MB}MB"
            )
            logger.warning("Worker flagged for recycling", worker_id=worker_id, reason=state.recycle_reason)
            return

        if check.exceeds_warning:
            logger.warning(
                "Worker memory above soft limit",
                worker_id=worker_id,
                rss_mb=check.stats.rss_mb,
                soft_limit_mb=MemoryLimits.WORKER_SOFT_LIMIT_MB,
            )

        if state.jobs_processed >= MemoryLimits.RECYCLE_AFTER_JOBS:
            state.should_recycle = True
            state.recycle_reason = (
                f"Processed {state.jobs_processed} jobs, exceeds limit of {MemoryLimits.RECYCLE_AFTER_JOBS}"
            )
            logger.info("Worker flagged for recycling", worker_id=worker_id, reason=state.recycle_reason)
            return

        uptime = self._clock() - state.started_monotonic
        if uptime >= MemoryLimits.RECYCLE_AFTER_SECONDS:
            state.should_recycle = True
            state.recycle_reason = (
                f"Uptime {uptime / 3600:.1f}h exceeds limit of {MemoryLimits.RECYCLE_AFTER_SECONDS // 3600}h"
            )
            logger.info("Worker flagged for recycling", worker_id=worker_id, reason=state.recycle_reason)

    def record_job_processed(self, worker_id: str) -> None:
        state = self._workers.get(worker_id)
        if not state:
            return
        state.jobs_processed += 1
        self.check_recycle_conditions(worker_id)

    def should_recycle_worker(self, worker_id: str) -> tuple[bool, str | None]:
        state = self._workers.get(worker_id)
        if not state:
            return False, None
        return state.should_recycle, state.recycle_reason

    def get_worker_state(self, worker_id: str) -> WorkerMemoryState | None:
        return self._workers.get(worker_id)

    def get_all_worker_states(self) -> list[WorkerMemoryState]:
        return list(self._workers.values())

    async def execute_with_memory_check(
        self,
        executor: Callable[[], Awaitable[Any]],
        required_mb: int,
    ) -> Any:
        """Refuse to start work that would push the worker past its hard limit."""
        current = self._probe()
        if current.rss_mb + required_mb > MemoryLimits.WORKER_HARD_LIMIT_MB:
            raise MemoryLimitError(
                f"Insufficient memory: {current.rss_mb}MB used, {required_mb}MB required, "
                f"{MemoryLimits.WORKER_HARD_LIMIT_MB}MB limit"
            )
        return await executor()

    def get_summary(self) -> dict[str, Any]:
        workers = list(self._workers.values())
        current = self._probe()
        return {
            "total_workers": len(workers),
            "total_jobs_processed": sum(w.jobs_processed for w in workers),
            "average_memory_mb": (
                round(sum(w.last_check.rss_mb for w in workers) / len(workers)) if workers else 0
            ),
            "workers_needing_recycle": sum(1 for w in workers if w.should_recycle),
            "current_memory": {
                "rss_mb": current.rss_mb,
                "percentage": current.percentage,
                "timestamp": current.timestamp.isoformat(),
            },
            "workers": [
                {
                    "worker_id": w.worker_id,
                    "queue_name": w.queue_name,
                    "jobs_processed": w.jobs_processed,
                    "start_time": w.start_time.isoformat(),
                    "should_recycle": w.should_recycle,
                    "recycle_reason": w.recycle_reason,
                }
                for w in workers
            ],
        }
