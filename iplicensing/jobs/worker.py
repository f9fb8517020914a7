"""
Durable Jobs Worker

Executes jobs from the `background_jobs` queue: license expiry sweeps,
royalty calculations, payouts and housekeeping.
"""
import asyncio
import math
import signal
from uuid import uuid4

import structlog

from iplicensing import jobs
from iplicensing.config import get_settings
from iplicensing.database import close_db, get_db_context
from iplicensing.errors import RateLimitError, ServiceError
from iplicensing.jobs.config import MonitoringConfig, get_job_timeout
from iplicensing.jobs.handlers import JOB_HANDLERS, JobHandler
from iplicensing.jobs.memory import MemoryMonitor
from iplicensing.jobs.monitoring import QueueMonitor
from iplicensing.jobs.queue import (
    ClaimedJob,
    claim_next_job,
    compute_backoff_seconds,
    defer_job,
    extend_lease,
    mark_job_failed,
    mark_job_succeeded,
    requeue_expired_running_jobs,
)
from iplicensing.jobs.rate_limiter import QUEUE_RATE_LIMITS, JobRateLimiter
from iplicensing.jobs.scaling import ScalingManager
from iplicensing.jobs.timeouts import (
    ExecutionResult,
    TimeoutHandler,
    get_retry_delay_for_timeout,
    is_timeout_error,
)
from iplicensing.log_config import configure_logging
from iplicensing.redis_client import close_redis, get_redis

logger = structlog.get_logger()


def is_permanent_failure(error: BaseException | None) -> bool:
    """Domain errors will fail the same way again unless they say otherwise."""
    if isinstance(error, RateLimitError):
        return False
    return isinstance(error, ServiceError) and not getattr(error, "retryable", False)


class JobsWorker:
    def __init__(
        self,
        handlers: dict[str, JobHandler] | None = None,
        timeouts: TimeoutHandler | None = None,
        memory: MemoryMonitor | None = None,
        scaling: ScalingManager | None = None,
        rate_limiter: JobRateLimiter | None = None,
    ) -> None:
        self.settings = get_settings()
        self.worker_id = f"jobs-worker:{uuid4()}"
        self.handlers = handlers if handlers is not None else JOB_HANDLERS
        self.timeouts = timeouts or jobs.timeout_handler
        self.memory = memory or jobs.memory_monitor
        self.scaling = scaling or jobs.scaling_manager
        self.rate_limiter = rate_limiter
        self._shutdown = asyncio.Event()

    async def run_forever(self) -> None:
        logger.info(
            "Jobs worker starting",
            worker_id=self.worker_id,
            lease_seconds=self.settings.job_worker_lease_seconds,
            handlers=sorted(self.handlers),
        )
        if self.rate_limiter is None:
            self.rate_limiter = JobRateLimiter(await get_redis())
        self.memory.start_monitoring(self.worker_id)

        background = [asyncio.create_task(self._reap_expired_running_jobs())]
        if self.settings.jobs_monitoring_enabled:
            background.append(asyncio.create_task(self._collect_metrics()))
        try:
            while not self._shutdown.is_set():
                recycle, reason = self.memory.should_recycle_worker(self.worker_id)
                if recycle:
                    logger.warning("Jobs worker recycling", worker_id=self.worker_id, reason=reason)
                    break

                try:
                    async with get_db_context() as db:
                        job = await claim_next_job(
                            db,
                            worker_id=self.worker_id,
                            lease_seconds=self.settings.job_worker_lease_seconds,
                        )
                except Exception as exc:
                    logger.warning(
                        "Failed to claim job (will retry)",
                        worker_id=self.worker_id,
                        error=str(exc),
                    )
                    await asyncio.sleep(self.settings.job_worker_poll_interval_seconds)
                    continue
                if not job:
                    await asyncio.sleep(self.settings.job_worker_poll_interval_seconds)
                    continue

                # Never crash the worker loop because of a single job.
                try:
                    await self._execute_claimed_job(job)
                except Exception as exc:
                    logger.error(
                        "Unhandled exception executing job",
                        worker_id=self.worker_id,
                        job_id=job.id,
                        job_type=job.job_type,
                        error=str(exc),
                    )
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            self.memory.stop_monitoring(self.worker_id)
            logger.info("Jobs worker stopped", worker_id=self.worker_id)

    async def shutdown(self) -> None:
        self._shutdown.set()

    async def _reap_expired_running_jobs(self) -> None:
        """Periodically requeue jobs stuck in 'running' with expired leases."""
        interval = max(5, int(self.settings.job_worker_reaper_interval_seconds))
        limit = int(max(1, self.settings.job_worker_reaper_limit))

        while not self._shutdown.is_set():
            try:
                async with get_db_context() as db:
                    requeued = await requeue_expired_running_jobs(db, limit=limit)
                if requeued:
                    logger.warning(
                        "Requeued expired running jobs",
                        worker_id=self.worker_id,
                        count=requeued,
                    )
            except Exception as exc:
                logger.warning(
                    "Failed to requeue expired running jobs",
                    worker_id=self.worker_id,
                    error=str(exc),
                )

            await asyncio.sleep(interval)

    async def _collect_metrics(self) -> None:
        """Sample queue metrics, raise alerts and log scaling recommendations."""
        interval = MonitoringConfig.METRICS_COLLECTION_INTERVAL_MS / 1000
        while not self._shutdown.is_set():
            try:
                async with get_db_context() as db:
                    await QueueMonitor(db).collect_all()
                    await self.scaling.evaluate_all(
                        db,
                        memory_usage=self.memory.get_current_memory_stats().percentage,
                    )
            except Exception as exc:
                logger.warning("Failed to collect queue metrics", worker_id=self.worker_id, error=str(exc))
            await asyncio.sleep(interval)

    async def _lease_heartbeat(self, job_id: str) -> None:
        interval = max(5.0, self.settings.job_worker_lease_seconds / 3)
        while not self._shutdown.is_set():
            await asyncio.sleep(interval)
            try:
                async with get_db_context() as db:
                    ok = await extend_lease(
                        db,
                        job_id=job_id,
                        worker_id=self.worker_id,
                        lease_seconds=self.settings.job_worker_lease_seconds,
                    )
            except Exception as exc:
                logger.warning(
                    "Failed to extend lease",
                    worker_id=self.worker_id,
                    job_id=job_id,
                    error=str(exc),
                )
                continue
            if not ok:
                logger.warning("Lease lost", worker_id=self.worker_id, job_id=job_id)
                return

    async def _rate_limited(self, job: ClaimedJob) -> bool:
        config = QUEUE_RATE_LIMITS.get(job.queue_name)
        if not config or self.rate_limiter is None:
            return False
        result = await self.rate_limiter.check_limit(config)
        if result.allowed:
            return False
        async with get_db_context() as db:
            await defer_job(db, job_id=job.id, delay_seconds=(result.retry_after_ms or 1000) / 1000)
        logger.info("Job deferred by rate limit", job_id=job.id, queue=job.queue_name, limit=config.name)
        return True

    async def _execute_claimed_job(self, job: ClaimedJob) -> None:
        logger.info(
            "Executing job",
            job_id=job.id,
            job_type=job.job_type,
            queue=job.queue_name,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
        )

        handler = self.handlers.get(job.job_type)
        if handler is None:
            async with get_db_context() as db:
                await mark_job_failed(
                    db,
                    job_id=job.id,
                    error=f"No handler registered for job type {job.job_type}",
                    attempts=job.attempts,
                    max_attempts=job.attempts,
                    backoff_seconds=0,
                )
            logger.error("Unknown job type", job_id=job.id, job_type=job.job_type)
            return

        if await self._rate_limited(job):
            return

        base_timeout, _ = get_job_timeout(job.queue_name)
        timeout_ms = self.timeouts.get_adaptive_timeout(job.job_type, base_timeout)

        async def run_handler() -> dict | None:
            async with get_db_context() as db:
                return await handler(db, job.payload)

        lease_task = asyncio.create_task(self._lease_heartbeat(job.id))
        try:
            outcome = await self.timeouts.execute_with_timeout(job.job_type, run_handler, timeout_ms)
            await self._record_outcome(job, outcome)
        finally:
            lease_task.cancel()
            await asyncio.gather(lease_task, return_exceptions=True)
            self.memory.record_job_processed(self.worker_id)

    async def _record_outcome(self, job: ClaimedJob, outcome: ExecutionResult) -> None:
        if outcome.success:
            try:
                async with get_db_context() as db:
                    await mark_job_succeeded(
                        db,
                        job_id=job.id,
                        result=outcome.result or {},
                        duration_ms=outcome.execution_time_ms,
                    )
            except Exception as exc:
                # The reaper makes the job runnable again once the lease expires.
                logger.error(
                    "Failed to mark job succeeded",
                    worker_id=self.worker_id,
                    job_id=job.id,
                    job_type=job.job_type,
                    error=str(exc),
                )
            logger.info(
                "Job succeeded",
                job_id=job.id,
                job_type=job.job_type,
                duration_ms=outcome.execution_time_ms,
                exceeded_soft_timeout=outcome.exceeded_soft_timeout,
            )
            return

        error = outcome.error
        if isinstance(error, RateLimitError):
            async with get_db_context() as db:
                await defer_job(db, job_id=job.id, delay_seconds=error.retry_after)
            logger.info("Job deferred", job_id=job.id, job_type=job.job_type, retry_after=error.retry_after)
            return

        timed_out = outcome.timed_out or is_timeout_error(error)
        if timed_out:
            backoff_seconds = math.ceil(get_retry_delay_for_timeout(job.attempts, True) / 1000)
        else:
            backoff_seconds = compute_backoff_seconds(attempt=job.attempts)
        permanent = is_permanent_failure(error)

        try:
            async with get_db_context() as db:
                await mark_job_failed(
                    db,
                    job_id=job.id,
                    error=str(error),
                    attempts=job.attempts,
                    max_attempts=job.attempts if permanent else job.max_attempts,
                    backoff_seconds=backoff_seconds,
                    timed_out=timed_out,
                    duration_ms=outcome.execution_time_ms,
                )
        except Exception as mark_exc:
            logger.error(
                "Failed to mark job failed",
                worker_id=self.worker_id,
                job_id=job.id,
                job_type=job.job_type,
                error=str(mark_exc),
            )
        logger.warning(
            "Job failed",
            job_id=job.id,
            job_type=job.job_type,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            backoff_seconds=backoff_seconds,
            timed_out=timed_out,
            permanent=permanent,
            error=str(error),
        )


async def _run() -> None:
    worker = JobsWorker()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.shutdown()))
        except NotImplementedError:
            signal.signal(sig, lambda *_: asyncio.create_task(worker.shutdown()))

    try:
        await worker.run_forever()
    finally:
        await close_redis()
        await close_db()


def main() -> None:
    configure_logging()
    asyncio.run(_run())


if __name__ == "__main__":
    main()
