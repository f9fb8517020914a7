"""
Tests for the jobs worker and the registered job handlers.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from iplicensing.errors import PaymentError, RateLimitError, ValidationError
from iplicensing.jobs import handlers
from iplicensing.jobs.memory import MemoryMonitor, MemoryStats
from iplicensing.jobs.queue import EnqueueJobRequest, claim_next_job, enqueue_job
from iplicensing.jobs.rate_limiter import JobRateLimiter, RateLimitResult, TokenBucket
from iplicensing.jobs.scaling import ScalingManager
from iplicensing.jobs.timeouts import TimeoutHandler
from iplicensing.jobs.worker import JobsWorker, is_permanent_failure
from iplicensing.models import BackgroundJob, JobStatus
from iplicensing.utils.time import utc_now


def _worker(job_handlers, rate_limiter=None) -> JobsWorker:
    return JobsWorker(
        handlers=job_handlers,
        timeouts=TimeoutHandler(),
        memory=MemoryMonitor(probe=lambda: MemoryStats(rss_mb=100, percentage=10, timestamp=utc_now())),
        scaling=ScalingManager(),
        rate_limiter=rate_limiter or JobRateLimiter(None),
    )


async def _claimed(db_session, job_type: str = "license.expiry_check", **kwargs):
    await enqueue_job(db_session, EnqueueJobRequest(job_type=job_type, payload=kwargs.pop("payload", {}), **kwargs))
    claimed = await claim_next_job(db_session, worker_id="jobs-worker:test", lease_seconds=60)
    await db_session.commit()
    return claimed


async def _reload(db_session, job_id: str) -> BackgroundJob:
    return await db_session.get(BackgroundJob, job_id, populate_existing=True)


class TestExecution:
    async def test_success_records_result(self, db_session):
        async def handler(db, payload):
            return {"processed": payload["count"]}

        claimed = await _claimed(db_session, payload={"count": 3})
        worker = _worker({"license.expiry_check": handler})
        await worker._execute_claimed_job(claimed)

        job = await _reload(db_session, claimed.id)
        assert job.status == JobStatus.SUCCEEDED
        assert job.result == {"processed": 3}
        assert job.duration_ms is not None
        assert worker.timeouts.get_execution_stats("license.expiry_check").count == 1

    async def test_unexpected_error_is_retried_with_backoff(self, db_session):
        async def handler(db, payload):
            raise RuntimeError("database hiccup")

        claimed = await _claimed(db_session)
        await _worker({"license.expiry_check": handler})._execute_claimed_job(claimed)

        job = await _reload(db_session, claimed.id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1
        assert job.last_error == "database hiccup"
        assert job.run_at > utc_now()

    async def test_domain_errors_fail_permanently(self, db_session):
        async def handler(db, payload):
            raise ValidationError("Job payload is missing 'run_id'")

        claimed = await _claimed(db_session)
        await _worker({"license.expiry_check": handler})._execute_claimed_job(claimed)

        job = await _reload(db_session, claimed.id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1

    async def test_retryable_payment_errors_are_retried(self, db_session):
        async def handler(db, payload):
            raise PaymentError("Payout transfer failed", retryable=True)

        claimed = await _claimed(db_session)
        await _worker({"license.expiry_check": handler})._execute_claimed_job(claimed)

        assert (await _reload(db_session, claimed.id)).status == JobStatus.QUEUED

    async def test_rate_limited_handler_is_deferred(self, db_session):
        async def handler(db, payload):
            raise RateLimitError("Stripe request budget exhausted", retry_after=30)

        claimed = await _claimed(db_session)
        await _worker({"license.expiry_check": handler})._execute_claimed_job(claimed)

        job = await _reload(db_session, claimed.id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0

    async def test_unknown_job_type_fails(self, db_session):
        claimed = await _claimed(db_session)
        await _worker({})._execute_claimed_job(claimed)

        job = await _reload(db_session, claimed.id)
        assert job.status == JobStatus.FAILED
        assert "No handler registered" in job.last_error

    async def test_queue_rate_limit_defers_before_running(self, db_session):
        handler = AsyncMock()
        limiter = MagicMock()
        limiter.check_limit = AsyncMock(
            return_value=RateLimitResult(allowed=False, remaining=0, reset_at=utc_now(), retry_after_ms=10_000)
        )

        claimed = await _claimed(db_session, "payout.process", payload={"creator_id": "c1"})
        await _worker({"payout.process": handler}, rate_limiter=limiter)._execute_claimed_job(claimed)

        handler.assert_not_awaited()
        job = await _reload(db_session, claimed.id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0

    async def test_shutdown_before_start(self, db_session):
        worker = _worker({})
        await worker.shutdown()
        await worker.run_forever()
        assert worker.memory.get_worker_state(worker.worker_id) is None


def test_permanent_failures():
    assert is_permanent_failure(ValidationError("bad"))
    assert not is_permanent_failure(PaymentError("down", retryable=True))
    assert not is_permanent_failure(RateLimitError("slow", retry_after=5))
    assert not is_permanent_failure(RuntimeError("boom"))
    assert not is_permanent_failure(None)


class TestHandlers:
    def test_every_job_type_has_a_handler(self):
        from iplicensing.jobs.config import JOB_TYPE_QUEUES

        assert set(JOB_TYPE_QUEUES) <= set(handlers.JOB_HANDLERS)

    async def test_license_expiry_check(self, db_session):
        result = await handlers.run_license_expiry_check(db_session, {})
        assert result == {"marked_expiring": 0, "expired": 0}

    async def test_royalty_calculation_needs_run_id(self, db_session):
        with pytest.raises(ValidationError) as exc:
            await handlers.run_royalty_calculation(db_session, {})
        assert exc.value.code == "job.invalid_payload"

    async def test_payout_respects_stripe_budget(self, db_session, monkeypatch):
        monkeypatch.setattr(handlers, "stripe_api_bucket", TokenBucket(max_tokens=0, refill_rate=1.0, clock=lambda: 0.0))
        with pytest.raises(RateLimitError) as exc:
            await handlers.run_payout(db_session, {"creator_id": "c1"})
        assert exc.value.retry_after == 1

    async def test_metrics_cleanup(self, db_session):
        assert await handlers.run_metrics_cleanup(db_session, {"retention_hours": 1}) == {"removed": 0}
