"""
Tests for the durable job queue.
"""
from datetime import timedelta

import pytest

from iplicensing.errors import ValidationError
from iplicensing.jobs.config import JobPriority
from iplicensing.jobs.queue import (
    EnqueueJobRequest,
    cancel_job,
    claim_next_job,
    compute_backoff_seconds,
    count_by_status,
    defer_job,
    enqueue_job,
    extend_lease,
    get_job,
    list_jobs,
    mark_job_failed,
    mark_job_succeeded,
    requeue_expired_running_jobs,
    retry_failed_job,
)
from iplicensing.models import BackgroundJob, JobStatus
from iplicensing.utils.time import utc_now

WORKER = "jobs-worker:test"


def _request(job_type: str = "license.expiry_check", **kwargs) -> EnqueueJobRequest:
    return EnqueueJobRequest(job_type=job_type, payload=kwargs.pop("payload", {}), **kwargs)


class TestEnqueue:
    async def test_queue_and_priority_come_from_job_type(self, db_session):
        job_id = await enqueue_job(db_session, _request("royalty.calculate_run", payload={"run_id": "r1"}))
        job = await get_job(db_session, job_id)
        assert job.queue_name == "royalty-calculation"
        assert job.priority == JobPriority.LOW
        assert job.status == JobStatus.QUEUED
        assert job.max_attempts == 5

    async def test_unknown_job_type(self, db_session):
        with pytest.raises(ValidationError) as exc:
            await enqueue_job(db_session, _request("does.not_exist"))
        assert exc.value.code == "job.unknown_type"

    async def test_idempotency_key_deduplicates(self, db_session):
        first = await enqueue_job(db_session, _request(idempotency_key="expiry-2030-01-01"))
        second = await enqueue_job(db_session, _request(idempotency_key="expiry-2030-01-01"))
        assert first == second
        assert len(await list_jobs(db_session)) == 1


class TestClaim:
    async def test_lower_priority_number_wins(self, db_session):
        await enqueue_job(db_session, _request("royalty.calculate_run"))
        normal = await enqueue_job(db_session, _request("license.expiry_check"))
        await enqueue_job(db_session, _request(priority=JobPriority.CRITICAL, run_at=utc_now() + timedelta(hours=1)))

        claimed = await claim_next_job(db_session, worker_id=WORKER, lease_seconds=60)
        assert claimed.id == normal
        assert claimed.attempts == 1

        job = await get_job(db_session, normal)
        assert job.status == JobStatus.RUNNING
        assert job.locked_by == WORKER
        assert job.lease_until > utc_now()

    async def test_empty_queue(self, db_session):
        assert await claim_next_job(db_session, worker_id=WORKER, lease_seconds=60) is None

    async def test_extend_lease_only_for_owner(self, db_session):
        job_id = await enqueue_job(db_session, _request())
        await claim_next_job(db_session, worker_id=WORKER, lease_seconds=60)
        assert await extend_lease(db_session, job_id=job_id, worker_id=WORKER, lease_seconds=60)
        assert not await extend_lease(db_session, job_id=job_id, worker_id="someone-else", lease_seconds=60)


class TestOutcomes:
    async def test_success(self, db_session):
        job_id = await enqueue_job(db_session, _request())
        await claim_next_job(db_session, worker_id=WORKER, lease_seconds=60)
        await mark_job_succeeded(db_session, job_id=job_id, result={"expired": 2}, duration_ms=40)

        job = await get_job(db_session, job_id)
        assert job.status == JobStatus.SUCCEEDED
        assert job.result == {"expired": 2}
        assert job.completed_at is not None

    async def test_failure_requeues_until_attempts_run_out(self, db_session):
        job_id = await enqueue_job(db_session, _request(max_attempts=2))

        claimed = await claim_next_job(db_session, worker_id=WORKER, lease_seconds=60)
        status = await mark_job_failed(
            db_session, job_id=job_id, error="boom",
            attempts=claimed.attempts, max_attempts=claimed.max_attempts, backoff_seconds=30,
        )
        assert status == JobStatus.QUEUED
        job = await get_job(db_session, job_id)
        assert job.run_at > utc_now() + timedelta(seconds=20)
        assert job.locked_by is None

        job.run_at = utc_now() - timedelta(seconds=1)
        await db_session.flush()
        claimed = await claim_next_job(db_session, worker_id=WORKER, lease_seconds=60)
        assert claimed.attempts == 2
        status = await mark_job_failed(
            db_session, job_id=job_id, error="boom again",
            attempts=claimed.attempts, max_attempts=claimed.max_attempts, backoff_seconds=30,
        )
        assert status == JobStatus.FAILED
        assert job.last_error == "boom again"

        assert await retry_failed_job(db_session, job_id=job_id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0

    async def test_defer_gives_the_attempt_back(self, db_session):
        job_id = await enqueue_job(db_session, _request())
        await claim_next_job(db_session, worker_id=WORKER, lease_seconds=60)

        assert await defer_job(db_session, job_id=job_id, delay_seconds=10)
        job = await get_job(db_session, job_id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0
        assert job.run_at > utc_now()
        assert not await defer_job(db_session, job_id=job_id, delay_seconds=10)

    async def test_cancel(self, db_session):
        job_id = await enqueue_job(db_session, _request())
        assert await cancel_job(db_session, job_id=job_id)
        assert not await cancel_job(db_session, job_id=job_id)
        assert (await get_job(db_session, job_id)).status == JobStatus.CANCELLED


class TestReaper:
    async def test_expired_leases_are_requeued_or_failed(self, db_session):
        past = utc_now() - timedelta(minutes=5)
        retryable = BackgroundJob(
            queue_name="license-management", job_type="license.expiry_check",
            status=JobStatus.RUNNING, attempts=1, max_attempts=3, lease_until=past, locked_by=WORKER,
        )
        exhausted = BackgroundJob(
            queue_name="license-management", job_type="license.expiry_check",
            status=JobStatus.RUNNING, attempts=3, max_attempts=3, lease_until=past, locked_by=WORKER,
        )
        healthy = BackgroundJob(
            queue_name="license-management", job_type="license.expiry_check",
            status=JobStatus.RUNNING, attempts=1, max_attempts=3,
            lease_until=utc_now() + timedelta(minutes=5), locked_by=WORKER,
        )
        db_session.add_all([retryable, exhausted, healthy])
        await db_session.flush()

        assert await requeue_expired_running_jobs(db_session) == 2
        assert retryable.status == JobStatus.QUEUED
        assert retryable.last_error == "Lease expired"
        assert exhausted.status == JobStatus.FAILED
        assert healthy.status == JobStatus.RUNNING

        counts = await count_by_status(db_session, "license-management")
        assert counts == {JobStatus.QUEUED: 1, JobStatus.FAILED: 1, JobStatus.RUNNING: 1}


def test_backoff_is_exponential_and_capped():
    assert [compute_backoff_seconds(attempt=n) for n in (0, 1, 2, 3)] == [2, 2, 4, 8]
    assert compute_backoff_seconds(attempt=20) == 300
