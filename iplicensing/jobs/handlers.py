"""
Job handlers keyed by job type

Each handler gets its own session and the job payload, and returns a
JSON-serializable result stored on the job.
"""
import math
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.errors import RateLimitError, ValidationError
from iplicensing.jobs.monitoring import QueueMonitor
from iplicensing.jobs.rate_limiter import TokenBucket
from iplicensing.services.license_service import LicenseService
from iplicensing.services.notification_service import NotificationService
from iplicensing.services.payout_service import PayoutService
from iplicensing.services.royalty_service import RoyaltyService

logger = structlog.get_logger()

JobHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[dict[str, Any] | None]]

JOB_HANDLERS: dict[str, JobHandler] = {}

# Stripe allows 100 requests per second; refill a tenth of that each second
stripe_api_bucket = TokenBucket(max_tokens=100, refill_rate=10)


def job_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    def register(fn: JobHandler) -> JobHandler:
        JOB_HANDLERS[job_type] = fn
        return fn

    return register


def _require(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not value:
        raise ValidationError(f"Job payload is missing '{key}'", code="job.invalid_payload")
    return str(value)


@job_handler("license.expiry_check")
async def run_license_expiry_check(db: AsyncSession, payload: dict[str, Any]) -> dict[str, Any]:
    service = LicenseService(db)
    expiring = await service.mark_expiring(payload.get("window_days"))
    expired = await service.expire_licenses()
    return {"marked_expiring": expiring, "expired": expired}


@job_handler("royalty.calculate_run")
async def run_royalty_calculation(db: AsyncSession, payload: dict[str, Any]) -> dict[str, Any]:
    run = await RoyaltyService(db).calculate_run(_require(payload, "run_id"))
    return {
        "run_id": run.id,
        "status": run.status.value,
        "total_revenue_cents": run.total_revenue_cents,
        "total_royalties_cents": run.total_royalties_cents,
    }


@job_handler("payout.process")
async def run_payout(db: AsyncSession, payload: dict[str, Any]) -> dict[str, Any]:
    creator_id = _require(payload, "creator_id")
    permit = stripe_api_bucket.try_acquire()
    if not permit.allowed:
        raise RateLimitError(
            "Stripe request budget exhausted",
            retry_after=math.ceil((permit.retry_after_ms or 1000) / 1000),
        )
    payout = await PayoutService(db).process_payout(creator_id)
    return {"payout_id": payout.id, "status": payout.status.value, "amount_cents": payout.amount_cents}


@job_handler("notification.cleanup")
async def run_notification_cleanup(db: AsyncSession, payload: dict[str, Any]) -> dict[str, Any]:
    deleted = await NotificationService(db).cleanup_read(payload.get("retention_days"))
    return {"deleted": deleted}


@job_handler("jobs.metrics_cleanup")
async def run_metrics_cleanup(db: AsyncSession, payload: dict[str, Any]) -> dict[str, Any]:
    monitor = QueueMonitor(db)
    if payload.get("retention_hours"):
        removed = await monitor.cleanup_old_metrics(int(payload["retention_hours"]))
    else:
        removed = await monitor.cleanup_old_metrics()
    return {"removed": removed}


def get_handler(job_type: str) -> JobHandler | None:
    return JOB_HANDLERS.get(job_type)
