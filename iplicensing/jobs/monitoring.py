"""
Queue monitoring

Metrics are computed from the job table, sampled into
`queue_metric_samples`, and compared against alert thresholds.
"""
import math
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.errors import NotFoundError
from iplicensing.jobs.config import QUEUE_PRIORITIES, MonitoringConfig
from iplicensing.models.job import AlertSeverity, BackgroundJob, JobStatus, QueueAlert, QueueMetricSample
from iplicensing.models.notification import NotificationPriority, NotificationType
from iplicensing.models.user import User, UserRole
from iplicensing.services.notification_service import NotificationService
from iplicensing.utils.time import utc_now

logger = structlog.get_logger()


def _percentile(ordered: list[int], fraction: float) -> int:
    if not ordered:
        return 0
    return ordered[min(len(ordered) - 1, math.floor(len(ordered) * fraction))]


def _graded(value: float, warning: float, critical: float) -> AlertSeverity | None:
    if value >= critical:
        return AlertSeverity.CRITICAL
    if value >= warning:
        return AlertSeverity.WARNING
    return None


def sample_to_dict(sample: QueueMetricSample) -> dict[str, Any]:
    return {
        "queue_name": sample.queue_name,
        "waiting": sample.waiting,
        "active": sample.active,
        "delayed": sample.delayed,
        "failed": sample.failed,
        "completed": sample.completed,
        "jobs_per_minute": sample.jobs_per_minute,
        "error_rate": round(sample.error_rate, 2),
        "timeout_rate": round(sample.timeout_rate, 2),
        "p95_processing_ms": sample.p95_processing_ms,
        "p99_processing_ms": sample.p99_processing_ms,
        "oldest_waiting_ms": sample.oldest_waiting_ms,
        "collected_at": sample.collected_at.isoformat(),
    }


class QueueMonitor:
    """Service for queue metrics, health and alerts."""

    def __init__(self, db: AsyncSession, notifications: NotificationService | None = None):
        self.db = db
        self.notifications = notifications or NotificationService(db)

    async def _previous_sample(self, queue_name: str) -> QueueMetricSample | None:
        return await self.db.scalar(
            select(QueueMetricSample)
            .where(QueueMetricSample.queue_name == queue_name)
            .order_by(QueueMetricSample.collected_at.desc())
            .limit(1)
        )

    async def collect_metrics(self, queue_name: str, persist: bool = True) -> QueueMetricSample:
        now = utc_now()
        hour_ago = now - timedelta(hours=1)
        in_queue = BackgroundJob.queue_name == queue_name

        result = await self.db.execute(
            select(BackgroundJob.status, func.count()).where(in_queue).group_by(BackgroundJob.status)
        )
        counts = {status: int(count) for status, count in result.all()}
        delayed = int(
            await self.db.scalar(
                select(func.count())
                .select_from(BackgroundJob)
                .where(in_queue, BackgroundJob.status == JobStatus.QUEUED, BackgroundJob.run_at > now)
            )
            or 0
        )
        waiting = counts.get(JobStatus.QUEUED, 0) - delayed
        active = counts.get(JobStatus.RUNNING, 0)
        failed = counts.get(JobStatus.FAILED, 0)
        completed = counts.get(JobStatus.SUCCEEDED, 0)

        oldest = await self.db.scalar(
            select(func.min(BackgroundJob.run_at)).where(
                in_queue,
                BackgroundJob.status == JobStatus.QUEUED,
                BackgroundJob.run_at <= now,
            )
        )

        finished = await self.db.execute(
            select(BackgroundJob.status, func.count())
            .where(
                in_queue,
                BackgroundJob.completed_at >= hour_ago,
                BackgroundJob.status.in_([JobStatus.SUCCEEDED, JobStatus.FAILED]),
            )
            .group_by(BackgroundJob.status)
        )
        finished_counts = {status: int(count) for status, count in finished.all()}
        finished_total = sum(finished_counts.values())
        error_rate = (
            finished_counts.get(JobStatus.FAILED, 0) / finished_total * 100 if finished_total else 0.0
        )

        # Every attempt that ran to an outcome in the last hour, retries included
        attempts = await self.db.execute(
            select(BackgroundJob.timed_out, func.count())
            .where(in_queue, BackgroundJob.duration_ms.is_not(None), BackgroundJob.updated_at >= hour_ago)
            .group_by(BackgroundJob.timed_out)
        )
        attempt_counts = {bool(timed_out): int(count) for timed_out, count in attempts.all()}
        attempt_total = sum(attempt_counts.values())
        timeout_rate = attempt_counts.get(True, 0) / attempt_total * 100 if attempt_total else 0.0

        durations = await self.db.execute(
            select(BackgroundJob.duration_ms)
            .where(
                in_queue,
                BackgroundJob.status == JobStatus.SUCCEEDED,
                BackgroundJob.completed_at >= hour_ago,
                BackgroundJob.duration_ms.is_not(None),
            )
            .order_by(BackgroundJob.duration_ms)
        )
        ordered = [int(d) for d in durations.scalars().all()]

        jobs_per_minute = 0.0
        previous = await self._previous_sample(queue_name)
        if previous:
            minutes = (now - previous.collected_at).total_seconds() / 60
            if minutes > 0:
                jobs_per_minute = float(round((completed - previous.completed) / minutes))

        sample = QueueMetricSample(
            queue_name=queue_name,
            collected_at=now,
            waiting=waiting,
            active=active,
            delayed=delayed,
            failed=failed,
            completed=completed,
            jobs_per_minute=jobs_per_minute,
            error_rate=error_rate,
            timeout_rate=timeout_rate,
            p95_processing_ms=float(_percentile(ordered, 0.95)),
            p99_processing_ms=float(_percentile(ordered, 0.99)),
            oldest_waiting_ms=int((now - oldest).total_seconds() * 1000) if oldest else 0,
        )
        if persist:
            self.db.add(sample)
            await self.db.flush()
        return sample

    async def collect_all(self) -> list[QueueMetricSample]:
        samples = []
        for queue_name in QUEUE_PRIORITIES:
            sample = await self.collect_metrics(queue_name)
            await self.check_alerts(sample)
            samples.append(sample)
        return samples

    def _evaluate(self, sample: QueueMetricSample) -> list[tuple[str, AlertSeverity, float, float, str]]:
        found = []

        severity = _graded(
            sample.waiting,
            MonitoringConfig.ALERT_QUEUE_DEPTH_WARNING,
            MonitoringConfig.ALERT_QUEUE_DEPTH_CRITICAL,
        )
        if severity:
            threshold = (
                MonitoringConfig.ALERT_QUEUE_DEPTH_CRITICAL
                if severity == AlertSeverity.CRITICAL
                else MonitoringConfig.ALERT_QUEUE_DEPTH_WARNING
            )
            label = "Critical" if severity == AlertSeverity.CRITICAL else "High"
            found.append(
                ("queue_depth", severity, sample.waiting, threshold, f"{label} queue depth: {sample.waiting} jobs waiting")
            )

        severity = _graded(
            sample.error_rate,
            MonitoringConfig.ALERT_ERROR_RATE_WARNING,
            MonitoringConfig.ALERT_ERROR_RATE_CRITICAL,
        )
        if severity:
            threshold = (
                MonitoringConfig.ALERT_ERROR_RATE_CRITICAL
                if severity == AlertSeverity.CRITICAL
                else MonitoringConfig.ALERT_ERROR_RATE_WARNING
            )
            label = "Critical" if severity == AlertSeverity.CRITICAL else "High"
            found.append(
                ("error_rate", severity, sample.error_rate, threshold, f"{label} error rate: {sample.error_rate:.1f}%")
            )

        severity = _graded(
            sample.timeout_rate,
            MonitoringConfig.ALERT_TIMEOUT_RATE_WARNING,
            MonitoringConfig.ALERT_TIMEOUT_RATE_CRITICAL,
        )
        if severity:
            threshold = (
                MonitoringConfig.ALERT_TIMEOUT_RATE_CRITICAL
                if severity == AlertSeverity.CRITICAL
                else MonitoringConfig.ALERT_TIMEOUT_RATE_WARNING
            )
            label = "Critical" if severity == AlertSeverity.CRITICAL else "High"
            found.append(
                (
                    "timeout_rate",
                    severity,
                    sample.timeout_rate,
                    threshold,
                    f"{label} timeout rate: {sample.timeout_rate:.1f}%",
                )
            )

        if sample.p99_processing_ms >= MonitoringConfig.ALERT_PROCESSING_TIME_P99_MS:
            found.append(
                (
                    "processing_time",
                    AlertSeverity.WARNING,
                    sample.p99_processing_ms,
                    MonitoringConfig.ALERT_PROCESSING_TIME_P99_MS,
                    f"High P99 processing time: {int(sample.p99_processing_ms)}ms",
                )
            )
        return found

    async def check_alerts(self, sample: QueueMetricSample) -> list[QueueAlert]:
        """Raise alerts for breached thresholds, skipping ones already open."""
        created = []
        for metric, severity, value, threshold, message in self._evaluate(sample):
            open_alert = await self.db.scalar(
                select(QueueAlert.id).where(
                    QueueAlert.queue_name == sample.queue_name,
                    QueueAlert.metric == metric,
                    QueueAlert.severity == severity,
                    QueueAlert.acknowledged.is_(False),
                )
            )
            if open_alert:
                continue

            alert = QueueAlert(
                queue_name=sample.queue_name,
                metric=metric,
                severity=severity,
                value=float(value),
                threshold=float(threshold),
                message=message,
                acknowledged=False,
            )
            self.db.add(alert)
            created.append(alert)
            logger.warning(
                "Queue alert raised",
                queue=sample.queue_name,
                metric=metric,
                severity=severity.value,
                message=message,
            )
            if severity == AlertSeverity.CRITICAL:
                await self._notify_admins(sample.queue_name, message)

        if created:
            await self.db.flush()
        return created

    async def _notify_admins(self, queue_name: str, message: str) -> None:
        result = await self.db.execute(
            select(User.id).where(User.role == UserRole.ADMIN, User.is_active.is_(True))
        )
        for admin_id in result.scalars().all():
            await self.notifications.create(
                user_id=admin_id,
                type=NotificationType.SYSTEM,
                title=f"Queue alert: {queue_name}",
                message=message,
                priority=NotificationPriority.URGENT,
                action_url="/admin/jobs",
            )

    async def list_alerts(self, queue_name: str | None = None, include_acknowledged: bool = False) -> list[QueueAlert]:
        stmt = select(QueueAlert).order_by(QueueAlert.created_at.desc())
        if queue_name:
            stmt = stmt.where(QueueAlert.queue_name == queue_name)
        if not include_acknowledged:
            stmt = stmt.where(QueueAlert.acknowledged.is_(False))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> QueueAlert:
        alert = await self.db.get(QueueAlert, alert_id)
        if not alert:
            raise NotFoundError(f"Alert {alert_id} not found", code="alert.not_found")
        if not alert.acknowledged:
            alert.acknowledged = True
            alert.acknowledged_by = acknowledged_by
            alert.acknowledged_at = utc_now()
            await self.db.flush()
        return alert

    async def get_health(self, queue_name: str) -> dict[str, Any]:
        sample = await self.collect_metrics(queue_name, persist=False)
        issues: list[str] = []
        status = "healthy"

        if sample.waiting >= MonitoringConfig.ALERT_QUEUE_DEPTH_CRITICAL:
            status = "critical"
            issues.append(f"Critical queue backlog: {sample.waiting} jobs")
        elif sample.waiting >= MonitoringConfig.ALERT_QUEUE_DEPTH_WARNING:
            status = "warning" if status == "healthy" else status
            issues.append(f"High queue depth: {sample.waiting} jobs")

        if sample.error_rate >= MonitoringConfig.ALERT_ERROR_RATE_CRITICAL:
            status = "critical"
            issues.append(f"Critical error rate: {sample.error_rate:.1f}%")
        elif sample.error_rate >= MonitoringConfig.ALERT_ERROR_RATE_WARNING:
            status = "warning" if status == "healthy" else status
            issues.append(f"High error rate: {sample.error_rate:.1f}%")

        if sample.p99_processing_ms >= MonitoringConfig.ALERT_PROCESSING_TIME_P99_MS:
            status = "warning" if status == "healthy" else status
            issues.append(f"Slow P99 processing: {int(sample.p99_processing_ms)}ms")

        return {
            "queue_name": queue_name,
            "healthy": status == "healthy",
            "status": status,
            "issues": issues,
            "metrics": sample_to_dict(sample),
        }

    async def get_dashboard(self) -> dict[str, Any]:
        statuses = [await self.get_health(name) for name in QUEUE_PRIORITIES]
        count = len(statuses)
        active_alerts = await self.db.scalar(
            select(func.count()).select_from(QueueAlert).where(QueueAlert.acknowledged.is_(False))
        )
        return {
            "total_queues": count,
            "healthy_queues": sum(1 for s in statuses if s["status"] == "healthy"),
            "warning_queues": sum(1 for s in statuses if s["status"] == "warning"),
            "critical_queues": sum(1 for s in statuses if s["status"] == "critical"),
            "total_waiting": sum(s["metrics"]["waiting"] for s in statuses),
            "total_active": sum(s["metrics"]["active"] for s in statuses),
            "total_failed": sum(s["metrics"]["failed"] for s in statuses),
            "active_alerts": int(active_alerts or 0),
            "avg_jobs_per_minute": round(sum(s["metrics"]["jobs_per_minute"] for s in statuses) / count) if count else 0,
            "avg_error_rate": round(sum(s["metrics"]["error_rate"] for s in statuses) / count, 2) if count else 0.0,
        }

    async def get_metrics_history(self, queue_name: str, limit: int = 60) -> list[QueueMetricSample]:
        result = await self.db.execute(
            select(QueueMetricSample)
            .where(QueueMetricSample.queue_name == queue_name)
            .order_by(QueueMetricSample.collected_at.desc())
            .limit(limit)
        )
        return list(reversed(result.scalars().all()))

    async def cleanup_old_metrics(self, retention_hours: int = MonitoringConfig.METRICS_RETENTION_HOURS) -> int:
        cutoff = utc_now() - timedelta(hours=retention_hours)
        samples = await self.db.execute(delete(QueueMetricSample).where(QueueMetricSample.collected_at < cutoff))
        alerts = await self.db.execute(
            delete(QueueAlert).where(QueueAlert.acknowledged.is_(True), QueueAlert.created_at < cutoff)
        )
        removed = (samples.rowcount or 0) + (alerts.rowcount or 0)
        logger.info("Queue metrics pruned", removed=removed, retention_hours=retention_hours)
        return removed
