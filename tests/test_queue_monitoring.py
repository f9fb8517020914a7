"""
Tests for queue metrics, health and alerts.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from iplicensing.errors import NotFoundError
from iplicensing.jobs.monitoring import QueueMonitor
from iplicensing.models import (
    AlertSeverity,
    BackgroundJob,
    JobStatus,
    Notification,
    NotificationPriority,
    QueueMetricSample,
)
from iplicensing.utils.time import utc_now

QUEUE = "payout-processing"


def _job(status: JobStatus, **kwargs) -> BackgroundJob:
    return BackgroundJob(queue_name=QUEUE, job_type="payout.process", status=status, payload={}, **kwargs)


@pytest.fixture
async def busy_queue(db_session):
    now = utc_now()
    db_session.add_all([
        _job(JobStatus.SUCCEEDED, completed_at=now, duration_ms=100),
        _job(JobStatus.SUCCEEDED, completed_at=now, duration_ms=200),
        _job(JobStatus.SUCCEEDED, completed_at=now, duration_ms=300),
        _job(JobStatus.FAILED, completed_at=now, duration_ms=120_000, timed_out=True),
        _job(JobStatus.QUEUED, run_at=now - timedelta(seconds=30)),
        _job(JobStatus.QUEUED, run_at=now + timedelta(minutes=10)),
        _job(JobStatus.RUNNING),
    ])
    await db_session.commit()


class TestMetrics:
    async def test_collect_metrics(self, db_session, busy_queue):
        sample = await QueueMonitor(db_session).collect_metrics(QUEUE)
        assert sample.waiting == 1
        assert sample.delayed == 1
        assert sample.active == 1
        assert sample.completed == 3
        assert sample.failed == 1
        assert sample.error_rate == 25.0
        assert sample.timeout_rate == 25.0
        assert sample.p99_processing_ms == 300
        assert sample.oldest_waiting_ms >= 30_000

        history = await QueueMonitor(db_session).get_metrics_history(QUEUE)
        assert [s.id for s in history] == [sample.id]

    async def test_empty_queue(self, db_session):
        sample = await QueueMonitor(db_session).collect_metrics("cache-maintenance", persist=False)
        assert (sample.waiting, sample.error_rate, sample.oldest_waiting_ms) == (0, 0.0, 0)


class TestAlerts:
    async def test_critical_alerts_notify_admins_once(self, db_session, busy_queue, admin_user):
        monitor = QueueMonitor(db_session)
        sample = await monitor.collect_metrics(QUEUE)

        alerts = await monitor.check_alerts(sample)
        assert {(a.metric, a.severity) for a in alerts} == {
            ("error_rate", AlertSeverity.CRITICAL),
            ("timeout_rate", AlertSeverity.CRITICAL),
        }
        assert await monitor.check_alerts(sample) == []

        notifications = (await db_session.execute(
            select(Notification).where(Notification.user_id == admin_user.id)
        )).scalars().all()
        assert len(notifications) == 2
        assert all(n.priority == NotificationPriority.URGENT for n in notifications)

    async def test_acknowledge(self, db_session, busy_queue, admin_user):
        monitor = QueueMonitor(db_session)
        [alert, _] = await monitor.check_alerts(await monitor.collect_metrics(QUEUE))

        acknowledged = await monitor.acknowledge_alert(alert.id, admin_user.id)
        assert acknowledged.acknowledged
        assert acknowledged.acknowledged_by == admin_user.id
        assert len(await monitor.list_alerts(QUEUE)) == 1
        assert len(await monitor.list_alerts(QUEUE, include_acknowledged=True)) == 2

        with pytest.raises(NotFoundError):
            await monitor.acknowledge_alert("00000000-0000-0000-0000-000000000000", admin_user.id)


class TestHealth:
    async def test_queue_health(self, db_session, busy_queue):
        health = await QueueMonitor(db_session).get_health(QUEUE)
        assert health["status"] == "critical"
        assert not health["healthy"]
        assert any("error rate" in issue for issue in health["issues"])

        quiet = await QueueMonitor(db_session).get_health("cache-maintenance")
        assert quiet["healthy"]

    async def test_dashboard(self, db_session, busy_queue):
        dashboard = await QueueMonitor(db_session).get_dashboard()
        assert dashboard["critical_queues"] == 1
        assert dashboard["healthy_queues"] == dashboard["total_queues"] - 1
        assert dashboard["total_waiting"] == 1
        assert dashboard["total_failed"] == 1


async def test_cleanup_old_metrics(db_session):
    db_session.add_all([
        QueueMetricSample(queue_name=QUEUE, collected_at=utc_now() - timedelta(hours=200)),
        QueueMetricSample(queue_name=QUEUE, collected_at=utc_now()),
    ])
    await db_session.flush()

    assert await QueueMonitor(db_session).cleanup_old_metrics() == 1
