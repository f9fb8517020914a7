"""
Queue auto-scaling decisions

The manager only recommends worker counts; acting on a recommendation is
left to the deployment platform.
"""
import dataclasses
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.errors import NotFoundError, ValidationError
from iplicensing.jobs.config import ScalingConfig, get_queue_config
from iplicensing.models.job import BackgroundJob, JobStatus
from iplicensing.utils.time import utc_now

logger = structlog.get_logger()

HISTORY_SIZE = 100


class ScalingAction(str, Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    MAINTAIN = "maintain"


@dataclass(frozen=True)
class Thresholds:
    queue_depth: int
    queue_latency_ms: int
    cpu_percent: int
    memory_percent: int


@dataclass
class ScalingPolicy:
    queue_name: str
    min_workers: int
    max_workers: int
    scale_up: Thresholds = field(
        default_factory=lambda: Thresholds(
            queue_depth=ScalingConfig.SCALE_UP_QUEUE_DEPTH,
            queue_latency_ms=ScalingConfig.SCALE_UP_QUEUE_LATENCY_MS,
            cpu_percent=ScalingConfig.SCALE_UP_CPU_THRESHOLD,
            memory_percent=ScalingConfig.SCALE_UP_MEMORY_THRESHOLD,
        )
    )
    scale_down: Thresholds = field(
        default_factory=lambda: Thresholds(
            queue_depth=ScalingConfig.SCALE_DOWN_QUEUE_DEPTH,
            queue_latency_ms=ScalingConfig.SCALE_DOWN_QUEUE_LATENCY_MS,
            cpu_percent=ScalingConfig.SCALE_DOWN_CPU_THRESHOLD,
            memory_percent=ScalingConfig.SCALE_DOWN_MEMORY_THRESHOLD,
        )
    )
    scale_up_cooldown_seconds: int = ScalingConfig.SCALE_UP_COOLDOWN_SECONDS
    scale_down_cooldown_seconds: int = ScalingConfig.SCALE_DOWN_COOLDOWN_SECONDS


@dataclass(frozen=True)
class ScalingMetrics:
    queue_name: str
    queue_depth: int
    queue_latency_ms: int
    current_workers: int
    active_jobs: int = 0
    completed_rate: float = 0.0
    error_rate: float = 0.0
    memory_usage: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ScalingDecision:
    action: ScalingAction
    target_workers: int
    current_workers: int
    reason: str
    metrics: ScalingMetrics


class ScalingManager:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._policies: dict[str, ScalingPolicy] = {}
        self._last_action: dict[str, float] = {}
        self._history: dict[str, deque[ScalingDecision]] = {}

    def register_queue(self, queue_name: str, **overrides: Any) -> ScalingPolicy:
        """Register a queue with min/max workers derived from its priority."""
        config = get_queue_config(queue_name)
        policy = ScalingPolicy(
            queue_name=queue_name,
            min_workers=config.min_workers,
            max_workers=config.max_workers,
        )
        if overrides:
            policy = dataclasses.replace(policy, **overrides)
        self._validate(policy)
        self._policies[queue_name] = policy
        return policy

    def registered_queues(self) -> list[str]:
        return list(self._policies)

    def get_scaling_policy(self, queue_name: str) -> ScalingPolicy:
        policy = self._policies.get(queue_name)
        if not policy:
            raise NotFoundError(f"Queue not registered: {queue_name}", code="scaling.unknown_queue")
        return policy

    def update_scaling_policy(self, queue_name: str, **updates: Any) -> ScalingPolicy:
        policy = dataclasses.replace(self.get_scaling_policy(queue_name), **updates)
        self._validate(policy)
        self._policies[queue_name] = policy
        logger.info("Scaling policy updated", queue=queue_name, updates=sorted(updates))
        return policy

    @staticmethod
    def _validate(policy: ScalingPolicy) -> None:
        if policy.min_workers < 0 or policy.max_workers < 1:
            raise ValidationError("Worker bounds must be positive", code="scaling.invalid_policy")
        if policy.min_workers > policy.max_workers:
            raise ValidationError("min_workers cannot exceed max_workers", code="scaling.invalid_policy")

    def make_scaling_decision(self, queue_name: str, metrics: ScalingMetrics) -> ScalingDecision:
        policy = self.get_scaling_policy(queue_name)
        current = metrics.current_workers

        last_action = self._last_action.get(queue_name)
        if last_action is not None:
            elapsed = self._clock() - last_action
            cooldown = max(policy.scale_up_cooldown_seconds, policy.scale_down_cooldown_seconds)
            if elapsed < cooldown:
                return ScalingDecision(
                    action=ScalingAction.MAINTAIN,
                    target_workers=current,
                    current_workers=current,
                    reason=f"In cooldown period ({math.ceil(cooldown - elapsed)}s remaining)",
                    metrics=metrics,
                )

        up = policy.scale_up
        reasons = []
        if metrics.queue_depth >= up.queue_depth:
            reasons.append(f"Queue depth: {metrics.queue_depth} >= {up.queue_depth}")
        if metrics.queue_latency_ms >= up.queue_latency_ms:
            reasons.append(f"Queue latency: {metrics.queue_latency_ms}ms >= {up.queue_latency_ms}ms")
        if metrics.memory_usage >= up.memory_percent:
            reasons.append(f"Memory usage: {metrics.memory_usage}% >= {up.memory_percent}%")

        if reasons and current < policy.max_workers:
            increment = min(3, math.ceil(metrics.queue_depth / (up.queue_depth or 1)))
            decision = ScalingDecision(
                action=ScalingAction.SCALE_UP,
                target_workers=min(current + max(1, increment), policy.max_workers),
                current_workers=current,
                reason="; ".join(reasons),
                metrics=metrics,
            )
            self._record_decision(queue_name, decision)
            return decision

        down = policy.scale_down
        quiet = (
            metrics.queue_depth <= down.queue_depth
            and metrics.queue_latency_ms <= down.queue_latency_ms
            and metrics.memory_usage <= down.memory_percent
        )
        if quiet and current > policy.min_workers:
            decision = ScalingDecision(
                action=ScalingAction.SCALE_DOWN,
                target_workers=max(current - 1, policy.min_workers),
                current_workers=current,
                reason=f"Low load: depth={metrics.queue_depth}, latency={metrics.queue_latency_ms}ms",
                metrics=metrics,
            )
            self._record_decision(queue_name, decision)
            return decision

        return ScalingDecision(
            action=ScalingAction.MAINTAIN,
            target_workers=current,
            current_workers=current,
            reason="Within optimal range",
            metrics=metrics,
        )

    def _record_decision(self, queue_name: str, decision: ScalingDecision) -> None:
        if decision.action != ScalingAction.MAINTAIN:
            self._last_action[queue_name] = self._clock()
        self._history.setdefault(queue_name, deque(maxlen=HISTORY_SIZE)).append(decision)
        logger.info(
            "Scaling decision",
            queue=queue_name,
            action=decision.action.value,
            current_workers=decision.current_workers,
            target_workers=decision.target_workers,
            reason=decision.reason,
        )

    def get_scaling_history(self, queue_name: str, limit: int = 20) -> list[ScalingDecision]:
        history = list(self._history.get(queue_name, ()))
        return history[-limit:] if limit > 0 else []

    async def evaluate_all(
        self,
        db: AsyncSession,
        current_workers: dict[str, int] | None = None,
        memory_usage: float = 0.0,
    ) -> list[ScalingDecision]:
        """One auto-scaling tick across every registered queue."""
        decisions = []
        for queue_name, policy in self._policies.items():
            workers = (current_workers or {}).get(queue_name, policy.min_workers)
            metrics = await collect_scaling_metrics(db, queue_name, workers, memory_usage)
            decision = self.make_scaling_decision(queue_name, metrics)
            if decision.action != ScalingAction.MAINTAIN:
                logger.info(
                    "Scaling recommended",
                    queue=queue_name,
                    action=decision.action.value,
                    target_workers=decision.target_workers,
                )
            decisions.append(decision)
        return decisions


async def collect_scaling_metrics(
    db: AsyncSession,
    queue_name: str,
    current_workers: int,
    memory_usage: float = 0.0,
) -> ScalingMetrics:
    now = utc_now()
    runnable = (
        BackgroundJob.queue_name == queue_name,
        BackgroundJob.status == JobStatus.QUEUED,
        BackgroundJob.run_at <= now,
    )
    depth = await db.scalar(select(func.count()).select_from(BackgroundJob).where(*runnable))
    oldest = await db.scalar(select(func.min(BackgroundJob.run_at)).where(*runnable))
    active = await db.scalar(
        select(func.count())
        .select_from(BackgroundJob)
        .where(BackgroundJob.queue_name == queue_name, BackgroundJob.status == JobStatus.RUNNING)
    )

    hour_ago = now - timedelta(hours=1)
    finished = await db.execute(
        select(BackgroundJob.status, func.count())
        .where(
            BackgroundJob.queue_name == queue_name,
            BackgroundJob.completed_at >= hour_ago,
            BackgroundJob.status.in_([JobStatus.SUCCEEDED, JobStatus.FAILED]),
        )
        .group_by(BackgroundJob.status)
    )
    counts = {status: int(count) for status, count in finished.all()}
    succeeded = counts.get(JobStatus.SUCCEEDED, 0)
    failed = counts.get(JobStatus.FAILED, 0)
    completed_last_minute = await db.scalar(
        select(func.count())
        .select_from(BackgroundJob)
        .where(
            BackgroundJob.queue_name == queue_name,
            BackgroundJob.status == JobStatus.SUCCEEDED,
            BackgroundJob.completed_at >= now - timedelta(minutes=1),
        )
    )

    return ScalingMetrics(
        queue_name=queue_name,
        queue_depth=int(depth or 0),
        queue_latency_ms=int((now - oldest).total_seconds() * 1000) if oldest else 0,
        current_workers=current_workers,
        active_jobs=int(active or 0),
        completed_rate=float(completed_last_minute or 0),
        error_rate=(failed / (succeeded + failed) * 100) if succeeded + failed else 0.0,
        memory_usage=memory_usage,
        timestamp=now,
    )
