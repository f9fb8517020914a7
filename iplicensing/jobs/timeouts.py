"""
Job timeout handling

Hard timeouts cancel the running job, soft timeouts only warn. Execution
times are kept per job type so timeouts can adapt to observed run times.
"""
import asyncio
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from iplicensing.jobs.config import SOFT_TIMEOUT_PERCENTAGE

logger = structlog.get_logger()

HISTORY_SIZE = 100
MIN_ADAPTIVE_SAMPLES = 10


class JobTimeoutError(TimeoutError):
    def __init__(self, job_type: str, timeout_ms: int):
        super().__init__(f"Job {job_type} exceeded hard timeout of {timeout_ms}ms")
        self.job_type = job_type
        self.timeout_ms = timeout_ms


@dataclass
class ExecutionResult:
    success: bool
    timed_out: bool
    execution_time_ms: int
    exceeded_soft_timeout: bool
    result: Any = None
    error: BaseException | None = None


@dataclass(frozen=True)
class ExecutionStats:
    count: int
    min: int
    max: int
    avg: int
    p50: int
    p95: int
    p99: int


class TimeoutHandler:
    def __init__(self) -> None:
        self._history: dict[str, deque[int]] = {}

    async def execute_with_timeout(
        self,
        job_type: str,
        executor: Callable[[], Awaitable[Any]],
        timeout_ms: int,
        soft_timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Run `executor`, cancelling it once `timeout_ms` elapses."""
        soft_ms = soft_timeout_ms or timeout_ms * SOFT_TIMEOUT_PERCENTAGE // 100
        started = time.monotonic()
        soft_reached = False

        def _on_soft_timeout() -> None:
            nonlocal soft_reached
            soft_reached = True
            logger.warning(
                "Soft timeout reached",
                job_type=job_type,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                timeout_ms=timeout_ms,
            )

        loop = asyncio.get_running_loop()
        soft_handle = loop.call_later(soft_ms / 1000, _on_soft_timeout)
        task = asyncio.ensure_future(executor())
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        finally:
            soft_handle.cancel()

        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            elapsed = self._elapsed_ms(started)
            self.record_execution_time(job_type, elapsed)
            logger.error("Hard timeout reached", job_type=job_type, timeout_ms=timeout_ms)
            return ExecutionResult(
                success=False,
                timed_out=True,
                execution_time_ms=elapsed,
                exceeded_soft_timeout=True,
                error=JobTimeoutError(job_type, timeout_ms),
            )

        elapsed = self._elapsed_ms(started)
        self.record_execution_time(job_type, elapsed)
        error = task.exception()
        if error is not None:
            return ExecutionResult(
                success=False,
                timed_out=False,
                execution_time_ms=elapsed,
                exceeded_soft_timeout=soft_reached,
                error=error,
            )
        return ExecutionResult(
            success=True,
            timed_out=False,
            execution_time_ms=elapsed,
            exceeded_soft_timeout=soft_reached,
            result=task.result(),
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def record_execution_time(self, job_type: str, execution_time_ms: int) -> None:
        history = self._history.setdefault(job_type, deque(maxlen=HISTORY_SIZE))
        history.append(execution_time_ms)

    def get_adaptive_timeout(self, job_type: str, base_timeout_ms: int) -> int:
        """P95 plus 50%, kept between the base timeout and twice the base."""
        history = self._history.get(job_type)
        if not history or len(history) < MIN_ADAPTIVE_SAMPLES:
            return base_timeout_ms

        ordered = sorted(history)
        p95 = ordered[math.floor(len(ordered) * 0.95)]
        adaptive = math.ceil(p95 * 1.5)
        return max(base_timeout_ms, min(adaptive, base_timeout_ms * 2))

    def get_execution_stats(self, job_type: str) -> ExecutionStats | None:
        history = self._history.get(job_type)
        if not history:
            return None

        ordered = sorted(history)
        count = len(ordered)
        return ExecutionStats(
            count=count,
            min=ordered[0],
            max=ordered[-1],
            avg=round(sum(ordered) / count),
            p50=ordered[math.floor(count * 0.5)],
            p95=ordered[math.floor(count * 0.95)],
            p99=ordered[math.floor(count * 0.99)],
        )

    def job_types(self) -> list[str]:
        return sorted(self._history)

    def clear_history(self, job_type: str | None = None) -> None:
        if job_type:
            self._history.pop(job_type, None)
        else:
            self._history.clear()


def get_retry_delay_for_timeout(attempt: int, timed_out: bool, base_delay_ms: int = 5000) -> int:
    """Back off harder after a timeout: 3^(n-1) instead of 2^(n-1)."""
    exponent = max(0, attempt - 1)
    if timed_out:
        return base_delay_ms * 3 ** exponent
    return base_delay_ms * 2 ** exponent


def is_timeout_error(error: BaseException | None) -> bool:
    if error is None:
        return False
    if isinstance(error, (JobTimeoutError, asyncio.TimeoutError)):
        return True
    message = str(error).lower()
    return "timeout" in message or "timed out" in message
