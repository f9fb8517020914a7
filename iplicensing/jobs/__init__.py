"""
Background jobs: durable queue, worker, scaling and monitoring

The timeout handler, memory monitor and scaling manager below are
per-process; the worker and the admin API share them when the worker
runs inside the API process.
"""
from iplicensing.jobs.config import QUEUE_PRIORITIES
from iplicensing.jobs.memory import MemoryMonitor
from iplicensing.jobs.scaling import ScalingManager
from iplicensing.jobs.timeouts import TimeoutHandler

timeout_handler = TimeoutHandler()
memory_monitor = MemoryMonitor()
scaling_manager = ScalingManager()

for _queue_name in QUEUE_PRIORITIES:
    scaling_manager.register_queue(_queue_name)
