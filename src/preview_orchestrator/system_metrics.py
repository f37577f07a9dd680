"""
Host-level metrics for the orchestrator process.

Feeds the metrics-collection job with CPU and memory usage of the host the
orchestrator runs on, with a short cache so frequent callers stay cheap.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any

import psutil
import structlog

logger = structlog.get_logger(__name__)


@dataclass
class SystemMetrics:
    cpu_percent: float = 0.0
    cpu_count: int = 0
    memory_total: int = 0
    memory_available: int = 0
    memory_percent: float = 0.0
    disk_percent: float = 0.0
    process_rss: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpu": {"percent": self.cpu_percent, "count": self.cpu_count},
            "memory": {
                "total": self.memory_total,
                "available": self.memory_available,
                "percent": self.memory_percent,
            },
            "disk": {"percent": self.disk_percent},
            "process_rss": self.process_rss,
            "timestamp": self.timestamp,
        }


class SystemMetricsCollector:
    """
    psutil-backed collector with caching.

    Args:
        cache_duration: Seconds a snapshot stays valid
        disk_path: Filesystem path to report disk usage for
    """

    def __init__(self, cache_duration: float = 5.0, disk_path: str = "/"):
        self.cache_duration = cache_duration
        self.disk_path = disk_path
        self._lock = threading.Lock()
        self._cached: SystemMetrics | None = None
        self._last_collection = 0.0
        self._process = psutil.Process()
        # Prime the CPU counter; the first non-blocking reading is always 0.0
        psutil.cpu_percent(interval=None)

    def get_metrics(self) -> SystemMetrics:
        now = time.time()
        with self._lock:
            if self._cached and now - self._last_collection < self.cache_duration:
                return self._cached

        metrics = self._collect()
        with self._lock:
            self._cached = metrics
            self._last_collection = now
        return metrics

    def _collect(self) -> SystemMetrics:
        metrics = SystemMetrics(
            cpu_percent=psutil.cpu_percent(interval=None),
            cpu_count=psutil.cpu_count() or 0,
        )
        try:
            memory = psutil.virtual_memory()
            metrics.memory_total = memory.total
            metrics.memory_available = memory.available
            metrics.memory_percent = memory.percent
        except OSError as e:
            logger.warning("Failed to read memory usage", error=str(e))
        try:
            metrics.disk_percent = psutil.disk_usage(self.disk_path).percent
        except OSError as e:
            logger.warning("Failed to read disk usage", path=self.disk_path, error=str(e))
        try:
            metrics.process_rss = self._process.memory_info().rss
        except psutil.Error as e:
            logger.warning("Failed to read process memory", error=str(e))
        return metrics
