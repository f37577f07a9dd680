"""
Fixed-schedule background jobs for the preview orchestrator.

Five named jobs run on independent intervals, each in its own asyncio task:

    cleanup               expired-session sweep                 every 15 min
    monitoring            full monitoring pass                  every 5 min
    orphan-cleanup        orphaned machine sweep                every 60 min
    timeout-enforcement   auto-destroy sessions over budget     every 10 min
    metrics-collection    session and host metrics snapshot     every 1 min

A per-job lock keeps a job from overlapping itself, including manual runs
triggered through run_job_now. A failing scheduled run is logged and recorded as
a ``<job>_failure`` event; the schedule carries on.
"""

import asyncio
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from .container_manager import ContainerManager
from .container_tiers import ContainerTier
from .monitoring import MonitoringService, Severity
from .system_metrics import SystemMetricsCollector

logger = structlog.get_logger(__name__)


class SchedulerError(Exception):
    """Base class for scheduler failures."""


class UnknownJobError(SchedulerError):
    def __init__(self, name: str):
        super().__init__(f"Unknown job: {name}")
        self.name = name


@dataclass
class SchedulerConfig:
    """Job intervals in seconds."""

    cleanup_interval: float = 15 * 60
    monitoring_interval: float = 5 * 60
    orphan_cleanup_interval: float = 60 * 60
    timeout_enforcement_interval: float = 10 * 60
    metrics_collection_interval: float = 60


@dataclass
class JobStatus:
    name: str
    interval_seconds: float
    running: bool = False
    executing: bool = False
    run_count: int = 0
    failure_count: int = 0
    last_run_at: datetime | None = None
    last_duration_seconds: float | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "running": self.running,
            "executing": self.executing,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_duration_seconds": self.last_duration_seconds,
            "last_error": self.last_error,
        }


@dataclass
class _Job:
    name: str
    interval: float
    func: Callable[[], Awaitable[Any]]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: asyncio.Task | None = None
    executing: bool = False
    run_count: int = 0
    failure_count: int = 0
    last_run_at: datetime | None = None
    last_duration: float | None = None
    last_error: str | None = None

    @property
    def failure_event(self) -> str:
        return f"{self.name.replace('-', '_')}_failure"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """
    Runs the orchestrator's recurring jobs.

    Args:
        manager: Container manager the jobs act on
        monitoring: Sink for job metrics and failure events
        config: Job intervals
        system_metrics: Host metrics source for the metrics job
        sleep: Awaitable sleep between runs, overridable for tests
    """

    def __init__(
        self,
        manager: ContainerManager,
        monitoring: MonitoringService,
        config: SchedulerConfig | None = None,
        system_metrics: SystemMetricsCollector | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.manager = manager
        self.monitoring = monitoring
        self.config = config or SchedulerConfig()
        self.system_metrics = system_metrics or SystemMetricsCollector()
        self._clock = clock
        self._sleep = sleep
        self._running = False

        self._jobs: dict[str, _Job] = {
            job.name: job
            for job in (
                _Job("cleanup", self.config.cleanup_interval, self._cleanup),
                _Job("monitoring", self.config.monitoring_interval, self._monitoring),
                _Job("orphan-cleanup", self.config.orphan_cleanup_interval, self._orphan_cleanup),
                _Job("timeout-enforcement", self.config.timeout_enforcement_interval,
                     self._timeout_enforcement),
                _Job("metrics-collection", self.config.metrics_collection_interval,
                     self._collect_metrics),
            )
        }

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def start(self) -> None:
        """Schedule every job. Must be called with a running event loop."""
        if self._running:
            return
        loop = asyncio.get_running_loop()
        for job in self._jobs.values():
            job.task = loop.create_task(self._run_loop(job), name=f"job:{job.name}")
        self._running = True
        logger.info("Scheduler started", jobs=self.job_names)

    async def stop(self) -> None:
        if not self._running:
            return
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for job in self._jobs.values():
            job.task = None
        self._running = False
        logger.info("Scheduler stopped")

    def get_job_status(self) -> list[JobStatus]:
        return [
            JobStatus(
                name=job.name,
                interval_seconds=job.interval,
                running=job.task is not None and not job.task.done(),
                executing=job.executing,
                run_count=job.run_count,
                failure_count=job.failure_count,
                last_run_at=job.last_run_at,
                last_duration_seconds=job.last_duration,
                last_error=job.last_error,
            )
            for job in self._jobs.values()
        ]

    async def run_job_now(self, name: str) -> Any:
        """
        Run a job immediately, waiting for any in-progress run of it first.

        Raises:
            UnknownJobError: no job has this name
            Exception: whatever the job raised
        """
        job = self._jobs.get(name)
        if job is None:
            raise UnknownJobError(name)
        logger.info("Running job on demand", job=name)
        return await self._execute(job)

    async def _run_loop(self, job: _Job) -> None:
        while True:
            await self._sleep(job.interval)
            try:
                await self._execute(job)
            except Exception:
                # Already logged and recorded by _execute
                continue

    async def _execute(self, job: _Job) -> Any:
        async with job.lock:
            job.executing = True
            started = time.monotonic()
            try:
                result = await job.func()
            except Exception as e:
                job.failure_count += 1
                job.last_error = str(e) or type(e).__name__
                logger.error("Job failed", job=job.name, error=job.last_error)
                self.monitoring.record_event(
                    job.failure_event,
                    {"job": job.name, "error": job.last_error},
                    Severity.ERROR,
                )
                raise
            else:
                job.last_error = None
                return result
            finally:
                job.executing = False
                job.run_count += 1
                job.last_run_at = self._clock()
                job.last_duration = round(time.monotonic() - started, 3)

    # Job bodies

    async def _cleanup(self) -> dict[str, Any]:
        stats = await self.manager.cleanup_expired_sessions()
        return stats.to_dict()

    async def _monitoring(self) -> dict[str, Any]:
        return await self.manager.run_monitoring_job()

    async def _orphan_cleanup(self) -> dict[str, Any]:
        cleaned = await self.manager.cleanup_orphaned_machines()
        self.monitoring.record_metric("orphaned_machines_cleaned", cleaned)
        return {"orphaned_machines_cleaned": cleaned}

    async def _timeout_enforcement(self) -> dict[str, Any]:
        results = await self.manager.monitor_all_sessions()
        enforced = [r for r in results if r.auto_destroyed]
        for result in enforced:
            self.monitoring.record_event("session_timeout_enforced", {
                "session_id": result.session_id,
                "machine_id": result.machine_id,
                "tier": result.tier,
            })
        return {"monitored": len(results), "enforced": [r.session_id for r in enforced]}

    async def _collect_metrics(self) -> dict[str, float]:
        sessions = await self.manager.store.list_active_or_creating()
        by_tier = Counter(session.tier for session in sessions)

        snapshot: dict[str, float] = {"active_sessions": len(sessions)}
        for tier in ContainerTier:
            snapshot[f"sessions_{tier.value}_tier"] = by_tier[tier]

        host = self.system_metrics.get_metrics()
        snapshot["memory_usage_percent"] = host.memory_percent
        snapshot["cpu_usage_percent"] = host.cpu_percent

        for name, value in snapshot.items():
            self.monitoring.record_metric(name, value)
        return snapshot
