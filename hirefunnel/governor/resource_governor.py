"""
Memory-pressure based admission control.

The governor samples system memory on a fixed interval and classifies
each sample into one of four bands::

    normal < warning (70%) < critical (85%) < cleanup (90%)

Handlers are edge-triggered: they run once when a sample rises into a
higher band and only run again after memory has dropped below that band
and crossed it again.

* warning  – logged.
* critical – ``gc.collect()`` and a :class:`ThresholdEvent` for subscribers.
* cleanup  – as critical, plus every registered cleanup callback in
  registration order.  A failing callback is logged and the rest still run.

Admission is advisory: :meth:`ResourceGovernor.can_start_new_job` reports
whether another job fits under ``max_concurrent_jobs`` and callers wait
(:meth:`ResourceGovernor.wait_for_admission`) instead of failing.
"""

from __future__ import annotations

import asyncio
import contextlib
import gc
import inspect
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

import psutil

from ..errors import ResourceExhaustedError
from ..models.schema import utcnow

logger = logging.getLogger(__name__)

MB = 1024 * 1024

LEVEL_NORMAL = "normal"
LEVEL_WARNING = "warning"
LEVEL_CRITICAL = "critical"
LEVEL_CLEANUP = "cleanup"
LEVELS = (LEVEL_NORMAL, LEVEL_WARNING, LEVEL_CRITICAL, LEVEL_CLEANUP)

Callback = Callable[..., Union[None, Awaitable[None]]]


@dataclass
class MemorySnapshot:
    used: int
    total: int
    free: int
    percentage: float
    rss: int = 0
    vms: int = 0
    taken_at: datetime = field(default_factory=utcnow)


@dataclass
class GovernorConfig:
    warning_threshold: float = 70.0
    critical_threshold: float = 85.0
    cleanup_threshold: float = 90.0
    monitoring_interval: float = 30.0
    history_size: int = 100
    max_memory_per_job: int = 100 * MB
    memory_per_batch_item: int = 10 * MB
    job_memory_fraction: float = 0.6
    batch_memory_fraction: float = 0.4
    max_file_size: int = 50 * MB
    trend_window: int = 5
    trend_delta: float = 5.0
    admission_poll_interval: float = 0.5


@dataclass
class ProcessingLimits:
    max_concurrent_jobs: int
    max_batch_size: int
    max_file_size: int
    max_memory_per_job: int


@dataclass
class ActiveJob:
    started_at: float
    memory_at_start: int


@dataclass
class JobUsage:
    job_id: str
    duration: float
    memory_delta: int


@dataclass
class ThresholdEvent:
    level: str
    snapshot: MemorySnapshot


def psutil_sampler() -> MemorySnapshot:
    """Sample system memory plus this process's resident/virtual size."""
    vm = psutil.virtual_memory()
    process = psutil.Process().memory_info()
    used = vm.total - vm.available
    return MemorySnapshot(
        used=used,
        total=vm.total,
        free=vm.available,
        percentage=(used / vm.total) * 100 if vm.total else 0.0,
        rss=process.rss,
        vms=process.vms,
    )


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


class ResourceGovernor:
    """Tracks memory pressure and the set of active jobs."""

    def __init__(
        self,
        config: Optional[GovernorConfig] = None,
        sampler: Optional[Callable[[], MemorySnapshot]] = None,
    ) -> None:
        self.config = config or GovernorConfig()
        self.sampler = sampler or psutil_sampler
        self._history: Deque[MemorySnapshot] = deque(maxlen=self.config.history_size)
        self._active_jobs: Dict[str, ActiveJob] = {}
        # Insertion-ordered; dict keys keep registration order and dedupe.
        self._cleanup_callbacks: Dict[Callback, None] = {}
        self._subscribers: List[Callback] = []
        self._level = LEVEL_NORMAL
        self._task: Optional[asyncio.Task] = None
        self.limits = ProcessingLimits(
            max_concurrent_jobs=1,
            max_batch_size=10,
            max_file_size=self.config.max_file_size,
            max_memory_per_job=self.config.max_memory_per_job,
        )
        self.recalculate_limits()

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    @property
    def level(self) -> str:
        return self._level

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start periodic sampling on the running event loop."""
        if self.is_monitoring:
            return
        self._task = asyncio.get_running_loop().create_task(self._monitor())
        logger.info(
            "Memory monitoring started (interval=%ss, thresholds=%s/%s/%s, limits=%s)",
            self.config.monitoring_interval,
            self.config.warning_threshold,
            self.config.critical_threshold,
            self.config.cleanup_threshold,
            asdict(self.limits),
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Memory monitoring stopped")

    async def _monitor(self) -> None:
        while True:
            try:
                await self.check_memory()
            except Exception:  # noqa: BLE001
                logger.exception("Memory check failed")
            await asyncio.sleep(self.config.monitoring_interval)

    def get_memory_stats(self) -> MemorySnapshot:
        return self.sampler()

    def classify(self, percentage: float) -> str:
        if percentage >= self.config.cleanup_threshold:
            return LEVEL_CLEANUP
        if percentage >= self.config.critical_threshold:
            return LEVEL_CRITICAL
        if percentage >= self.config.warning_threshold:
            return LEVEL_WARNING
        return LEVEL_NORMAL

    async def check_memory(self) -> MemorySnapshot:
        """Take one sample, record it and run handlers for a new crossing."""
        snapshot = self.sampler()
        self._history.append(snapshot)
        level = self.classify(snapshot.percentage)
        previous, self._level = self._level, level
        if LEVELS.index(level) > LEVELS.index(previous):
            await self._handle_crossing(level, snapshot)
        elif level != previous:
            logger.info("Memory pressure eased to %s (%.1f%%)", level, snapshot.percentage)
        return snapshot

    async def _handle_crossing(self, level: str, snapshot: MemorySnapshot) -> None:
        if level == LEVEL_WARNING:
            logger.warning(
                "Memory usage warning: %.1f%% (threshold %s%%, rss=%d)",
                snapshot.percentage, self.config.warning_threshold, snapshot.rss,
            )
            return
        if level == LEVEL_CRITICAL:
            logger.error(
                "High memory usage detected: %.1f%% (threshold %s%%, rss=%d)",
                snapshot.percentage, self.config.critical_threshold, snapshot.rss,
            )
            self.force_garbage_collection()
        else:
            logger.error(
                "Critical memory usage - forcing cleanup: %.1f%% (threshold %s%%, rss=%d)",
                snapshot.percentage, self.config.cleanup_threshold, snapshot.rss,
            )
            self.force_garbage_collection()
            await self.execute_cleanup_callbacks()
        await self._notify(ThresholdEvent(level=level, snapshot=snapshot))

    @staticmethod
    def force_garbage_collection() -> int:
        collected = gc.collect()
        logger.info("Forced garbage collection completed (%d objects collected)", collected)
        return collected

    # ------------------------------------------------------------------
    # Subscribers and cleanup callbacks
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callback) -> Callable[[], None]:
        """Receive a :class:`ThresholdEvent` on every critical/cleanup crossing."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def _notify(self, event: ThresholdEvent) -> None:
        for callback in list(self._subscribers):
            try:
                await _maybe_await(callback(event))
            except Exception:  # noqa: BLE001
                logger.exception("Threshold subscriber failed")

    def register_cleanup_callback(self, callback: Callback) -> None:
        self._cleanup_callbacks[callback] = None

    def unregister_cleanup_callback(self, callback: Callback) -> None:
        self._cleanup_callbacks.pop(callback, None)

    async def execute_cleanup_callbacks(self) -> int:
        """Run every cleanup callback in registration order; return failures."""
        failures = 0
        callbacks = list(self._cleanup_callbacks)
        for callback in callbacks:
            try:
                await _maybe_await(callback())
            except Exception:  # noqa: BLE001
                failures += 1
                logger.exception("Cleanup callback failed")
        logger.info("Executed %d cleanup callbacks (%d failed)", len(callbacks), failures)
        return failures

    # ------------------------------------------------------------------
    # Limits and admission
    # ------------------------------------------------------------------

    def recalculate_limits(self) -> ProcessingLimits:
        """Derive job and batch limits from total system memory."""
        total = self.sampler().total
        self.limits.max_concurrent_jobs = max(
            1, int(total * self.config.job_memory_fraction // self.limits.max_memory_per_job)
        )
        self.limits.max_batch_size = max(
            10, int(total * self.config.batch_memory_fraction // self.config.memory_per_batch_item)
        )
        return self.get_processing_limits()

    def get_processing_limits(self) -> ProcessingLimits:
        return ProcessingLimits(**asdict(self.limits))

    def update_processing_limits(self, **changes: int) -> ProcessingLimits:
        unknown = set(changes) - set(asdict(self.limits))
        if unknown:
            raise ValueError(f"Unknown processing limits: {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            setattr(self.limits, name, value)
        logger.info("Processing limits updated: %s", asdict(self.limits))
        return self.get_processing_limits()

    def is_file_size_allowed(self, size: int) -> bool:
        return size <= self.limits.max_file_size

    def is_batch_size_allowed(self, size: int) -> bool:
        return size <= self.limits.max_batch_size

    def can_start_new_job(self) -> bool:
        return len(self._active_jobs) < self.limits.max_concurrent_jobs

    async def wait_for_admission(self, timeout: Optional[float] = None) -> None:
        """Poll until a job slot is free.

        Raises :class:`ResourceExhaustedError` only when ``timeout``
        seconds pass without a free slot.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self.can_start_new_job():
            if deadline is not None and loop.time() >= deadline:
                raise ResourceExhaustedError(
                    f"No job slot freed within {timeout}s "
                    f"({len(self._active_jobs)}/{self.limits.max_concurrent_jobs} active)"
                )
            await asyncio.sleep(self.config.admission_poll_interval)

    def register_job(self, job_id: str) -> None:
        rss = self.sampler().rss
        self._active_jobs[job_id] = ActiveJob(started_at=time.monotonic(), memory_at_start=rss)
        logger.debug("Job registered: %s (active=%d, rss=%d)", job_id, len(self._active_jobs), rss)

    def unregister_job(self, job_id: str) -> Optional[JobUsage]:
        job = self._active_jobs.pop(job_id, None)
        if job is None:
            return None
        usage = JobUsage(
            job_id=job_id,
            duration=time.monotonic() - job.started_at,
            memory_delta=self.sampler().rss - job.memory_at_start,
        )
        logger.debug(
            "Job unregistered: %s (duration=%.2fs, memory_delta=%d, active=%d)",
            job_id, usage.duration, usage.memory_delta, len(self._active_jobs),
        )
        return usage

    def get_active_jobs(self) -> Dict[str, ActiveJob]:
        return dict(self._active_jobs)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_memory_history(self) -> List[MemorySnapshot]:
        return list(self._history)

    def get_memory_trend(self) -> str:
        window = self.config.trend_window
        if len(self._history) < window:
            return "stable"
        recent = list(self._history)[-window:]
        diff = recent[-1].percentage - recent[0].percentage
        if diff > self.config.trend_delta:
            return "increasing"
        if diff < -self.config.trend_delta:
            return "decreasing"
        return "stable"

    def health_check(self) -> Dict[str, object]:
        stats = self.get_memory_stats()
        return {
            "healthy": stats.percentage < self.config.critical_threshold,
            "details": {
                "memory_stats": asdict(stats),
                "memory_trend": self.get_memory_trend(),
                "level": self._level,
                "active_jobs": len(self._active_jobs),
                "processing_limits": asdict(self.limits),
                "thresholds": {
                    "warning": self.config.warning_threshold,
                    "critical": self.config.critical_threshold,
                    "cleanup": self.config.cleanup_threshold,
                },
                "history_size": len(self._history),
            },
        }

    async def shutdown(self) -> None:
        logger.info("Shutting down resource governor")
        await self.stop()
        await self.execute_cleanup_callbacks()
        self._active_jobs.clear()
        self._history.clear()
        self._cleanup_callbacks.clear()
        self._subscribers.clear()
