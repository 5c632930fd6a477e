"""
Background maintenance for the memory store.

Four periodic jobs run as independent asyncio tasks:

- expiry_sweep: purge entries past their expiry
- importance_decay: decay importance once per elapsed interval
- prune: drop low-importance entries and enforce the soft cap
- compaction: rebuild the vector index when tombstones pile up

A failing tick is logged and the job keeps its schedule.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import structlog

from memory_engine.config import Settings
from memory_engine.core.memory import MemoryStore
from memory_engine.utils.latency import track_latency
from memory_engine.utils.logging import LogContext

logger = structlog.get_logger(__name__)

JOB_NAMES = ("expiry_sweep", "importance_decay", "prune", "compaction")


@dataclass
class JobState:
    """Bookkeeping for one periodic job."""

    name: str
    interval_seconds: float
    runs: int = 0
    failures: int = 0
    running: bool = False
    last_run_at: float | None = None
    last_result: Any = None
    last_error: str | None = None
    task: asyncio.Task | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "failures": self.failures,
            "running": self.running,
            "last_run_at": self.last_run_at,
            "last_result": self.last_result,
            "last_error": self.last_error,
        }


class MaintenanceScheduler:
    """Runs the periodic maintenance jobs against one MemoryStore."""

    def __init__(self, store: MemoryStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._jobs: dict[str, JobState] = {
            "expiry_sweep": JobState("expiry_sweep", settings.expiry_sweep_interval_seconds),
            "importance_decay": JobState("importance_decay", settings.decay_interval_seconds),
            "prune": JobState("prune", settings.prune_interval_seconds),
            "compaction": JobState("compaction", settings.compaction_interval_seconds),
        }
        self._handlers: dict[str, Callable[[], Awaitable[Any]]] = {
            "expiry_sweep": self._expiry_sweep,
            "importance_decay": self._importance_decay,
            "prune": self._prune,
            "compaction": self._compaction,
        }
        self._last_decay = time.monotonic()
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    def start(self) -> None:
        """Start one task per job. Idempotent."""
        if self._started:
            return
        self._started = True
        for job in self._jobs.values():
            job.task = asyncio.create_task(self._loop(job), name=f"maintenance-{job.name}")
        logger.info(
            "maintenance_started",
            jobs={name: job.interval_seconds for name, job in self._jobs.items()},
        )

    async def stop(self) -> None:
        """Cancel the job tasks and wait for them to finish."""
        if not self._started:
            return
        self._started = False
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for job in self._jobs.values():
            job.task = None
        logger.info("maintenance_stopped")

    async def _loop(self, job: JobState) -> None:
        while True:
            await asyncio.sleep(job.interval_seconds)
            await self.run_job(job.name, raise_errors=False)

    async def run_job(self, name: str, raise_errors: bool = True) -> Any:
        """
        Run one job now.

        Args:
            name: One of JOB_NAMES
            raise_errors: Re-raise a failure after recording it

        Returns:
            The job's result, or None if the job was skipped or failed

        Raises:
            KeyError: If the job name is unknown
            Exception: Whatever the job raised, when raise_errors is set
        """
        job = self._jobs[name]
        if job.running:
            logger.info("maintenance_job_skipped", job=name, reason="already_running")
            return None

        job.running = True
        try:
            with LogContext(job=name):
                async with track_latency(f"maintenance_{name}"):
                    result = await self._handlers[name]()
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            logger.exception("maintenance_job_failed", job=name)
            if raise_errors:
                raise
            return None
        finally:
            job.running = False
            job.runs += 1
            job.last_run_at = time.time()

        job.last_result = result
        job.last_error = None
        logger.info("maintenance_job_completed", job=name, result=result)
        return result

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._started,
            "jobs": [job.to_dict() for job in self._jobs.values()],
        }

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def _expiry_sweep(self) -> int:
        return await self.store.sweep_expired()

    async def _importance_decay(self) -> int:
        now = time.monotonic()
        interval = self._jobs["importance_decay"].interval_seconds
        intervals = max(1, math.floor((now - self._last_decay) / interval))
        self._last_decay = now
        return await self.store.decay_importance(intervals)

    async def _prune(self) -> int:
        return await self.store.prune()

    async def _compaction(self) -> bool:
        return await self.store.compact()
