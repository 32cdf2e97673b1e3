"""Periodic driver for the reconcilers.

One ``Scheduler`` owns every job. Only the worker configured as primary
starts the loops; other workers construct it and leave it idle.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

class ScheduledJob:
    """A reconciler run every interval seconds

    Args:
        name: Job name used in logs and status
        reconciler: Object with an async run_once() and a running flag
        interval: Seconds between the end of one run and the start of the next
        initial_delay: Seconds to wait before the first run
    """

    def __init__(self, name: str, reconciler, interval: float, initial_delay: float = 0.0):
        self.name = name
        self.reconciler = reconciler
        self.interval = interval
        self.initial_delay = initial_delay
        self.runs = 0
        self.failures = 0
        self.last_started: Optional[datetime] = None
        self.last_duration: Optional[float] = None
        self.last_error: Optional[str] = None

    async def run_once(self) -> None:
        self.last_started = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            await self.reconciler.run_once()
            self.last_error = None
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            logger.error(f"Job {self.name} failed: {e}")
        finally:
            self.runs += 1
            self.last_duration = time.monotonic() - started

    async def loop(self) -> None:
        if self.initial_delay:
            await asyncio.sleep(self.initial_delay)
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    def status(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'interval': self.interval,
            'running': bool(getattr(self.reconciler, 'running', False)),
            'runs': self.runs,
            'failures': self.failures,
            'last_started': self.last_started.isoformat() if self.last_started else None,
            'last_duration': self.last_duration,
            'last_error': self.last_error,
        }

class Scheduler:
    """Runs every registered job on its own cadence

    Args:
        primary: Whether this worker drives the reconcilers
    """

    def __init__(self, primary: bool = True):
        self.primary = primary
        self.jobs: List[ScheduledJob] = []
        self._tasks: List[asyncio.Task] = []

    def add(self, name: str, reconciler, interval: float, initial_delay: float = 0.0) -> ScheduledJob:
        if any(job.name == name for job in self.jobs):
            raise ValueError(f"Job {name} already registered")
        job = ScheduledJob(name, reconciler, interval, initial_delay)
        self.jobs.append(job)
        return job

    @property
    def started(self) -> bool:
        return bool(self._tasks)

    def start(self) -> bool:
        """Start the job loops. Returns False on a non-primary worker."""
        if not self.primary:
            logger.info("Not the primary worker, reconcilers will not run here")
            return False
        if self._tasks:
            return True

        for job in self.jobs:
            self._tasks.append(asyncio.create_task(job.loop(), name=f"job:{job.name}"))
            logger.info(f"Scheduled {job.name} every {job.interval}s")
        return True

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduler stopped")

    async def run_all_once(self) -> None:
        """Run every job once in registration order."""
        for job in self.jobs:
            await job.run_once()

    def status(self) -> Dict[str, Any]:
        return {
            'primary': self.primary,
            'started': self.started,
            'jobs': [job.status() for job in self.jobs],
        }

__all__ = ['Scheduler', 'ScheduledJob']
