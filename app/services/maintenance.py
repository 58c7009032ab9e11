"""
Scheduled maintenance for the in-process tiers.

Owned by the host process: started in the FastAPI lifespan and
cancelled on shutdown.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceJob:
    """A periodic sweep. The callable returns how many items it removed."""
    name: str
    interval_seconds: float
    run: Callable[[], int]


class MaintenanceScheduler:
    """Runs each job on its own cancellable asyncio task."""

    def __init__(self, jobs: Optional[List[MaintenanceJob]] = None):
        self.jobs = list(jobs or [])
        self._tasks: List[asyncio.Task] = []
        self._runs: Dict[str, int] = {job.name: 0 for job in self.jobs}

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def add_job(self, job: MaintenanceJob) -> None:
        self.jobs.append(job)
        self._runs.setdefault(job.name, 0)

    def run_job(self, job: MaintenanceJob) -> int:
        """Run one job now and log the result."""
        removed = job.run()
        self._runs[job.name] = self._runs.get(job.name, 0) + 1
        logger.info(
            f"Maintenance job {job.name} removed {removed} entries",
            extra={"extra_fields": {"event": "maintenance_run", "job": job.name, "removed": removed}}
        )
        return removed

    def run_all(self) -> Dict[str, int]:
        return {job.name: self.run_job(job) for job in self.jobs}

    async def _loop(self, job: MaintenanceJob):
        while True:
            await asyncio.sleep(job.interval_seconds)
            try:
                self.run_job(job)
            except Exception as e:
                logger.error(f"Maintenance job {job.name} failed: {e}", exc_info=True)

    async def start(self):
        """Start one background task per job."""
        if self.running:
            return
        self._tasks = [asyncio.create_task(self._loop(job), name=f"maintenance:{job.name}") for job in self.jobs]
        logger.info(f"Maintenance scheduler started with {len(self._tasks)} jobs")

    async def stop(self):
        """Cancel and await every task."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Maintenance scheduler stopped")

    def get_stats(self) -> Dict[str, object]:
        return {
            "running": self.running,
            "jobs": {job.name: job.interval_seconds for job in self.jobs},
            "runs": dict(self._runs),
        }
