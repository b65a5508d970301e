"""
Tracking for control actions started from the dashboard.

Restarts and manual update checks can take a while (a stubborn worker gets
`stop_timeout` seconds before it is killed, a pull can hang on the network),
so the control endpoints hand them to the JobManager and redirect straight
back. Each action is kept as a Job so the dashboard and /api/jobs can show
who asked for what and how it ended.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class JobKind(Enum):
    RESTART = "restart"
    UPDATE = "update"


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"  # turned away by a restart/update guard
    FAILED = "failed"


@dataclass
class Job:
    """One control action and its outcome."""

    id: str
    kind: JobKind
    requested_by: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def done(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.SKIPPED, JobStatus.FAILED)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "requested_by": self.requested_by,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": (
                (self.completed_at or datetime.now()) - self.started_at
            ).total_seconds()
            if self.started_at
            else None,
        }


class JobManager:
    """Runs control actions as asyncio tasks and keeps a short history."""

    def __init__(self, history: int = 20):
        self._jobs: dict[str, Job] = {}
        self._tasks: set[asyncio.Task] = set()
        self._history = history

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None) -> list[Job]:
        """List jobs newest first, optionally filtered by status."""
        jobs = list(self._jobs.values())
        if status:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def active(self, kind: JobKind) -> Optional[Job]:
        """The unfinished job of this kind, if any."""
        for job in self._jobs.values():
            if job.kind == kind and not job.done:
                return job
        return None

    def submit(
        self,
        kind: JobKind,
        coro_func: Callable,
        *args,
        requested_by: Optional[str] = None,
        skipped: Callable[[Any], bool] = None,
        **kwargs,
    ) -> Job:
        """
        Run `coro_func(*args, **kwargs)` in the background as a tracked job.

        `skipped(result)` decides whether the action was turned away (for
        example a restart refused because another one is running); such jobs
        end as SKIPPED instead of COMPLETED.
        """
        job = Job(id=str(uuid.uuid4())[:8], kind=kind, requested_by=requested_by)
        self._jobs[job.id] = job
        self._trim_history()
        who = f" by {requested_by}" if requested_by else ""
        logger.info(f"Job {job.id}: {kind.value} requested{who}")

        async def run():
            job.status = JobStatus.RUNNING
            job.started_at = datetime.now()
            try:
                result = await coro_func(*args, **kwargs)
            except Exception as e:
                job.error = str(e)
                job.status = JobStatus.FAILED
                logger.error(f"Job {job.id} ({kind.value}) failed: {e}")
            else:
                job.result = result.to_dict() if hasattr(result, "to_dict") else result
                if skipped is not None and skipped(result):
                    job.status = JobStatus.SKIPPED
                    logger.info(f"Job {job.id} ({kind.value}) skipped")
                else:
                    job.status = JobStatus.COMPLETED
                    logger.info(f"Job {job.id} ({kind.value}) completed")
            finally:
                job.completed_at = datetime.now()

        task = asyncio.get_running_loop().create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def wait_all(self, timeout: float = None):
        """Wait for unfinished jobs (used at shutdown)."""
        if self._tasks:
            await asyncio.wait(list(self._tasks), timeout=timeout)

    def _trim_history(self):
        """Forget the oldest finished jobs beyond the history size."""
        finished = [j for j in self._jobs.values() if j.done]
        if len(finished) > self._history:
            finished.sort(key=lambda j: j.completed_at or datetime.min)
            for job in finished[: len(finished) - self._history]:
                del self._jobs[job.id]
