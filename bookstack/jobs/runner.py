"""
Job runners

A batch run is an explicit Job handed to a JobRunner; the HTTP request that
accepted the batch never owns it.

- InProcessJobRunner: asyncio tasks in the API process. Keeps a reference to
  every task and records its outcome on the Job.
- ArqJobRunner: enqueues "process_batch_job" on Redis for the arq worker
  (bookstack.jobs.worker).
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlparse

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from bookstack.core.utils import new_id, utcnow

logger = logging.getLogger(__name__)

PROCESS_BATCH_JOB = "process_batch_job"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class Job:
    name: str
    args: List[Any] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    status: JobStatus = JobStatus.QUEUED
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "args": self.args,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


JobHandler = Callable[..., Awaitable[Any]]


class JobRunner(ABC):
    @abstractmethod
    async def submit(self, job: Job) -> Job:
        """Hand the job off; returns once it is queued, never after it runs."""

    async def shutdown(self) -> None:
        """Stop accepting work and release resources."""


class InProcessJobRunner(JobRunner):
    """
    Runs jobs as asyncio tasks of the current event loop.

    Handlers are registered by job name. Tasks are kept until they finish so
    they cannot be garbage collected mid-run. Only the most recent
    max_finished_jobs finished jobs stay queryable.
    """

    def __init__(self, handlers: Optional[Dict[str, JobHandler]] = None, max_finished_jobs: int = 1000):
        self.handlers: Dict[str, JobHandler] = dict(handlers or {})
        self.max_finished_jobs = max_finished_jobs
        self.jobs: Dict[str, Job] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._finished: deque = deque()

    def register(self, name: str, handler: JobHandler) -> None:
        self.handlers[name] = handler

    async def submit(self, job: Job) -> Job:
        handler = self.handlers.get(job.name)
        if handler is None:
            raise ValueError(f"No handler registered for job '{job.name}'")
        self.jobs[job.id] = job
        self._tasks[job.id] = asyncio.create_task(self._run(job, handler), name=f"{job.name}:{job.id}")
        logger.info(f"[JobRunner] Queued {job.name} {job.id} args={job.args}")
        return job

    async def _run(self, job: Job, handler: JobHandler) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = utcnow()
        try:
            await handler(*job.args)
            job.status = JobStatus.SUCCEEDED
        except asyncio.CancelledError:
            job.status = JobStatus.FAILED
            job.error = "cancelled"
            raise
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = f"{type(e).__name__}: {e}"
            logger.exception(f"[JobRunner] {job.name} {job.id} failed")
        finally:
            job.finished_at = utcnow()
            self._tasks.pop(job.id, None)
            self._forget_old_jobs(job.id)
        logger.info(f"[JobRunner] {job.name} {job.id} finished: {job.status.value}")

    def _forget_old_jobs(self, finished_id: str) -> None:
        self._finished.append(finished_id)
        while len(self._finished) > self.max_finished_jobs:
            self.jobs.pop(self._finished.popleft(), None)

    def get(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)

    async def wait(self, job_id: str) -> Optional[Job]:
        """Block until the job finishes; None for an unknown id."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self.jobs.get(job_id)

    async def drain(self) -> None:
        """Wait for every running job, including ones submitted while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        if self._tasks:
            logger.info(f"[JobRunner] Waiting for {len(self._tasks)} running job(s)")
        await self.drain()


def parse_redis_url(url: Optional[str]) -> RedisSettings:
    """redis://[:password@]host:port/db -> arq RedisSettings."""
    if not url:
        return RedisSettings()
    parsed = urlparse(url)
    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        password=parsed.password,
        database=int(parsed.path.lstrip("/") or 0) if parsed.path else 0,
    )


class ArqJobRunner(JobRunner):
    """Enqueues jobs on Redis; the arq worker runs them."""

    def __init__(self, redis_url: Optional[str]):
        self.redis_settings = parse_redis_url(redis_url)
        self._redis: Optional[ArqRedis] = None

    async def _pool(self) -> ArqRedis:
        if self._redis is None:
            self._redis = await create_pool(self.redis_settings)
        return self._redis

    async def submit(self, job: Job) -> Job:
        redis = await self._pool()
        queued = await redis.enqueue_job(job.name, *job.args, _job_id=job.id)
        if queued is None:
            # arq refuses a job id it has already seen
            logger.warning(f"[JobRunner] {job.name} {job.id} already queued")
        else:
            logger.info(f"[JobRunner] Enqueued {job.name} {job.id} on arq")
        return job

    async def shutdown(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None
