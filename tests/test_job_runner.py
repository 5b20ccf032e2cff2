"""
Tests for job runners.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from bookstack.jobs.runner import (
    PROCESS_BATCH_JOB, ArqJobRunner, InProcessJobRunner, Job, JobStatus, parse_redis_url,
)


@pytest.mark.asyncio
async def test_submit_returns_before_the_job_runs():
    started = asyncio.Event()
    release = asyncio.Event()

    async def handler(batch_id):
        started.set()
        await release.wait()

    runner = InProcessJobRunner({"work": handler})
    job = await runner.submit(Job("work", ["b-1"]))

    assert job.status == JobStatus.QUEUED
    await started.wait()
    assert runner.get(job.id).status == JobStatus.RUNNING

    release.set()
    finished = await runner.wait(job.id)
    assert finished.status == JobStatus.SUCCEEDED
    assert finished.finished_at is not None


@pytest.mark.asyncio
async def test_failed_job_is_recorded():
    async def handler():
        raise RuntimeError("boom")

    runner = InProcessJobRunner({"work": handler})
    job = await runner.submit(Job("work"))
    await runner.drain()

    assert job.status == JobStatus.FAILED
    assert job.error == "RuntimeError: boom"
    assert job.to_dict()["status"] == "failed"


@pytest.mark.asyncio
async def test_unknown_job_name():
    with pytest.raises(ValueError):
        await InProcessJobRunner().submit(Job("missing"))


@pytest.mark.asyncio
async def test_shutdown_drains_running_jobs():
    done = []

    async def handler(n):
        await asyncio.sleep(0.001)
        done.append(n)

    runner = InProcessJobRunner()
    runner.register("work", handler)
    for n in range(3):
        await runner.submit(Job("work", [n]))
    await runner.shutdown()

    assert sorted(done) == [0, 1, 2]


@pytest.mark.asyncio
async def test_only_recent_finished_jobs_are_kept():
    async def handler(n):
        return n

    runner = InProcessJobRunner({"work": handler}, max_finished_jobs=2)
    jobs = [await runner.submit(Job("work", [n])) for n in range(5)]
    await runner.drain()

    assert set(runner.jobs) == {jobs[3].id, jobs[4].id}
    assert runner.get(jobs[0].id) is None
    assert jobs[0].status == JobStatus.SUCCEEDED


def test_parse_redis_url():
    settings = parse_redis_url("redis://:secret@cache.internal:6380/2")

    assert settings.host == "cache.internal"
    assert settings.port == 6380
    assert settings.password == "secret"
    assert settings.database == 2
    assert parse_redis_url(None).host == "localhost"


class TestArqJobRunner:
    """Jobs go to Redis under their own id."""

    @pytest.mark.asyncio
    async def test_submit_enqueues_by_name_and_id(self):
        runner = ArqJobRunner("redis://localhost:6379/0")
        redis = AsyncMock()
        runner._redis = redis

        job = await runner.submit(Job(PROCESS_BATCH_JOB, ["b-1"]))

        redis.enqueue_job.assert_awaited_once_with(PROCESS_BATCH_JOB, "b-1", _job_id=job.id)

    @pytest.mark.asyncio
    async def test_duplicate_job_id_is_not_an_error(self):
        runner = ArqJobRunner(None)
        runner._redis = AsyncMock()
        runner._redis.enqueue_job.return_value = None

        job = await runner.submit(Job(PROCESS_BATCH_JOB, ["b-1"]))

        assert job.status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_shutdown_closes_pool(self):
        runner = ArqJobRunner(None)
        redis = AsyncMock()
        runner._redis = redis

        await runner.shutdown()

        redis.close.assert_awaited_once()
        assert runner._redis is None
