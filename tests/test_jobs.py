"""Tests for control action tracking."""

import asyncio

import pytest

from botwatch.jobs import JobKind, JobManager, JobStatus
from botwatch.main import refused_restart
from botwatch.updater import UpdateResult, UpdateStatus, UpdateTrigger
from helpers import wait_until


def update_result(status):
    return UpdateResult(status=status, trigger=UpdateTrigger.MANUAL)


def busy(result):
    return result.status is UpdateStatus.BUSY


@pytest.mark.asyncio
async def test_completed_job_keeps_result():
    jobs = JobManager()

    async def check(trigger):
        await asyncio.sleep(0)
        return update_result(UpdateStatus.UNCHANGED)

    job = jobs.submit(JobKind.UPDATE, check, UpdateTrigger.MANUAL, requested_by="admin", skipped=busy)
    assert job.status is JobStatus.PENDING
    assert jobs.active(JobKind.UPDATE) is job
    await jobs.wait_all(timeout=5)

    assert job.status is JobStatus.COMPLETED
    assert jobs.active(JobKind.UPDATE) is None
    data = job.to_dict()
    assert data["kind"] == "update"
    assert data["requested_by"] == "admin"
    assert data["result"]["status"] == "unchanged"
    assert data["duration_seconds"] >= 0


@pytest.mark.asyncio
async def test_guarded_action_is_skipped():
    jobs = JobManager()

    async def check():
        return update_result(UpdateStatus.BUSY)

    job = jobs.submit(JobKind.UPDATE, check, skipped=busy)
    await jobs.wait_all(timeout=5)

    assert job.status is JobStatus.SKIPPED
    assert job.done


@pytest.mark.asyncio
async def test_failed_job_records_error():
    jobs = JobManager()

    async def explode():
        raise RuntimeError("worker binary missing")

    job = jobs.submit(JobKind.RESTART, explode)
    await jobs.wait_all(timeout=5)

    assert job.status is JobStatus.FAILED
    assert job.error == "worker binary missing"
    assert job.completed_at is not None
    assert jobs.list_jobs(JobStatus.FAILED) == [job]


@pytest.mark.asyncio
async def test_keyword_arguments_reach_the_action():
    jobs = JobManager()

    async def restart(detail="Worker restarted"):
        return detail

    job = jobs.submit(JobKind.RESTART, restart, detail="Started by hand")
    await jobs.wait_all(timeout=5)

    assert job.result == "Started by hand"
    assert jobs.get_job(job.id) is job


@pytest.mark.asyncio
async def test_history_is_bounded():
    jobs = JobManager(history=2)

    async def restart():
        return True

    for _ in range(4):
        jobs.submit(JobKind.RESTART, restart)
        await jobs.wait_all(timeout=5)
    latest = jobs.submit(JobKind.RESTART, restart)

    assert len(jobs.list_jobs()) == 3
    assert jobs.list_jobs()[0] is latest
    await jobs.wait_all(timeout=5)


@pytest.mark.asyncio
async def test_restart_refused_by_guard_is_skipped(make_supervisor):
    supervisor = make_supervisor(manual_restart_delay=0.3)
    await supervisor.start()
    jobs = JobManager()

    running = asyncio.create_task(supervisor.restart())
    await wait_until(lambda: supervisor.restarting)
    job = jobs.submit(JobKind.RESTART, supervisor.restart, skipped=refused_restart(supervisor))
    await jobs.wait_all(timeout=5)

    assert job.status is JobStatus.SKIPPED
    assert job.result is False
    assert await running is True
    assert supervisor.spawn_count == 2


@pytest.mark.asyncio
async def test_restart_with_failed_spawn_is_not_skipped(make_supervisor, tmp_path):
    supervisor = make_supervisor(working_dir=str(tmp_path / "missing"))
    jobs = JobManager()

    job = jobs.submit(JobKind.RESTART, supervisor.restart, skipped=refused_restart(supervisor))
    await jobs.wait_all(timeout=5)

    assert job.status is JobStatus.COMPLETED
    assert job.result is False
    assert supervisor.status().last_exit.error
