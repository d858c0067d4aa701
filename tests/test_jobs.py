import asyncio

from chartdeck.errors import ServiceError
from chartdeck.services.jobs import JobTracker


def test_job_moves_from_initiated_to_completed() -> None:
    tracker = JobTracker()

    async def work():
        await asyncio.sleep(0)
        return {"charts_refreshed": 2}

    async def _run():
        job = await tracker.submit(kind="refresh", owner_id="dashboard:1", workspace_id=1, work=work)
        finished = await tracker.wait(job.job_id, timeout=1)
        return job, finished

    job, finished = asyncio.run(_run())
    assert job.status == "initiated"
    assert finished.status == "completed"
    assert finished.result == {"charts_refreshed": 2}
    assert finished.started_at is not None
    assert finished.finished_at >= finished.started_at


def test_failed_work_marks_the_job_failed() -> None:
    tracker = JobTracker()

    async def service_failure():
        raise ServiceError(status_code=400, code="invalid_dataset", message="Dataset missing")

    async def crash():
        raise RuntimeError("boom")

    async def _run():
        first = await tracker.submit(kind="export", owner_id="chart:1", workspace_id=1, work=service_failure)
        second = await tracker.submit(kind="export", owner_id="chart:2", workspace_id=1, work=crash)
        return await tracker.wait(first.job_id, timeout=1), await tracker.wait(second.job_id, timeout=1)

    first, second = asyncio.run(_run())
    assert first.status == "failed"
    assert first.error == "Dataset missing"
    assert second.status == "failed"
    assert second.error == "Job execution failed"


def test_job_timeout() -> None:
    tracker = JobTracker(timeout_seconds=0.05)

    async def slow():
        await asyncio.sleep(1)
        return {}

    async def _run():
        job = await tracker.submit(kind="refresh", owner_id="chart:1", workspace_id=1, work=slow)
        return await tracker.wait(job.job_id, timeout=2)

    job = asyncio.run(_run())
    assert job.status == "failed"
    assert job.error == "Job timed out"


def test_cancel_and_workspace_isolation() -> None:
    tracker = JobTracker()

    async def slow():
        await asyncio.sleep(10)
        return {}

    async def _run():
        job = await tracker.submit(kind="refresh", owner_id="chart:1", workspace_id=1, work=slow)
        other_workspace = await tracker.get(job.job_id, 2)
        denied = await tracker.cancel(job.job_id, 2)
        cancelled = await tracker.cancel(job.job_id, 1)
        return other_workspace, denied, cancelled

    other_workspace, denied, cancelled = asyncio.run(_run())
    assert other_workspace is None
    assert denied is None
    assert cancelled.status == "failed"
    assert cancelled.error == "Job cancelled"


def test_finished_jobs_are_pruned_after_retention() -> None:
    tracker = JobTracker(retention_seconds=0)

    async def work():
        return {}

    async def _run():
        job = await tracker.submit(kind="refresh", owner_id="chart:1", workspace_id=1, work=work)
        await tracker.wait(job.job_id, timeout=1)
        await asyncio.sleep(0.01)
        removed = await tracker.prune()
        return removed, await tracker.get(job.job_id, 1)

    removed, job = asyncio.run(_run())
    assert removed == 1
    assert job is None
