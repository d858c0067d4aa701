from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from chartdeck.errors import ServiceError
from chartdeck.schemas import JobResponse

if TYPE_CHECKING:
    from chartdeck.services.aggregator import DashboardAggregator, DashboardSnapshot
    from chartdeck.services.chart_data import ChartDataService, ChartExecutionPlan

logger = logging.getLogger("uvicorn.error")

JobWork = Callable[[], Awaitable[dict[str, Any]]]

FINISHED_STATUSES = frozenset({"completed", "failed"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Job:
    job_id: str
    kind: str
    owner_id: str
    workspace_id: int
    created_by_id: int | None = None
    status: str = "initiated"
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def to_response(self) -> JobResponse:
        return JobResponse(
            job_id=self.job_id,
            kind=self.kind,
            owner_id=self.owner_id,
            status=self.status,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            result=self.result,
            error=self.error,
        )


class JobTracker:
    """Process-local refresh/export jobs driven by asyncio tasks.

    A job is ``initiated`` when submitted, ``processing`` once its task starts,
    and ends ``completed`` or ``failed`` when the work itself returns or raises.
    """

    def __init__(self, *, timeout_seconds: float = 300, retention_seconds: float = 3600) -> None:
        self._timeout_seconds = timeout_seconds
        self._retention_seconds = retention_seconds
        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    async def submit(
        self,
        *,
        kind: str,
        owner_id: str,
        workspace_id: int,
        work: JobWork,
        created_by_id: int | None = None,
    ) -> Job:
        await self.prune()
        job = Job(
            job_id=uuid.uuid4().hex,
            kind=kind,
            owner_id=owner_id,
            workspace_id=workspace_id,
            created_by_id=created_by_id,
        )
        async with self._lock:
            self._jobs[job.job_id] = job
            self._tasks[job.job_id] = asyncio.get_running_loop().create_task(self._run(job.job_id, work))
        self._log_transition(job)
        return replace(job)

    async def _transition(self, job_id: str, status: str, **changes: Any) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.finished:
                return None
            job.status = status
            for key, value in changes.items():
                setattr(job, key, value)
            snapshot = replace(job)
        self._log_transition(snapshot)
        return snapshot

    async def _run(self, job_id: str, work: JobWork) -> None:
        await self._transition(job_id, "processing", started_at=_utcnow())
        try:
            result = await asyncio.wait_for(work(), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            await self._fail(job_id, "Job timed out")
        except asyncio.CancelledError:
            await self._fail(job_id, "Job cancelled")
            raise
        except ServiceError as exc:
            await self._fail(job_id, exc.message)
        except Exception as exc:
            logger.exception("job.failed | %s", {"job_id": job_id, "error": str(exc)})
            await self._fail(job_id, "Job execution failed")
        else:
            await self._transition(job_id, "completed", finished_at=_utcnow(), result=result)
        finally:
            async with self._lock:
                self._tasks.pop(job_id, None)

    async def _fail(self, job_id: str, message: str) -> None:
        job = await self._transition(job_id, "failed", finished_at=_utcnow(), error=message)
        if job is not None:
            logger.warning("job.failed | %s", {"job_id": job_id, "kind": job.kind, "error": message})

    def _log_transition(self, job: Job) -> None:
        logger.info(
            "job.transition | %s",
            {"job_id": job.job_id, "kind": job.kind, "owner_id": job.owner_id, "status": job.status},
        )

    async def get(self, job_id: str, workspace_id: int) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.workspace_id != workspace_id:
                return None
            return replace(job)

    async def cancel(self, job_id: str, workspace_id: int) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.workspace_id != workspace_id:
                return None
            task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        # A task cancelled before its first step never reaches its own handlers.
        await self._fail(job_id, "Job cancelled")
        async with self._lock:
            self._tasks.pop(job_id, None)
        return await self.get(job_id, workspace_id)

    async def wait(self, job_id: str, timeout: float | None = None) -> Job | None:
        async with self._lock:
            task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        async with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    async def prune(self) -> int:
        cutoff = _utcnow() - timedelta(seconds=self._retention_seconds)
        async with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.finished and job.finished_at is not None and job.finished_at < cutoff
            ]
            for job_id in expired:
                self._jobs.pop(job_id, None)
        return len(expired)

    async def aclose(self) -> None:
        async with self._lock:
            tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)


def chart_refresh_work(chart_data: ChartDataService, plan: ChartExecutionPlan) -> JobWork:
    async def _work() -> dict[str, Any]:
        result = await chart_data.get_chart_data(plan, force_refresh=True)
        return {"charts_refreshed": 1, "refreshed_rows": result.row_count, "failed_charts": []}

    return _work


def dashboard_refresh_work(
    aggregator: DashboardAggregator,
    dashboard: DashboardSnapshot,
    plans: list[ChartExecutionPlan],
) -> JobWork:
    async def _work() -> dict[str, Any]:
        data = await aggregator.get_dashboard_data(dashboard, plans, force_refresh=True)
        return {
            "charts_refreshed": len(data.charts) - data.failed_count,
            "refreshed_rows": sum(slot.data.row_count for slot in data.charts if slot.data is not None),
            "failed_charts": [
                {"chart_id": slot.chart_id, **(slot.error or {})} for slot in data.charts if slot.status == "error"
            ],
        }

    return _work
