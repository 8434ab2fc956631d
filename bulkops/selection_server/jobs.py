"""
Registry of running and finished bulk executions.

Asynchronous bulk actions run as asyncio tasks; callers get a result_id
immediately and poll for the BulkOperationResult, which is filled in live.

Invariants:
    - Every submitted execution is reachable by result_id until evicted
    - Only finished executions are evicted, oldest first
    - Results are process-local; a poll must reach the instance that
      accepted the job
    - A failing on_finished hook is logged; the result is still returned
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .errors import BulkJobNotFoundError
from .executor import BulkAction, BulkExecutor
from .resolver import ResolutionCursor
from .results import BulkOperationResult

logger = logging.getLogger(__name__)

FinishedHook = Callable[[BulkOperationResult], Awaitable[None]]


@dataclass
class BulkJob:
    """One execution tracked by the registry."""

    result: BulkOperationResult
    cancel_event: asyncio.Event
    task: asyncio.Task | None = None


class BulkJobRegistry:
    """Runs bulk executions and keeps their results for polling.

    Attributes:
        executor: Executor used for every job
        timeout_seconds: Soft timeout applied to each job (None = no limit)
        max_retained_jobs: Upper bound on tracked jobs
    """

    def __init__(
        self,
        executor: BulkExecutor,
        timeout_seconds: float | None = None,
        max_retained_jobs: int = 1000,
    ) -> None:
        self.executor = executor
        self.timeout_seconds = timeout_seconds
        self.max_retained_jobs = max_retained_jobs
        self._jobs: dict[str, BulkJob] = {}

    def _new_job(self, action_kind: str) -> BulkJob:
        result = BulkOperationResult(result_id=uuid.uuid4().hex, action_kind=action_kind)
        job = BulkJob(result=result, cancel_event=asyncio.Event())
        self._jobs[result.result_id] = job
        self._evict()
        return job

    async def _run(
        self,
        job: BulkJob,
        cursor: ResolutionCursor,
        action: BulkAction,
        on_finished: FinishedHook | None,
    ) -> BulkOperationResult:
        result = await self.executor.execute(
            cursor,
            action,
            result=job.result,
            cancel_event=job.cancel_event,
            timeout=self.timeout_seconds,
        )
        if on_finished is not None:
            # Actions are already applied, so the result is returned regardless
            try:
                await on_finished(result)
            except Exception as e:
                logger.error(
                    f"Bulk job finish hook failed: {e}",
                    exc_info=True,
                    extra={"result_id": result.result_id, "status": result.status.value},
                )
        return result

    async def run(
        self,
        cursor: ResolutionCursor,
        action: BulkAction,
        action_kind: str,
        on_finished: FinishedHook | None = None,
    ) -> BulkOperationResult:
        """Execute in the caller's task and return the final result."""
        job = self._new_job(action_kind)
        return await self._run(job, cursor, action, on_finished)

    def submit(
        self,
        cursor: ResolutionCursor,
        action: BulkAction,
        action_kind: str,
        on_finished: FinishedHook | None = None,
    ) -> BulkOperationResult:
        """Schedule an execution and return its (running) result."""
        job = self._new_job(action_kind)
        job.task = asyncio.create_task(self._run(job, cursor, action, on_finished))
        job.task.add_done_callback(self._log_failure)
        logger.info("Bulk job submitted", extra={"result_id": job.result.result_id, "action_kind": action_kind})
        return job.result

    def get(self, result_id: str) -> BulkOperationResult:
        """Current result for a job.

        Raises:
            BulkJobNotFoundError: If the ID is unknown or evicted
        """
        job = self._jobs.get(result_id)
        if job is None:
            raise BulkJobNotFoundError(result_id)
        return job.result

    def cancel(self, result_id: str) -> BulkOperationResult:
        """Request cooperative cancellation. Finished jobs are unaffected."""
        job = self._jobs.get(result_id)
        if job is None:
            raise BulkJobNotFoundError(result_id)
        job.cancel_event.set()
        return job.result

    async def wait(self, result_id: str, timeout: float | None = None) -> BulkOperationResult:
        """Wait for a submitted job to finish."""
        job = self._jobs.get(result_id)
        if job is None:
            raise BulkJobNotFoundError(result_id)
        if job.task is not None:
            await asyncio.wait_for(asyncio.shield(job.task), timeout=timeout)
        return job.result

    async def shutdown(self) -> None:
        """Cancel all running jobs and wait for them to stop."""
        tasks = []
        for job in self._jobs.values():
            if job.task is not None and not job.task.done():
                job.cancel_event.set()
                tasks.append(job.task)
        if tasks:
            logger.info(f"Waiting for {len(tasks)} bulk jobs to stop")
            await asyncio.gather(*tasks, return_exceptions=True)

    def _evict(self) -> None:
        excess = len(self._jobs) - self.max_retained_jobs
        if excess <= 0:
            return
        for result_id in [rid for rid, job in self._jobs.items() if job.result.status.is_final][:excess]:
            del self._jobs[result_id]

    @staticmethod
    def _log_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Bulk job failed: {exc}", exc_info=exc)

    def __len__(self) -> int:
        return len(self._jobs)
