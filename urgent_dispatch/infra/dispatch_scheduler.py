# urgent_dispatch/infra/dispatch_scheduler.py
"""
Dispatch schedulers: how ``dispatch(request_id, is_retry)`` gets run out of band.

- ``JobQueueDispatchScheduler``: durable, enqueues a job for the worker process
  (retries with backoff are owned by the queue).
- ``InProcessDispatchScheduler``: asyncio task in the current process, for
  single-process deployments and tests. Lost on restart.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from urgent_dispatch.infra.job_worker import JOB_DISPATCH_URGENT_REQUEST
from urgent_dispatch.infra.logging_config import get_logger
from urgent_dispatch.infra.pg_job_repo_async import AsyncPostgresJobRepository

logger = get_logger(__name__)

DispatchRunner = Callable[..., Awaitable[object]]


class JobQueueDispatchScheduler:
    def __init__(self, repo: AsyncPostgresJobRepository, *, max_attempts: int = 5):
        self.repo = repo
        self.max_attempts = max_attempts

    async def schedule_dispatch(self, request_id: str, *, is_retry: bool = False) -> None:
        job_id = await self.repo.enqueue(
            JOB_DISPATCH_URGENT_REQUEST,
            {"request_id": request_id, "is_retry": is_retry},
            priority=0 if is_retry else -1,
            max_attempts=self.max_attempts,
        )
        logger.debug(
            f"Dispatch queued (retry={is_retry})",
            extra={"request_id": request_id, "job_id": job_id},
        )


class InProcessDispatchScheduler:
    """
    Runs dispatches as tracked asyncio tasks.

    The runner is attached after construction because the orchestrator that
    owns ``dispatch`` itself needs this scheduler.
    """

    def __init__(self, runner: DispatchRunner | None = None):
        self._runner = runner
        self._tasks: set[asyncio.Task] = set()

    def attach(self, runner: DispatchRunner) -> None:
        self._runner = runner

    async def schedule_dispatch(self, request_id: str, *, is_retry: bool = False) -> None:
        if self._runner is None:
            raise RuntimeError("InProcessDispatchScheduler has no dispatch runner attached")

        task = asyncio.create_task(
            self._run(request_id, is_retry),
            name=f"dispatch:{request_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, request_id: str, is_retry: bool) -> None:
        try:
            await self._runner(request_id, is_retry=is_retry)
        except Exception as exc:
            logger.error(
                f"In-process dispatch failed (retry={is_retry}): {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled dispatch (including ones scheduled meanwhile)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
