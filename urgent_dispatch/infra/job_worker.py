# urgent_dispatch/infra/job_worker.py
"""
Async job worker with handler dispatch and periodic maintenance.

Polls the jobs table, claims pending jobs, and routes them to registered
handlers. Periodic tasks (candidate expiry sweep, cache cleanup, stale job
reset) run every N loops.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from urgent_dispatch.infra.logging_config import get_logger
from urgent_dispatch.infra.metrics import inc_counter
from urgent_dispatch.infra.pg_job_repo_async import AsyncPostgresJobRepository, Job

logger = get_logger(__name__)

JOB_DISPATCH_URGENT_REQUEST = "dispatch_urgent_request"


# ---------------------------------------------------------------------------
# Job handlers
# ---------------------------------------------------------------------------

def make_dispatch_handler(orchestrator) -> Callable[[Job], Awaitable[None]]:
    """Handler for ``dispatch_urgent_request`` jobs bound to an orchestrator."""

    async def handle_dispatch_urgent_request(job: Job) -> None:
        request_id = job.payload["request_id"]
        is_retry = bool(job.payload.get("is_retry", False))
        notified = await orchestrator.dispatch(request_id, is_retry=is_retry)
        logger.info(
            f"Dispatch job done: {len(notified)} candidates notified, retry={is_retry}",
            extra={"job_id": job.id, "request_id": request_id},
        )

    return handle_dispatch_urgent_request


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class JobWorker:
    """
    Polls the jobs table and executes handlers.

    Usage:
        worker = JobWorker(repo)
        worker.register("dispatch_urgent_request", make_dispatch_handler(orchestrator))
        worker.every(30, "candidate_expiry", orchestrator.expire_unresponsive_candidates)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        repo: AsyncPostgresJobRepository,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 5,
        base_retry_delay: float = 5.0,
        stale_timeout: int = 300,
    ):
        self._repo = repo
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._base_retry_delay = base_retry_delay
        self._stale_timeout = stale_timeout
        self._handlers: dict[str, Callable[[Job], Awaitable[None]]] = {}
        self._periodic: list[tuple[int, str, Callable[[], Awaitable[object]]]] = []
        self._task: asyncio.Task | None = None
        self._running = False
        self._loop_count = 0

        self.every(60, "stale_job_reset", lambda: self._repo.reset_stale_running(self._stale_timeout))

    def register(self, job_type: str, handler: Callable[[Job], Awaitable[None]]) -> None:
        """Register a handler function for a job type."""
        self._handlers[job_type] = handler

    def every(self, loops: int, name: str, task: Callable[[], Awaitable[object]]) -> None:
        """Run ``task`` once every ``loops`` poll iterations. Failures are logged, never fatal."""
        if loops <= 0:
            return
        self._periodic.append((loops, name, task))

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="job_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Job worker started: poll={self._poll_interval}s, "
            f"batch={self._batch_size}, handlers={list(self._handlers.keys())}, "
            f"periodic={[name for _, name, _ in self._periodic]}",
        )

    async def stop(self) -> None:
        """Stop polling and cancel the loop task."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job worker stopped")

    async def _run_periodic(self) -> None:
        for loops, name, task in self._periodic:
            if self._loop_count % loops != 0:
                continue
            try:
                await task()
            except Exception as exc:
                logger.warning(f"Periodic task {name} failed: {exc}")
                inc_counter("job_worker_periodic_errors", task=name)

    async def _loop(self) -> None:
        while self._running:
            try:
                self._loop_count += 1
                await self._run_periodic()

                jobs = await self._repo.claim_batch(self._batch_size)

                if jobs:
                    await asyncio.gather(*(self._execute(job) for job in jobs), return_exceptions=True)
                    await asyncio.sleep(0.1)
                else:
                    await asyncio.sleep(self._poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Job worker loop error: {exc}", exc_info=True)
                inc_counter("job_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)

    async def _execute(self, job: Job) -> None:
        """Execute a single job via its registered handler."""
        handler = self._handlers.get(job.job_type)
        if handler is None:
            error = f"No handler registered for job_type={job.job_type}"
            logger.error(error, extra={"job_id": job.id})
            await self._repo.fail(job.id, error, base_delay=self._base_retry_delay)
            inc_counter("jobs_unknown_type")
            return

        try:
            await handler(job)
            await self._repo.complete(job.id)
            inc_counter("jobs_completed", job_type=job.job_type)
            logger.info(
                f"Job completed: id={job.id[:8]}, type={job.job_type}, attempt={job.attempts + 1}",
                extra={"job_id": job.id},
            )
        except Exception as exc:
            error_msg = f"{exc.__class__.__name__}: {exc}"[:500]
            exhausted = await self._repo.fail(job.id, error_msg, base_delay=self._base_retry_delay)
            inc_counter("jobs_failed_attempt", job_type=job.job_type)
            extra = {"job_id": job.id}
            if job.request_id:
                extra["request_id"] = job.request_id
            if exhausted:
                # The request stays pending until another dispatch is scheduled
                inc_counter("jobs_exhausted", job_type=job.job_type)
                logger.error(
                    f"Job gave up after {job.attempts + 1} attempts: type={job.job_type}, error={error_msg[:200]}",
                    extra=extra,
                )
            else:
                logger.warning(
                    f"Job failed: id={job.id[:8]}, type={job.job_type}, "
                    f"attempt={job.attempts + 1}, error={error_msg[:100]}",
                    extra=extra,
                )

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Job worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
