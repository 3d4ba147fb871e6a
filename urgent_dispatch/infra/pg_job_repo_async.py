# urgent_dispatch/infra/pg_job_repo_async.py
"""
Jobs table access for the dispatch queue (asyncpg).

A job moves pending -> running -> completed, or back to pending with a
backoff after a failure until its attempts run out ('failed'). Claims use
FOR UPDATE SKIP LOCKED, so any number of worker processes can poll the table.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from urgent_dispatch.infra.db_resilience_async import safe_db_conn
from urgent_dispatch.infra.logging_config import get_logger
from urgent_dispatch.infra.metrics import inc_counter

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 2000


@dataclass
class Job:
    id: str
    job_type: str
    payload: dict[str, Any]
    status: str
    priority: int
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_at: datetime
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def request_id(self) -> str | None:
        """The urgent request a dispatch job works on."""
        return self.payload.get("request_id")


def _row_to_job(row) -> Job:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Job(
        id=str(row["id"]),
        job_type=row["job_type"],
        payload=payload,
        status=row["status"],
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error_message=row["error_message"],
        scheduled_at=row["scheduled_at"],
        created_at=row["created_at"],
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


def _affected(result: str | None) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 3``."""
    return int(result.split()[-1]) if result else 0


class AsyncPostgresJobRepository:
    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
    ) -> str:
        """
        Queue a job and return its id.

        Lower ``priority`` runs first: first dispatches of a fresh request use
        -1 so they overtake retries and maintenance work.
        """
        async with safe_db_conn() as conn:
            job_id = str(await conn.fetchval(
                """
                INSERT INTO jobs (job_type, payload, priority, max_attempts, scheduled_at)
                VALUES ($1, $2::jsonb, $3, $4, now() + make_interval(secs => $5))
                RETURNING id
                """,
                job_type,
                json.dumps(payload),
                priority,
                max_attempts,
                float(delay_seconds),
            ))

        extra = {"job_id": job_id}
        if payload.get("request_id"):
            extra["request_id"] = payload["request_id"]
        logger.debug(f"Queued {job_type} (priority={priority}, delay={delay_seconds}s)", extra=extra)
        inc_counter("jobs_enqueued", job_type=job_type)
        return job_id

    async def claim_batch(self, batch_size: int = 5) -> list[Job]:
        """Move up to ``batch_size`` due jobs to 'running' and return them, best priority first."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                WITH due AS (
                    SELECT id FROM jobs
                    WHERE status = 'pending'
                      AND scheduled_at <= now()
                    ORDER BY priority, created_at
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE jobs
                SET status = 'running', started_at = now()
                WHERE id IN (SELECT id FROM due)
                RETURNING *
                """,
                batch_size,
            )
        return sorted((_row_to_job(row) for row in rows), key=lambda j: (j.priority, j.created_at))

    async def complete(self, job_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE jobs SET status = 'completed', completed_at = now() WHERE id = $1",
                job_id,
            )

    async def fail(self, job_id: str, error_message: str, *, base_delay: float = 5.0) -> bool:
        """
        Count a failed attempt.

        The job goes back to pending after ``base_delay * 2^attempts`` seconds
        while it has attempts left. Returns True when this was the last
        attempt and the job is now permanently 'failed'.
        """
        async with safe_db_conn() as conn:
            status = await conn.fetchval(
                """
                UPDATE jobs
                SET attempts = attempts + 1,
                    error_message = $2,
                    status = CASE WHEN attempts + 1 < max_attempts THEN 'pending' ELSE 'failed' END,
                    scheduled_at = CASE
                      WHEN attempts + 1 < max_attempts
                        THEN now() + make_interval(secs => $3 * power(2, attempts))
                      ELSE scheduled_at
                    END,
                    completed_at = CASE WHEN attempts + 1 < max_attempts THEN NULL ELSE now() END
                WHERE id = $1
                RETURNING status
                """,
                job_id,
                error_message[:MAX_ERROR_LENGTH],
                base_delay,
            )
        return status == "failed"

    async def cleanup_finished(self, *, completed_ttl_days: int = 7, failed_ttl_days: int = 30) -> int:
        """Delete finished jobs past their retention. Failed ones are kept longer for inspection."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                DELETE FROM jobs
                WHERE (status = 'completed' AND completed_at < now() - make_interval(days => $1))
                   OR (status = 'failed' AND completed_at < now() - make_interval(days => $2))
                """,
                completed_ttl_days,
                failed_ttl_days,
            )
        count = _affected(result)
        if count:
            logger.info(f"Job cleanup: deleted {count} finished jobs")
        return count

    async def reset_stale_running(self, timeout_seconds: int = 300) -> int:
        """Requeue jobs left 'running' by a worker that died between claim and complete/fail."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE jobs
                SET status = 'pending', scheduled_at = now()
                WHERE status = 'running'
                  AND started_at < now() - make_interval(secs => $1)
                """,
                timeout_seconds,
            )
        count = _affected(result)
        if count:
            logger.warning(f"Requeued {count} jobs stuck in running for more than {timeout_seconds}s")
            inc_counter("jobs_stale_reset")
        return count
