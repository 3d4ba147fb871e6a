# urgent_dispatch/infra/pg_urgent_repo_async.py
"""
Async PostgreSQL store for urgent requests and their audit trail (asyncpg).

Concurrency contract:
- every write transaction that touches candidates first locks the parent
  request row (UPDATE or SELECT ... FOR UPDATE), so accept (with its
  cascade) and reject on the same request are serialized and never deadlock;
- "responded" only flips through ``WHERE responded = false`` and status only
  through ``WHERE status = ANY(...)``, so a lost race updates zero rows.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from urgent_dispatch.core.domain import (
    Assignment,
    AssignmentStatus,
    Candidate,
    Rejection,
    RequestStatus,
    StatsFilter,
    TrackingEntry,
    UrgentRequest,
)
from urgent_dispatch.core.geo import BoundingBox
from urgent_dispatch.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from urgent_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


class _ConditionFailed(Exception):
    """Raised inside a transaction to roll it back when a guard matches no row."""


def like_pattern(value: str) -> str:
    """Case-insensitive substring pattern with LIKE wildcards escaped."""
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def is_request_id(value: object) -> bool:
    """Request ids are UUIDs; anything else cannot match a row and would make asyncpg raise DataError."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _row_to_request(row) -> UrgentRequest:
    return UrgentRequest(
        id=str(row["id"]),
        client_id=row["client_id"],
        description=row["description"],
        latitude=float(row["latitude"]),
        longitude=float(row["longitude"]),
        radius_km=float(row["radius_km"]),
        status=RequestStatus(row["status"]),
        price_estimate=float(row["price_estimate"]),
        service_id=row["service_id"],
        service_category=row["service_category"],
        assigned_professional_id=row["assigned_professional_id"],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
    )


def _row_to_candidate(row) -> Candidate:
    return Candidate(
        id=str(row["id"]),
        request_id=str(row["request_id"]),
        professional_id=row["professional_id"],
        distance_km=float(row["distance_km"]),
        responded=row["responded"],
        accepted=row["accepted"],
        created_at=row["created_at"],
        notified_at=row["notified_at"],
    )


def _row_to_assignment(row) -> Assignment:
    return Assignment(
        id=str(row["id"]),
        request_id=str(row["request_id"]),
        professional_id=row["professional_id"],
        status=AssignmentStatus(row["status"]),
        assigned_at=row["assigned_at"],
    )


def _row_to_rejection(row) -> Rejection:
    return Rejection(
        id=str(row["id"]),
        request_id=str(row["request_id"]),
        professional_id=row["professional_id"],
        reason=row["reason"],
        created_at=row["created_at"],
    )


def _row_to_tracking(row) -> TrackingEntry:
    return TrackingEntry(
        id=str(row["id"]),
        request_id=str(row["request_id"]),
        previous_status=row["previous_status"],
        new_status=row["new_status"],
        notes=row["notes"],
        changed_by=row["changed_by"],
        created_at=row["created_at"],
    )


class AsyncPostgresUrgentRequestStore:
    """Requests, candidates, assignments, rejections and tracking in PostgreSQL."""

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def create_request(self, request: UrgentRequest) -> UrgentRequest:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO urgent_requests (
                  id, client_id, service_id, description, latitude, longitude,
                  radius_km, service_category, status, price_estimate, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, COALESCE($11, now()))
                RETURNING *
                """,
                request.id,
                request.client_id,
                request.service_id,
                request.description,
                request.latitude,
                request.longitude,
                request.radius_km,
                request.service_category,
                RequestStatus(request.status).value,
                request.price_estimate,
                request.created_at,
            )
            return _row_to_request(row)

    @retry_on_transient_error(max_retries=2)
    async def get_request(self, request_id: str) -> Optional[UrgentRequest]:
        if not is_request_id(request_id):
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM urgent_requests WHERE id = $1", request_id)
            return _row_to_request(row) if row else None

    async def count_requests_since(self, client_id: str, since: datetime) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                "SELECT count(*)::int FROM urgent_requests WHERE client_id = $1 AND created_at >= $2",
                client_id,
                since,
            )

    async def update_status(
        self,
        request_id: str,
        *,
        expected: Iterable[RequestStatus],
        new_status: RequestStatus,
        completed_at: Optional[datetime] = None,
    ) -> Optional[UrgentRequest]:
        """Conditional status change; the assignment (if any) follows completion/cancellation."""
        if not is_request_id(request_id):
            return None
        expected_values = [RequestStatus(s).value for s in expected]
        new_value = RequestStatus(new_status).value

        async with safe_db_conn(autocommit=False) as conn:
            row = await conn.fetchrow(
                """
                UPDATE urgent_requests
                SET status = $2,
                    completed_at = COALESCE($3, completed_at),
                    updated_at = now()
                WHERE id = $1
                  AND status = ANY($4::text[])
                RETURNING *
                """,
                request_id,
                new_value,
                completed_at,
                expected_values,
            )
            if row is None:
                return None

            if new_status in (RequestStatus.COMPLETED, RequestStatus.CANCELLED):
                assignment_status = (
                    AssignmentStatus.COMPLETED if new_status == RequestStatus.COMPLETED
                    else AssignmentStatus.CANCELLED
                )
                await conn.execute(
                    """
                    UPDATE urgent_assignments
                    SET status = $2, completed_at = $3
                    WHERE request_id = $1 AND status = 'accepted'
                    """,
                    request_id,
                    assignment_status.value,
                    completed_at,
                )
            return _row_to_request(row)

    async def find_pending_in_box(
        self,
        box: BoundingBox,
        *,
        service_category: Optional[str] = None,
        min_price: Optional[float] = None,
    ) -> list[UrgentRequest]:
        conditions = [
            "status = 'pending'",
            "latitude BETWEEN $1 AND $2",
            "longitude BETWEEN $3 AND $4",
        ]
        params: list[Any] = [box.min_lat, box.max_lat, box.min_lng, box.max_lng]

        if service_category:
            params.append(like_pattern(service_category))
            conditions.append(f"service_category ILIKE ${len(params)}")
        if min_price is not None:
            params.append(min_price)
            conditions.append(f"price_estimate >= ${len(params)}")

        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM urgent_requests WHERE {' AND '.join(conditions)} ORDER BY created_at DESC",
                *params,
            )
            return [_row_to_request(row) for row in rows]

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    async def add_tracking(
        self,
        request_id: str,
        previous_status: Optional[str],
        new_status: str,
        notes: Optional[str] = None,
        changed_by: Optional[str] = None,
    ) -> TrackingEntry:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO urgent_tracking (request_id, previous_status, new_status, notes, changed_by)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                request_id,
                previous_status,
                new_status,
                notes,
                changed_by,
            )
            return _row_to_tracking(row)

    async def list_tracking(self, request_id: str) -> list[TrackingEntry]:
        if not is_request_id(request_id):
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM urgent_tracking WHERE request_id = $1 ORDER BY created_at, id",
                request_id,
            )
            return [_row_to_tracking(row) for row in rows]

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    async def add_candidate(self, request_id: str, professional_id: str, distance_km: float) -> Optional[Candidate]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO urgent_candidates (request_id, professional_id, distance_km)
                VALUES ($1, $2, $3)
                ON CONFLICT (request_id, professional_id) DO NOTHING
                RETURNING *
                """,
                request_id,
                professional_id,
                distance_km,
            )
            return _row_to_candidate(row) if row else None

    async def list_candidates(self, request_id: str, *, unresponded_only: bool = False) -> list[Candidate]:
        if not is_request_id(request_id):
            return []
        sql = "SELECT * FROM urgent_candidates WHERE request_id = $1"
        if unresponded_only:
            sql += " AND responded = false"
        sql += " ORDER BY distance_km, created_at"

        async with safe_db_conn() as conn:
            rows = await conn.fetch(sql, request_id)
            return [_row_to_candidate(row) for row in rows]

    async def mark_candidates_notified(self, candidate_ids: Sequence[str]) -> None:
        if not candidate_ids:
            return
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE urgent_candidates
                SET notified_at = now()
                WHERE id = ANY($1::uuid[]) AND notified_at IS NULL
                """,
                list(candidate_ids),
            )

    async def accept_candidate(
        self, request_id: str, professional_id: str, *, cascade_reason: str, notes: str
    ) -> Optional[tuple[Assignment, UrgentRequest, list[Candidate]]]:
        if not is_request_id(request_id):
            return None
        try:
            async with safe_db_conn(autocommit=False) as conn:
                request_row = await conn.fetchrow(
                    """
                    UPDATE urgent_requests
                    SET status = 'assigned', assigned_professional_id = $2, updated_at = now()
                    WHERE id = $1 AND status = 'pending'
                    RETURNING *
                    """,
                    request_id,
                    professional_id,
                )
                if request_row is None:
                    raise _ConditionFailed()

                candidate_row = await conn.fetchrow(
                    """
                    UPDATE urgent_candidates
                    SET responded = true, accepted = true, responded_at = now()
                    WHERE request_id = $1 AND professional_id = $2 AND responded = false
                    RETURNING id
                    """,
                    request_id,
                    professional_id,
                )
                if candidate_row is None:
                    raise _ConditionFailed()

                assignment_row = await conn.fetchrow(
                    """
                    INSERT INTO urgent_assignments (request_id, professional_id, status)
                    VALUES ($1, $2, 'accepted')
                    RETURNING *
                    """,
                    request_id,
                    professional_id,
                )
                closed_rows = await conn.fetch(
                    """
                    WITH closed AS (
                        UPDATE urgent_candidates
                        SET responded = true, accepted = false, responded_at = now()
                        WHERE request_id = $1 AND responded = false
                        RETURNING *
                    ), logged AS (
                        INSERT INTO urgent_rejections (request_id, professional_id, reason)
                        SELECT request_id, professional_id, $2 FROM closed
                    )
                    SELECT * FROM closed ORDER BY distance_km
                    """,
                    request_id,
                    cascade_reason,
                )
                await conn.execute(
                    """
                    INSERT INTO urgent_tracking (request_id, previous_status, new_status, notes, changed_by)
                    VALUES ($1, 'pending', 'assigned', $2, $3)
                    """,
                    request_id,
                    notes,
                    professional_id,
                )
        except _ConditionFailed:
            logger.info(
                "Accept lost: request not pending or candidacy already answered",
                extra={"request_id": request_id, "professional_id": professional_id},
            )
            return None

        return (
            _row_to_assignment(assignment_row),
            _row_to_request(request_row),
            [_row_to_candidate(row) for row in closed_rows],
        )

    async def reject_candidate(
        self, request_id: str, professional_id: str, reason: str
    ) -> Optional[tuple[Rejection, int]]:
        if not is_request_id(request_id):
            return None
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute("SELECT 1 FROM urgent_requests WHERE id = $1 FOR UPDATE", request_id)

            candidate_row = await conn.fetchrow(
                """
                UPDATE urgent_candidates
                SET responded = true, accepted = false, responded_at = now()
                WHERE request_id = $1 AND professional_id = $2 AND responded = false
                RETURNING id
                """,
                request_id,
                professional_id,
            )
            if candidate_row is None:
                return None

            rejection_row = await conn.fetchrow(
                """
                INSERT INTO urgent_rejections (request_id, professional_id, reason)
                VALUES ($1, $2, $3)
                RETURNING *
                """,
                request_id,
                professional_id,
                reason,
            )
            remaining = await conn.fetchval(
                "SELECT count(*)::int FROM urgent_candidates WHERE request_id = $1 AND responded = false",
                request_id,
            )
            return _row_to_rejection(rejection_row), remaining

    async def list_stale_candidates(self, older_than: datetime) -> list[Candidate]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT c.*
                FROM urgent_candidates c
                JOIN urgent_requests r ON r.id = c.request_id
                WHERE r.status = 'pending'
                  AND c.responded = false
                  AND c.created_at < $1
                ORDER BY c.created_at
                """,
                older_than,
            )
            return [_row_to_candidate(row) for row in rows]

    # ------------------------------------------------------------------
    # Assignment / rejections
    # ------------------------------------------------------------------

    async def get_assignment(self, request_id: str) -> Optional[Assignment]:
        if not is_request_id(request_id):
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM urgent_assignments WHERE request_id = $1", request_id)
            return _row_to_assignment(row) if row else None

    async def list_rejections(self, request_id: str) -> list[Rejection]:
        if not is_request_id(request_id):
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM urgent_rejections WHERE request_id = $1 ORDER BY created_at, id",
                request_id,
            )
            return [_row_to_rejection(row) for row in rows]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def list_requests(self, filters: StatsFilter) -> list[UrgentRequest]:
        conditions = []
        params: list[Any] = []

        def add(clause: str, value: Any) -> None:
            params.append(value)
            conditions.append(clause.format(idx=len(params)))

        if filters.since is not None:
            add("created_at >= ${idx}", filters.since)
        if filters.until is not None:
            add("created_at < ${idx}", filters.until)
        if filters.status is not None:
            add("status = ${idx}", RequestStatus(filters.status).value)
        if filters.client_id:
            add("client_id = ${idx}", filters.client_id)
        if filters.professional_id:
            add("assigned_professional_id = ${idx}", filters.professional_id)
        if filters.service_category:
            add("service_category ILIKE ${idx}", like_pattern(filters.service_category))

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(f"SELECT * FROM urgent_requests {where} ORDER BY created_at", *params)
            return [_row_to_request(row) for row in rows]

    async def list_candidates_for(self, request_ids: Sequence[str]) -> list[Candidate]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM urgent_candidates WHERE request_id = ANY($1::uuid[])",
                list(request_ids),
            )
            return [_row_to_candidate(row) for row in rows]

    async def list_assignments_for(self, request_ids: Sequence[str]) -> list[Assignment]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM urgent_assignments WHERE request_id = ANY($1::uuid[])",
                list(request_ids),
            )
            return [_row_to_assignment(row) for row in rows]

    async def list_rejections_for(self, request_ids: Sequence[str]) -> list[Rejection]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM urgent_rejections WHERE request_id = ANY($1::uuid[])",
                list(request_ids),
            )
            return [_row_to_rejection(row) for row in rows]
