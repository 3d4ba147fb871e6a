# urgent_dispatch/infra/pg_professional_directory_async.py
"""
Professional directory backed by PostgreSQL (asyncpg).

The bounding-box query is the only spatial work done in SQL; exact distances
are computed by the GeoIndex on the survivors.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from urgent_dispatch.core.domain import ProfessionalFilters, ProfessionalProfile, Specialty
from urgent_dispatch.core.geo import BoundingBox
from urgent_dispatch.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from urgent_dispatch.infra.logging_config import get_logger
from urgent_dispatch.infra.pg_urgent_repo_async import like_pattern

logger = get_logger(__name__)

_PROFILE_SELECT = """
    SELECT p.*,
           COALESCE(
             json_agg(json_build_object('name', s.name, 'category', s.category))
               FILTER (WHERE s.name IS NOT NULL),
             '[]'
           ) AS specialties
    FROM professional_profiles p
    LEFT JOIN professional_specialties s ON s.professional_id = p.professional_id
"""


def _row_to_profile(row) -> ProfessionalProfile:
    specialties = row["specialties"]
    if isinstance(specialties, str):
        specialties = json.loads(specialties)
    return ProfessionalProfile(
        professional_id=row["professional_id"],
        name=row["name"] or "",
        latitude=row["latitude"],
        longitude=row["longitude"],
        average_rating=float(row["average_rating"] or 0),
        review_count=int(row["review_count"] or 0),
        is_available=row["is_available"],
        is_verified=row["is_verified"],
        push_enabled=row["push_enabled"],
        push_token=row["push_token"],
        phone=row["phone"],
        photo_url=row["photo_url"],
        specialties=[Specialty(name=s.get("name") or "", category=s.get("category") or "") for s in specialties],
        location_updated_at=row["location_updated_at"],
    )


class AsyncPostgresProfessionalDirectory:
    @retry_on_transient_error(max_retries=2)
    async def find_in_box(self, box: BoundingBox, filters: ProfessionalFilters) -> list[ProfessionalProfile]:
        conditions = [
            "p.latitude IS NOT NULL",
            "p.longitude IS NOT NULL",
            "p.latitude BETWEEN $1 AND $2",
        ]
        params: list[Any] = [box.min_lat, box.max_lat]

        if not box.spans_all_longitudes:
            params.extend([box.min_lng, box.max_lng])
            conditions.append("p.longitude BETWEEN $3 AND $4")

        if filters.available_only:
            conditions.append("p.is_available")
        if filters.verified_only:
            conditions.append("p.is_verified")
        if filters.min_rating is not None:
            params.append(filters.min_rating)
            conditions.append(f"p.average_rating >= ${len(params)}")
        if filters.service_category:
            params.append(like_pattern(filters.service_category))
            conditions.append(
                "EXISTS (SELECT 1 FROM professional_specialties sc "
                "WHERE sc.professional_id = p.professional_id "
                f"AND (sc.name ILIKE ${len(params)} OR sc.category ILIKE ${len(params)}))"
            )

        sql = f"{_PROFILE_SELECT} WHERE {' AND '.join(conditions)} GROUP BY p.professional_id"

        async with safe_db_conn() as conn:
            rows = await conn.fetch(sql, *params)
            return [_row_to_profile(row) for row in rows]

    @retry_on_transient_error(max_retries=2)
    async def get_profile(self, professional_id: str) -> Optional[ProfessionalProfile]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"{_PROFILE_SELECT} WHERE p.professional_id = $1 GROUP BY p.professional_id",
                professional_id,
            )
            return _row_to_profile(row) if row else None

    async def update_location(self, professional_id: str, lat: float, lng: float) -> Optional[datetime]:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                """
                UPDATE professional_profiles
                SET latitude = $2, longitude = $3, location_updated_at = now()
                WHERE professional_id = $1
                RETURNING location_updated_at
                """,
                professional_id,
                lat,
                lng,
            )
