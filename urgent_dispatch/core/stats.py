"""Operational statistics over urgent requests (admin dashboards)."""
from __future__ import annotations

import math
from collections import Counter
from typing import Any

from urgent_dispatch.core.domain import RequestStatus, StatsFilter, UrgentRequest
from urgent_dispatch.core.ports import AsyncUrgentRequestStore

TOP_REJECTERS = 5
UNSPECIFIED_REASON = "unspecified"
DEFAULT_CATEGORY = "general"


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _avg(values: list[float], ndigits: int = 2) -> float:
    return round(sum(values) / len(values), ndigits) if values else 0.0


class DispatchStatistics:
    def __init__(self, *, store: AsyncUrgentRequestStore) -> None:
        self.store = store

    async def _requests(self, filters: StatsFilter | None) -> list[UrgentRequest]:
        return await self.store.list_requests(filters or StatsFilter())

    async def request_stats(self, filters: StatsFilter | None = None) -> dict[str, Any]:
        requests = await self._requests(filters)
        total = len(requests)
        by_status = Counter(RequestStatus(r.status).value for r in requests)

        completion_hours = [
            (r.completed_at - r.created_at).total_seconds() / 3600
            for r in requests
            if r.status == RequestStatus.COMPLETED and r.completed_at and r.created_at
        ]

        rejections = await self.store.list_rejections_for([r.id for r in requests]) if requests else []
        reasons = Counter((rej.reason or "").strip() or UNSPECIFIED_REASON for rej in rejections)
        rejecters = Counter(rej.professional_id for rej in rejections)

        return {
            "total": total,
            "by_status": {status.value: by_status.get(status.value, 0) for status in RequestStatus},
            "completion_rate": _pct(by_status.get(RequestStatus.COMPLETED.value, 0), total),
            "avg_completion_hours": _avg(completion_hours),
            "rejections": {
                "total": len(rejections),
                "reasons": dict(reasons),
                "top_rejecters": [
                    {"professional_id": pid, "count": count}
                    for pid, count in rejecters.most_common(TOP_REJECTERS)
                ],
            },
        }

    async def matching_stats(self, filters: StatsFilter | None = None) -> dict[str, Any]:
        requests = await self._requests(filters)
        total = len(requests)
        ids = [r.id for r in requests]

        candidates = await self.store.list_candidates_for(ids) if ids else []
        assignments = await self.store.list_assignments_for(ids) if ids else []

        created = {r.id: r.created_at for r in requests}
        matching_minutes = [
            (a.assigned_at - created[a.request_id]).total_seconds() / 60
            for a in assignments
            if a.assigned_at and created.get(a.request_id)
        ]

        matched_statuses = (RequestStatus.ASSIGNED, RequestStatus.COMPLETED)
        matched = sum(1 for r in requests if r.status in matched_statuses)

        per_category: dict[str, dict[str, Any]] = {}
        for r in requests:
            entry = per_category.setdefault(r.service_category or DEFAULT_CATEGORY, {"total": 0, "matched": 0})
            entry["total"] += 1
            if r.status in matched_statuses:
                entry["matched"] += 1
        for entry in per_category.values():
            entry["success_rate"] = _pct(entry["matched"], entry["total"])

        return {
            "total": total,
            "matched": matched,
            "matching_rate": _pct(matched, total),
            "avg_candidates_per_request": round(len(candidates) / total, 2) if total else 0.0,
            "avg_matching_minutes": _avg(matching_minutes),
            "by_category": per_category,
        }

    async def geospatial_stats(self, filters: StatsFilter | None = None) -> dict[str, Any]:
        requests = await self._requests(filters)
        ids = [r.id for r in requests]

        accepted_distances = [
            c.distance_km
            for c in (await self.store.list_candidates_for(ids) if ids else [])
            if c.accepted
        ]
        avg_radius = _avg([r.radius_km for r in requests])

        grid = Counter(f"{math.floor(r.latitude)},{math.floor(r.longitude)}" for r in requests)

        return {
            "total": len(requests),
            "avg_radius_km": avg_radius,
            "avg_matching_distance_km": _avg(accepted_distances),
            "coverage_area_km2": round(math.pi * avg_radius ** 2, 2),
            "grid_distribution": dict(grid),
        }
