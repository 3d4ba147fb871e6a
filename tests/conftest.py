# tests/conftest.py
"""Pytest configuration, in-memory fakes of the dispatch ports, and fixtures"""
from __future__ import annotations

import asyncio
import itertools
import math
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from urgent_dispatch.core.domain import (  # noqa: E402
    Assignment,
    AssignmentStatus,
    Candidate,
    PricingRule,
    ProfessionalFilters,
    ProfessionalProfile,
    Rejection,
    RequestStatus,
    Specialty,
    StatsFilter,
    TrackingEntry,
    UrgentRequest,
)
from urgent_dispatch.core.geo import EARTH_RADIUS_KM, BoundingBox  # noqa: E402
from urgent_dispatch.core.geo_index import GeoIndex  # noqa: E402
from urgent_dispatch.core.matching import MatchingEngine  # noqa: E402
from urgent_dispatch.core.orchestrator import DispatchOrchestrator, DispatchPolicy  # noqa: E402
from urgent_dispatch.core.pricing import UrgentPricing  # noqa: E402
from urgent_dispatch.infra.geo_cache import InMemoryTTLCache  # noqa: E402

ORIGIN_LAT = -34.6118
ORIGIN_LNG = -58.3960


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def north_of(lat: float, km: float) -> float:
    """Latitude ``km`` kilometres due north (exact along a meridian)."""
    return lat + math.degrees(km / EARTH_RADIUS_KM)


def make_profile(
    professional_id: str,
    *,
    km_north: float = 1.0,
    lat: float | None = None,
    lng: float = ORIGIN_LNG,
    rating: float = 4.5,
    reviews: int = 10,
    available: bool = True,
    verified: bool = True,
    push: bool = True,
    specialties: Sequence[tuple[str, str]] = (("Plumber", "plumbing"),),
) -> ProfessionalProfile:
    return ProfessionalProfile(
        professional_id=professional_id,
        name=f"Pro {professional_id}",
        latitude=lat if lat is not None else north_of(ORIGIN_LAT, km_north),
        longitude=lng,
        average_rating=rating,
        review_count=reviews,
        is_available=available,
        is_verified=verified,
        push_enabled=push,
        push_token=f"token-{professional_id}" if push else None,
        phone="+5491100000000",
        specialties=[Specialty(name=n, category=c) for n, c in specialties],
    )


# ---------------------------------------------------------------------------
# In-memory ports
# ---------------------------------------------------------------------------

class InMemoryUrgentRequestStore:
    """
    Behaves like the PostgreSQL store. Every conditional write yields to the
    event loop once, then checks and writes without awaiting, which mirrors
    the row-locked transaction: concurrent callers interleave but each
    check-and-write is atomic.
    """

    def __init__(self):
        self.requests: dict[str, UrgentRequest] = {}
        self.candidates: list[Candidate] = []
        self.assignments: dict[str, Assignment] = {}
        self.rejections: list[Rejection] = []
        self.tracking: list[TrackingEntry] = []
        self._ids = itertools.count(1)
        self.fail_create = False
        self.fail_tracking = False
        self.fail_add_candidate_after: Optional[int] = None
        self.add_candidate_calls = 0

    def _id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _candidate(self, request_id: str, professional_id: str) -> Optional[Candidate]:
        for c in self.candidates:
            if c.request_id == request_id and c.professional_id == professional_id:
                return c
        return None

    def _open(self, request_id: str) -> list[Candidate]:
        return [c for c in self.candidates if c.request_id == request_id and not c.responded]

    async def create_request(self, request: UrgentRequest) -> UrgentRequest:
        await asyncio.sleep(0)
        if self.fail_create:
            raise RuntimeError("database unavailable")
        stored = replace(request, created_at=request.created_at or now_utc())
        self.requests[stored.id] = stored
        return replace(stored)

    async def get_request(self, request_id: str) -> Optional[UrgentRequest]:
        request = self.requests.get(request_id)
        return replace(request) if request else None

    async def count_requests_since(self, client_id: str, since: datetime) -> int:
        return sum(1 for r in self.requests.values() if r.client_id == client_id and r.created_at >= since)

    async def add_tracking(self, request_id, previous_status, new_status, notes=None, changed_by=None):
        if self.fail_tracking:
            raise RuntimeError("connection reset")
        return self._append_tracking(request_id, previous_status, new_status, notes, changed_by)

    def _append_tracking(self, request_id, previous_status, new_status, notes, changed_by) -> TrackingEntry:
        entry = TrackingEntry(
            id=self._id("trk"),
            request_id=request_id,
            previous_status=previous_status,
            new_status=new_status,
            notes=notes,
            changed_by=changed_by,
            created_at=now_utc(),
        )
        self.tracking.append(entry)
        return entry

    async def add_candidate(self, request_id: str, professional_id: str, distance_km: float) -> Optional[Candidate]:
        await asyncio.sleep(0)
        self.add_candidate_calls += 1
        if self.fail_add_candidate_after is not None and self.add_candidate_calls > self.fail_add_candidate_after:
            raise RuntimeError("connection reset")
        if self._candidate(request_id, professional_id) is not None:
            return None
        candidate = Candidate(
            id=self._id("cand"),
            request_id=request_id,
            professional_id=professional_id,
            distance_km=distance_km,
            created_at=now_utc(),
        )
        self.candidates.append(candidate)
        return replace(candidate)

    async def list_candidates(self, request_id: str, *, unresponded_only: bool = False) -> list[Candidate]:
        found = [c for c in self.candidates if c.request_id == request_id]
        if unresponded_only:
            found = [c for c in found if not c.responded]
        return [replace(c) for c in found]

    async def mark_candidates_notified(self, candidate_ids: Sequence[str]) -> None:
        ids = set(candidate_ids)
        for c in self.candidates:
            if c.id in ids and c.notified_at is None:
                c.notified_at = now_utc()

    async def accept_candidate(self, request_id: str, professional_id: str, *, cascade_reason: str, notes: str):
        await asyncio.sleep(0)
        request = self.requests.get(request_id)
        candidate = self._candidate(request_id, professional_id)
        if request is None or request.status != RequestStatus.PENDING:
            return None
        if candidate is None or candidate.responded:
            return None

        candidate.responded = True
        candidate.accepted = True
        request.status = RequestStatus.ASSIGNED
        request.assigned_professional_id = professional_id
        assignment = Assignment(
            id=self._id("asg"),
            request_id=request_id,
            professional_id=professional_id,
            assigned_at=now_utc(),
        )
        self.assignments[request_id] = assignment

        closed = self._open(request_id)
        for other in closed:
            self._reject(other, cascade_reason)
        self._append_tracking(request_id, "pending", "assigned", notes, professional_id)
        return replace(assignment), replace(request), [replace(c) for c in closed]

    def _reject(self, candidate: Candidate, reason: str) -> Rejection:
        candidate.responded = True
        candidate.accepted = False
        rejection = Rejection(
            id=self._id("rej"),
            request_id=candidate.request_id,
            professional_id=candidate.professional_id,
            reason=reason,
            created_at=now_utc(),
        )
        self.rejections.append(rejection)
        return rejection

    async def reject_candidate(self, request_id: str, professional_id: str, reason: str):
        await asyncio.sleep(0)
        candidate = self._candidate(request_id, professional_id)
        if candidate is None or candidate.responded:
            return None
        rejection = self._reject(candidate, reason)
        return replace(rejection), len(self._open(request_id))

    async def update_status(
        self,
        request_id: str,
        *,
        expected: Iterable[RequestStatus],
        new_status: RequestStatus,
        completed_at: Optional[datetime] = None,
    ) -> Optional[UrgentRequest]:
        await asyncio.sleep(0)
        request = self.requests.get(request_id)
        if request is None or request.status not in set(expected):
            return None
        request.status = new_status
        if completed_at is not None:
            request.completed_at = completed_at
        assignment = self.assignments.get(request_id)
        if assignment is not None and assignment.status == AssignmentStatus.ACCEPTED:
            if new_status == RequestStatus.COMPLETED:
                assignment.status = AssignmentStatus.COMPLETED
            elif new_status == RequestStatus.CANCELLED:
                assignment.status = AssignmentStatus.CANCELLED
        return replace(request)

    async def get_assignment(self, request_id: str) -> Optional[Assignment]:
        assignment = self.assignments.get(request_id)
        return replace(assignment) if assignment else None

    async def list_rejections(self, request_id: str) -> list[Rejection]:
        return [r for r in self.rejections if r.request_id == request_id]

    async def list_tracking(self, request_id: str) -> list[TrackingEntry]:
        return [t for t in self.tracking if t.request_id == request_id]

    async def list_stale_candidates(self, older_than: datetime) -> list[Candidate]:
        return [
            replace(c) for c in self.candidates
            if not c.responded
            and c.created_at < older_than
            and self.requests[c.request_id].status == RequestStatus.PENDING
        ]

    async def find_pending_in_box(self, box: BoundingBox, *, service_category=None, min_price=None):
        found = []
        for r in self.requests.values():
            if r.status != RequestStatus.PENDING or not box.contains(r.latitude, r.longitude):
                continue
            if service_category and service_category.lower() not in (r.service_category or "").lower():
                continue
            if min_price is not None and r.price_estimate < min_price:
                continue
            found.append(replace(r))
        return found

    async def list_requests(self, filters: StatsFilter) -> list[UrgentRequest]:
        found = []
        for r in self.requests.values():
            if filters.since and r.created_at < filters.since:
                continue
            if filters.until and r.created_at >= filters.until:
                continue
            if filters.status and r.status != filters.status:
                continue
            if filters.client_id and r.client_id != filters.client_id:
                continue
            if filters.professional_id and r.assigned_professional_id != filters.professional_id:
                continue
            if filters.service_category and filters.service_category.lower() not in (r.service_category or "").lower():
                continue
            found.append(replace(r))
        return found

    async def list_candidates_for(self, request_ids: Sequence[str]) -> list[Candidate]:
        ids = set(request_ids)
        return [replace(c) for c in self.candidates if c.request_id in ids]

    async def list_assignments_for(self, request_ids: Sequence[str]) -> list[Assignment]:
        ids = set(request_ids)
        return [replace(a) for a in self.assignments.values() if a.request_id in ids]

    async def list_rejections_for(self, request_ids: Sequence[str]) -> list[Rejection]:
        ids = set(request_ids)
        return [r for r in self.rejections if r.request_id in ids]


class InMemoryProfessionalDirectory:
    def __init__(self, profiles: Iterable[ProfessionalProfile] = ()):
        self.profiles: dict[str, ProfessionalProfile] = {p.professional_id: p for p in profiles}
        self.box_queries = 0
        self.fail = False

    def add(self, *profiles: ProfessionalProfile) -> None:
        for p in profiles:
            self.profiles[p.professional_id] = p

    async def find_in_box(self, box: BoundingBox, filters: ProfessionalFilters) -> list[ProfessionalProfile]:
        self.box_queries += 1
        if self.fail:
            raise RuntimeError("directory unavailable")
        return [
            p for p in self.profiles.values()
            if p.has_location and box.contains(p.latitude, p.longitude) and filters.accepts(p)
        ]

    async def get_profile(self, professional_id: str) -> Optional[ProfessionalProfile]:
        if self.fail:
            raise RuntimeError("directory unavailable")
        return self.profiles.get(professional_id)

    async def update_location(self, professional_id: str, lat: float, lng: float) -> Optional[datetime]:
        profile = self.profiles.get(professional_id)
        if profile is None:
            return None
        profile.latitude = lat
        profile.longitude = lng
        profile.location_updated_at = now_utc()
        return profile.location_updated_at


class InMemoryPricingRuleStore:
    def __init__(self, rules: Iterable[PricingRule] = ()):
        self.rules = {r.service_category.lower(): r for r in rules}
        self.fail = False

    async def get_rule(self, service_category: str) -> Optional[PricingRule]:
        if self.fail:
            raise RuntimeError("pricing table unavailable")
        return self.rules.get(service_category.lower())

    async def list_rules(self) -> list[PricingRule]:
        return sorted(self.rules.values(), key=lambda r: r.service_category)

    async def upsert_rules(self, rules: Sequence[PricingRule]) -> list[PricingRule]:
        for r in rules:
            self.rules[r.service_category.lower()] = r
        return list(rules)


class RecordingNotifications:
    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    async def create_notification(self, user_id, notification_type, message, payload) -> None:
        if self.fail:
            raise RuntimeError("notification store down")
        self.sent.append({"user_id": user_id, "type": notification_type, "message": message, "payload": payload})

    def to(self, user_id: str, notification_type: str | None = None) -> list[dict[str, Any]]:
        return [
            n for n in self.sent
            if n["user_id"] == user_id and (notification_type is None or n["type"] == notification_type)
        ]


class RecordingRealtime:
    def __init__(self):
        self.events: list[tuple[str, str, Any]] = []
        self.fail = False

    async def _record(self, kind, request, data):
        if self.fail:
            raise RuntimeError("relay down")
        self.events.append((kind, request.id, data))

    async def notify_status_update(self, request, extra):
        await self._record("status", request, extra)

    async def notify_accepted(self, request, extra):
        await self._record("accepted", request, extra)

    async def notify_professionals(self, request, candidates):
        await self._record("professionals", request, candidates)


class RecordingScheduler:
    def __init__(self):
        self.calls: list[tuple[str, bool]] = []
        self.fail = False

    async def schedule_dispatch(self, request_id: str, *, is_retry: bool = False) -> None:
        if self.fail:
            raise RuntimeError("queue unavailable")
        self.calls.append((request_id, is_retry))

    def retries_for(self, request_id: str) -> int:
        return sum(1 for rid, retry in self.calls if rid == request_id and retry)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@dataclass
class DispatchHarness:
    store: InMemoryUrgentRequestStore
    directory: InMemoryProfessionalDirectory
    pricing_rules: InMemoryPricingRuleStore
    notifications: RecordingNotifications
    realtime: RecordingRealtime
    scheduler: RecordingScheduler
    cache: InMemoryTTLCache
    geo: GeoIndex
    matching: MatchingEngine
    pricing: UrgentPricing
    orchestrator: DispatchOrchestrator
    origin: tuple[float, float] = field(default=(ORIGIN_LAT, ORIGIN_LNG))

    async def create(self, client_id: str = "client-1", **overrides) -> UrgentRequest:
        from urgent_dispatch.core.domain import GeoPoint

        kwargs = {
            "description": "Burst pipe in the kitchen",
            "location": GeoPoint(ORIGIN_LAT, ORIGIN_LNG),
            "radius_km": 10,
            "service_category": "plumber",
        }
        kwargs.update(overrides)
        return await self.orchestrator.create_request(client_id, **kwargs)

    async def create_and_dispatch(self, client_id: str = "client-1", **overrides) -> UrgentRequest:
        request = await self.create(client_id, **overrides)
        await self.orchestrator.dispatch(request.id)
        return request

    async def settle(self) -> None:
        """Let background real-time events finish."""
        await self.orchestrator.drain_side_channels()


def build_harness(policy: DispatchPolicy | None = None) -> DispatchHarness:
    store = InMemoryUrgentRequestStore()
    directory = InMemoryProfessionalDirectory()
    pricing_rules = InMemoryPricingRuleStore()
    notifications = RecordingNotifications()
    realtime = RecordingRealtime()
    scheduler = RecordingScheduler()
    cache = InMemoryTTLCache(ttl_seconds=600)

    geo = GeoIndex(directory=directory, requests=store, cache=cache)
    matching = MatchingEngine(geo=geo)
    pricing = UrgentPricing(rules=pricing_rules)
    orchestrator = DispatchOrchestrator(
        store=store,
        directory=directory,
        matching=matching,
        pricing=pricing,
        scheduler=scheduler,
        notifications=notifications,
        realtime=realtime,
        policy=policy or DispatchPolicy(),
    )
    return DispatchHarness(
        store=store,
        directory=directory,
        pricing_rules=pricing_rules,
        notifications=notifications,
        realtime=realtime,
        scheduler=scheduler,
        cache=cache,
        geo=geo,
        matching=matching,
        pricing=pricing,
        orchestrator=orchestrator,
    )


@pytest.fixture
def harness() -> DispatchHarness:
    return build_harness()


@pytest.fixture
def store() -> InMemoryUrgentRequestStore:
    return InMemoryUrgentRequestStore()


@pytest.fixture
def directory() -> InMemoryProfessionalDirectory:
    return InMemoryProfessionalDirectory()
