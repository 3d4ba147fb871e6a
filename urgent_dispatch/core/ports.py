# urgent_dispatch/core/ports.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Hashable, Iterable, Optional, Protocol, Sequence

from urgent_dispatch.core.domain import (
    Assignment,
    Candidate,
    PricingRule,
    ProfessionalFilters,
    ProfessionalProfile,
    Rejection,
    RequestStatus,
    StatsFilter,
    TrackingEntry,
    UrgentRequest,
)
from urgent_dispatch.core.geo import BoundingBox


# ============================================================================
# PERSISTENCE
# ============================================================================

class AsyncUrgentRequestStore(Protocol):
    async def create_request(self, request: UrgentRequest) -> UrgentRequest: ...
    async def get_request(self, request_id: str) -> Optional[UrgentRequest]:
        """None for an unknown id, including one that is not a well-formed request id."""
        ...

    async def count_requests_since(self, client_id: str, since: datetime) -> int: ...

    async def add_tracking(
        self,
        request_id: str,
        previous_status: Optional[str],
        new_status: str,
        notes: Optional[str] = None,
        changed_by: Optional[str] = None,
    ) -> TrackingEntry: ...

    async def add_candidate(self, request_id: str, professional_id: str, distance_km: float) -> Optional[Candidate]:
        """
        Insert-if-absent.
        Returns the new row, or None when the professional is already a candidate.
        """
        ...

    async def list_candidates(self, request_id: str, *, unresponded_only: bool = False) -> list[Candidate]: ...

    async def mark_candidates_notified(self, candidate_ids: Sequence[str]) -> None:
        """Stamp ``notified_at`` so later dispatch runs skip these candidates."""
        ...

    async def accept_candidate(
        self, request_id: str, professional_id: str, *, cascade_reason: str, notes: str
    ) -> Optional[tuple[Assignment, UrgentRequest, list[Candidate]]]:
        """
        One transaction: move the request pending -> assigned only if it is
        still pending, mark the candidate accepted only if it is unresponded,
        create the assignment, reject every other open candidate with
        ``cascade_reason`` (one rejection row each) and write the tracking
        entry. Returns the assignment, the updated request and the candidates
        closed by the cascade. None (and nothing written) if a guard fails.
        """
        ...

    async def reject_candidate(
        self, request_id: str, professional_id: str, reason: str
    ) -> Optional[tuple[Rejection, int]]:
        """
        Atomically mark an unresponded candidate rejected and write the rejection.
        Returns the rejection and the number of candidates still unresponded
        afterwards, counted inside the same transaction (so exactly one of two
        concurrent "last" rejections observes zero). None if not unresponded.
        """
        ...

    async def update_status(
        self,
        request_id: str,
        *,
        expected: Iterable[RequestStatus],
        new_status: RequestStatus,
        completed_at: Optional[datetime] = None,
    ) -> Optional[UrgentRequest]:
        """Conditional status change; None when the current status is not in ``expected``."""
        ...

    async def get_assignment(self, request_id: str) -> Optional[Assignment]: ...
    async def list_rejections(self, request_id: str) -> list[Rejection]: ...
    async def list_tracking(self, request_id: str) -> list[TrackingEntry]: ...

    async def list_stale_candidates(self, older_than: datetime) -> list[Candidate]:
        """Unresponded candidates of pending requests created before ``older_than``."""
        ...

    async def find_pending_in_box(
        self,
        box: BoundingBox,
        *,
        service_category: Optional[str] = None,
        min_price: Optional[float] = None,
    ) -> list[UrgentRequest]: ...

    # Statistics
    async def list_requests(self, filters: StatsFilter) -> list[UrgentRequest]: ...
    async def list_candidates_for(self, request_ids: Sequence[str]) -> list[Candidate]: ...
    async def list_assignments_for(self, request_ids: Sequence[str]) -> list[Assignment]: ...
    async def list_rejections_for(self, request_ids: Sequence[str]) -> list[Rejection]: ...


class AsyncProfessionalDirectory(Protocol):
    async def find_in_box(self, box: BoundingBox, filters: ProfessionalFilters) -> list[ProfessionalProfile]: ...
    async def get_profile(self, professional_id: str) -> Optional[ProfessionalProfile]: ...

    async def update_location(self, professional_id: str, lat: float, lng: float) -> Optional[datetime]:
        """Returns the update timestamp, or None when the professional has no profile."""
        ...


class AsyncPricingRuleStore(Protocol):
    async def get_rule(self, service_category: str) -> Optional[PricingRule]: ...
    async def list_rules(self) -> list[PricingRule]: ...
    async def upsert_rules(self, rules: Sequence[PricingRule]) -> list[PricingRule]: ...


# ============================================================================
# OUTBOUND COLLABORATORS
# ============================================================================

class NotificationGateway(Protocol):
    async def create_notification(
        self, user_id: str, notification_type: str, message: str, payload: dict[str, Any]
    ) -> None: ...


class RealtimeGateway(Protocol):
    async def notify_status_update(self, request: UrgentRequest, extra: dict[str, Any]) -> None: ...
    async def notify_accepted(self, request: UrgentRequest, extra: dict[str, Any]) -> None: ...
    async def notify_professionals(self, request: UrgentRequest, candidates: list[dict[str, Any]]) -> None: ...


class DispatchScheduler(Protocol):
    async def schedule_dispatch(self, request_id: str, *, is_retry: bool = False) -> None:
        """Run ``dispatch(request_id, is_retry)`` soon, out of band from the caller."""
        ...


# ============================================================================
# CACHE
# ============================================================================

class GeoCache(Protocol):
    ttl_seconds: float

    def get(self, key: str) -> Any | None: ...
    def set(self, key: str, value: Any, tags: Iterable[Hashable] = ()) -> None: ...

    def invalidate_tag(self, tag: str) -> int:
        """Drop every entry tagged with ``tag`` or whose key contains it."""
        ...

    def cleanup_expired(self) -> int: ...
    def clear(self) -> None: ...
    def size(self) -> int: ...
