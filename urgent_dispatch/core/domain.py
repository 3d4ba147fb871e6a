from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ============================================================================
# REQUEST STATUS
# ============================================================================

class RequestStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.CANCELLED)


class AssignmentStatus(str, Enum):
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Rejection reasons written by the core itself
REASON_REJECTED_BY_PROFESSIONAL = "rejected by the professional"
REASON_ASSIGNED_TO_OTHER = "another professional was assigned"
REASON_NO_RESPONSE = "no response from the professional"


# ============================================================================
# GEO
# ============================================================================

@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


# ============================================================================
# PERSISTED RECORDS
# ============================================================================

@dataclass
class UrgentRequest:
    id: str
    client_id: str
    description: str
    latitude: float
    longitude: float
    radius_km: float
    status: RequestStatus = RequestStatus.PENDING
    price_estimate: float = 0
    service_id: Optional[str] = None
    service_category: Optional[str] = None
    assigned_professional_id: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def location(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)

    @property
    def is_terminal(self) -> bool:
        return RequestStatus(self.status).is_terminal

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe view used by notifications and real-time events."""
        return {
            "id": self.id,
            "client_id": self.client_id,
            "service_id": self.service_id,
            "service_category": self.service_category,
            "description": self.description,
            "location": {"lat": self.latitude, "lng": self.longitude},
            "radius_km": self.radius_km,
            "status": RequestStatus(self.status).value,
            "price_estimate": self.price_estimate,
            "assigned_professional_id": self.assigned_professional_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class Candidate:
    id: str
    request_id: str
    professional_id: str
    distance_km: float
    responded: bool = False
    accepted: bool = False
    created_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None

    @property
    def awaiting_notification(self) -> bool:
        return not self.responded and self.notified_at is None


@dataclass
class Assignment:
    id: str
    request_id: str
    professional_id: str
    status: AssignmentStatus = AssignmentStatus.ACCEPTED
    assigned_at: Optional[datetime] = None


@dataclass
class Rejection:
    id: str
    request_id: str
    professional_id: str
    reason: str
    created_at: Optional[datetime] = None


@dataclass
class TrackingEntry:
    id: str
    request_id: str
    previous_status: Optional[str]
    new_status: str
    notes: Optional[str] = None
    changed_by: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class PricingRule:
    service_category: str
    base_multiplier: float
    min_price: float


# ============================================================================
# PROFESSIONAL DIRECTORY
# ============================================================================

@dataclass(frozen=True)
class Specialty:
    name: str
    category: str = ""

    def matches(self, service_category: str) -> bool:
        """Case-insensitive substring match on name or parent category."""
        needle = service_category.lower()
        return needle in (self.name or "").lower() or needle in (self.category or "").lower()


@dataclass
class ProfessionalProfile:
    professional_id: str
    name: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    average_rating: float = 0.0
    review_count: int = 0
    is_available: bool = True
    is_verified: bool = True
    push_enabled: bool = False
    push_token: Optional[str] = None
    phone: Optional[str] = None
    photo_url: Optional[str] = None
    specialties: list[Specialty] = field(default_factory=list)
    location_updated_at: Optional[datetime] = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def can_receive_push(self) -> bool:
        return bool(self.push_token) and self.push_enabled

    def matches_category(self, service_category: str | None) -> bool:
        if not service_category:
            return True
        return any(s.matches(service_category) for s in self.specialties)

    def public_summary(self) -> dict[str, Any]:
        """Fields shared with the client once the professional is assigned."""
        return {
            "id": self.professional_id,
            "name": self.name,
            "phone": self.phone,
            "photo_url": self.photo_url,
            "average_rating": self.average_rating,
        }


@dataclass
class ProfessionalFilters:
    """Predicates applied by the directory query inside the bounding box."""

    available_only: bool = True
    verified_only: bool = True
    min_rating: Optional[float] = None
    service_category: Optional[str] = None

    def cache_fragment(self) -> str:
        return (
            f"avail={int(self.available_only)}"
            f"|verified={int(self.verified_only)}"
            f"|min_rating={self.min_rating if self.min_rating is not None else '-'}"
            f"|category={(self.service_category or '-').lower()}"
        )

    def accepts(self, profile: ProfessionalProfile) -> bool:
        if self.available_only and not profile.is_available:
            return False
        if self.verified_only and not profile.is_verified:
            return False
        if self.min_rating is not None and profile.average_rating < self.min_rating:
            return False
        return profile.matches_category(self.service_category)


@dataclass
class NearbyProfessional:
    profile: ProfessionalProfile
    distance_km: float

    @property
    def professional_id(self) -> str:
        return self.profile.professional_id


@dataclass
class NearbyRequest:
    request: UrgentRequest
    distance_km: float


# ============================================================================
# MATCHING RESULTS
# ============================================================================

@dataclass(frozen=True)
class ScoreBreakdown:
    distance: float
    rating: float
    experience: float
    availability: float
    category_match: float


@dataclass
class MatchCandidate:
    professional_id: str
    distance_km: float
    rating: float
    total_score: float
    scores: ScoreBreakdown
    profile: ProfessionalProfile


# ============================================================================
# ORCHESTRATOR RESULTS
# ============================================================================

@dataclass
class AcceptResult:
    assignment: Assignment
    request: UrgentRequest
    closed_candidates: list[Candidate] = field(default_factory=list)


@dataclass
class UrgentRequestView:
    """A request together with its audit trail, as returned to participants."""

    request: UrgentRequest
    candidates: list[Candidate] = field(default_factory=list)
    assignment: Optional[Assignment] = None
    rejections: list[Rejection] = field(default_factory=list)
    tracking: list[TrackingEntry] = field(default_factory=list)

    def is_participant(self, user_id: str) -> bool:
        if self.request.client_id == user_id:
            return True
        if self.request.assigned_professional_id == user_id:
            return True
        if self.assignment is not None and self.assignment.professional_id == user_id:
            return True
        return any(c.professional_id == user_id for c in self.candidates)


@dataclass
class StatsFilter:
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    status: Optional[RequestStatus] = None
    client_id: Optional[str] = None
    professional_id: Optional[str] = None
    service_category: Optional[str] = None
