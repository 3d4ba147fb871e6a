"""
Candidate scoring and ranking.

Each professional returned by the GeoIndex gets five sub-scores in [0, 100]:

    distance      (D_max - d) / D_max * 100, floored at 0
    rating        average_rating * 20, capped at 100
    experience    review_count * 2, capped at 50
    availability  100 if available else 0
    category      100 on a specialty match, 0 otherwise, 50 if no category asked

and a weighted total rounded half-up. Retry dispatches apply a penalty.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Optional

from urgent_dispatch.core.domain import (
    GeoPoint,
    MatchCandidate,
    NearbyProfessional,
    ProfessionalFilters,
    ScoreBreakdown,
)
from urgent_dispatch.core.geo_index import GeoIndex
from urgent_dispatch.infra.logging_config import get_logger, mask_coordinates
from urgent_dispatch.infra.metrics import AppMetrics

logger = get_logger(__name__)

WEIGHTS = {
    "distance": 0.30,
    "rating": 0.25,
    "experience": 0.15,
    "availability": 0.15,
    "category_match": 0.15,
}

NEUTRAL_CATEGORY_SCORE = 50.0


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class MatchingPolicy:
    max_distance_km: float = 50.0
    max_candidates: int = 10
    min_rating: float = 0.0
    prioritize_distance: bool = True
    retry_penalty: float = 0.8
    distance_tie_km: float = 0.1

    @classmethod
    def from_settings(cls, s) -> "MatchingPolicy":
        return cls(
            max_distance_km=s.matching_max_distance_km,
            max_candidates=s.matching_max_candidates,
            min_rating=s.matching_min_rating,
            prioritize_distance=s.matching_prioritize_distance,
            retry_penalty=s.matching_retry_penalty,
        )


class MatchingEngine:
    def __init__(self, *, geo: GeoIndex, policy: MatchingPolicy | None = None) -> None:
        self.geo = geo
        self.policy = policy or MatchingPolicy()

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score_professional(
        self,
        nearby: NearbyProfessional,
        service_category: Optional[str] = None,
        *,
        is_retry: bool = False,
    ) -> MatchCandidate:
        profile = nearby.profile
        d_max = self.policy.max_distance_km

        if service_category:
            category_score = 100.0 if profile.matches_category(service_category) else 0.0
        else:
            category_score = NEUTRAL_CATEGORY_SCORE

        scores = ScoreBreakdown(
            distance=max(0.0, (d_max - nearby.distance_km) / d_max) * 100,
            rating=min(profile.average_rating * 20, 100.0),
            experience=min(profile.review_count * 2, 50.0),
            availability=100.0 if profile.is_available else 0.0,
            category_match=category_score,
        )

        total: float = round_half_up(
            WEIGHTS["distance"] * scores.distance
            + WEIGHTS["rating"] * scores.rating
            + WEIGHTS["experience"] * scores.experience
            + WEIGHTS["availability"] * scores.availability
            + WEIGHTS["category_match"] * scores.category_match
        )
        if is_retry:
            total = total * self.policy.retry_penalty

        return MatchCandidate(
            professional_id=profile.professional_id,
            distance_km=nearby.distance_km,
            rating=profile.average_rating,
            total_score=total,
            scores=scores,
            profile=profile,
        )

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def _compare(self, a: MatchCandidate, b: MatchCandidate) -> int:
        if self.policy.prioritize_distance:
            gap = a.distance_km - b.distance_km
            if abs(gap) > self.policy.distance_tie_km:
                return -1 if gap < 0 else 1
        if a.total_score == b.total_score:
            return 0
        return -1 if a.total_score > b.total_score else 1

    def rank(self, candidates: list[MatchCandidate]) -> list[MatchCandidate]:
        """Drop below-minimum ratings, order, truncate."""
        eligible = [c for c in candidates if c.rating >= self.policy.min_rating]
        ordered = sorted(eligible, key=cmp_to_key(self._compare))
        return ordered[: self.policy.max_candidates]

    async def find_candidates(
        self,
        location: GeoPoint,
        radius_km: float,
        service_category: Optional[str] = None,
        *,
        is_retry: bool = False,
    ) -> list[MatchCandidate]:
        """Ranked candidates for a request. Empty (never raises) when the lookup fails."""
        filters = ProfessionalFilters(service_category=service_category)
        try:
            nearby = await self.geo.find_nearby_professionals(location.lat, location.lng, radius_km, filters)
        except Exception as e:
            logger.error(f"Candidate lookup failed near {mask_coordinates(location.lat, location.lng)}: {e}")
            AppMetrics.lookup_failed("matching")
            return []

        scored = [self.score_professional(n, service_category, is_retry=is_retry) for n in nearby]
        ranked = self.rank(scored)

        logger.info(
            f"Matching: {len(nearby)} nearby, {len(ranked)} ranked "
            f"(category={service_category or '-'}, retry={is_retry})"
        )
        return ranked
