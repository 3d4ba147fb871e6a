"""
GeoIndex: "who is near this point" for professionals and for pending requests.

Pipeline for every lookup:
    bounding box -> directory/store query -> exact haversine -> trim to radius -> sort by distance

Results are cached (coordinates rounded, radius, filters) and tagged with the
professional ids they contain, so a location update drops every stale search.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from urgent_dispatch.core.domain import (
    GeoPoint,
    NearbyProfessional,
    NearbyRequest,
    ProfessionalFilters,
)
from urgent_dispatch.core.errors import NotFoundError, ValidationError
from urgent_dispatch.core.geo import bounding_box, haversine_km, validate_coordinates
from urgent_dispatch.core.ports import AsyncProfessionalDirectory, AsyncUrgentRequestStore, GeoCache
from urgent_dispatch.infra.logging_config import get_logger, mask_coordinates
from urgent_dispatch.infra.metrics import AppMetrics

logger = get_logger(__name__)


@dataclass(frozen=True)
class GeoIndexPolicy:
    coord_precision: int = 4

    @classmethod
    def from_settings(cls, s) -> "GeoIndexPolicy":
        return cls(coord_precision=s.geo_cache_coord_precision)


class GeoIndex:
    def __init__(
        self,
        *,
        directory: AsyncProfessionalDirectory,
        requests: AsyncUrgentRequestStore,
        cache: GeoCache,
        policy: GeoIndexPolicy | None = None,
    ) -> None:
        self.directory = directory
        self.requests = requests
        self.cache = cache
        self.policy = policy or GeoIndexPolicy()

    def _cache_key(self, kind: str, lat: float, lng: float, radius_km: float, fragment: str) -> str:
        p = self.policy.coord_precision
        return f"{kind}:{lat:.{p}f}_{lng:.{p}f}_{radius_km}_{fragment}"

    # ------------------------------------------------------------------
    # Professionals
    # ------------------------------------------------------------------

    async def find_nearby_professionals(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        filters: ProfessionalFilters | None = None,
    ) -> list[NearbyProfessional]:
        """
        Professionals within ``radius_km`` of the point, closest first.

        Never raises on lookup failure: logs, counts and returns [] (failures
        are not cached).

        Results are cached for the cache TTL and tagged with the professionals
        they contain, so only those professionals' location updates drop the
        entry. A professional who moves into the area, or becomes available or
        verified, is not seen by searches already cached for that area. This
        includes empty results, which carry no tags. Retry dispatches inside
        the TTL therefore reuse the earlier answer; a fresher view needs the
        entry to expire or ``clear_cache``.
        """
        filters = filters or ProfessionalFilters()
        key = self._cache_key("pros", lat, lng, radius_km, filters.cache_fragment())

        cached = self.cache.get(key)
        AppMetrics.cache_lookup(cached is not None)
        if cached is not None:
            return list(cached)

        try:
            box = bounding_box(lat, lng, radius_km)
            profiles = await self.directory.find_in_box(box, filters)
        except Exception as e:
            logger.error(
                f"Professional lookup failed around {mask_coordinates(lat, lng)} r={radius_km}km: {e}",
                exc_info=True,
            )
            AppMetrics.lookup_failed("professional_directory")
            return []

        nearby: list[NearbyProfessional] = []
        for profile in profiles:
            if not profile.has_location:
                continue
            distance = haversine_km(lat, lng, profile.latitude, profile.longitude)
            if distance <= radius_km:
                nearby.append(NearbyProfessional(profile=profile, distance_km=distance))

        nearby.sort(key=lambda n: n.distance_km)

        self.cache.set(key, tuple(nearby), tags=[n.professional_id for n in nearby])
        logger.debug(
            f"Found {len(nearby)} professionals near {mask_coordinates(lat, lng)} "
            f"(box returned {len(profiles)})"
        )
        return nearby

    async def update_professional_location(self, professional_id: str, lat: float, lng: float) -> datetime:
        if not validate_coordinates(lat, lng):
            raise ValidationError("Invalid coordinates: lat must be in [-90, 90] and lng in [-180, 180]")

        updated_at = await self.directory.update_location(professional_id, lat, lng)
        if updated_at is None:
            raise NotFoundError(f"Professional {professional_id} not found")

        dropped = self.cache.invalidate_tag(professional_id)
        logger.info(
            f"Location updated to {mask_coordinates(lat, lng)}, {dropped} cached searches dropped",
            extra={"professional_id": professional_id},
        )
        return updated_at

    async def get_professional_location(self, professional_id: str) -> GeoPoint:
        profile = await self.directory.get_profile(professional_id)
        if profile is None or not profile.has_location:
            raise NotFoundError(f"Location for professional {professional_id} not found")
        return GeoPoint(profile.latitude, profile.longitude)

    # ------------------------------------------------------------------
    # Requests (the professional's view)
    # ------------------------------------------------------------------

    async def find_nearby_requests(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        service_category: Optional[str] = None,
        min_price: Optional[float] = None,
    ) -> list[NearbyRequest]:
        """Pending urgent requests around a professional, closest first."""
        fragment = f"category={(service_category or '-').lower()}|min_price={min_price if min_price is not None else '-'}"
        key = self._cache_key("reqs", lat, lng, radius_km, fragment)

        cached = self.cache.get(key)
        AppMetrics.cache_lookup(cached is not None)
        if cached is not None:
            return list(cached)

        try:
            box = bounding_box(lat, lng, radius_km)
            requests = await self.requests.find_pending_in_box(
                box, service_category=service_category, min_price=min_price
            )
        except Exception as e:
            logger.error(f"Request lookup failed around {mask_coordinates(lat, lng)}: {e}", exc_info=True)
            AppMetrics.lookup_failed("urgent_requests")
            return []

        nearby = []
        for request in requests:
            distance = haversine_km(lat, lng, request.latitude, request.longitude)
            if distance <= radius_km:
                nearby.append(NearbyRequest(request=request, distance_km=distance))
        nearby.sort(key=lambda n: n.distance_km)

        self.cache.set(key, tuple(nearby))
        return nearby

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    def cleanup_expired_cache(self) -> int:
        return self.cache.cleanup_expired()

    def cache_size(self) -> int:
        return self.cache.size()

    def clear_cache(self) -> None:
        self.cache.clear()
