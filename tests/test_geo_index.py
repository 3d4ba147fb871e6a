# tests/test_geo_index.py
"""Tests for GeoIndex lookups, caching and location updates"""
import pytest

from conftest import ORIGIN_LAT, ORIGIN_LNG, make_profile, north_of
from urgent_dispatch.core.domain import GeoPoint, ProfessionalFilters
from urgent_dispatch.core.errors import NotFoundError, ValidationError


class TestFindNearbyProfessionals:
    @pytest.mark.asyncio
    async def test_trims_to_radius_and_sorts_by_distance(self, harness):
        harness.directory.add(
            make_profile("pro-far", km_north=4.0),
            make_profile("pro-near", km_north=1.0),
            make_profile("pro-out", km_north=5.6),
        )

        found = await harness.geo.find_nearby_professionals(ORIGIN_LAT, ORIGIN_LNG, 5)

        assert [n.professional_id for n in found] == ["pro-near", "pro-far"]
        assert found[0].distance_km == pytest.approx(1.0, abs=1e-6)
        assert found[1].distance_km == pytest.approx(4.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_applies_directory_filters(self, harness):
        harness.directory.add(
            make_profile("pro-plumber", km_north=1.0),
            make_profile("pro-electrician", km_north=1.0, specialties=[("Electrician", "electrical")]),
            make_profile("pro-busy", km_north=1.0, available=False),
        )

        found = await harness.geo.find_nearby_professionals(
            ORIGIN_LAT, ORIGIN_LNG, 5, ProfessionalFilters(service_category="plumb")
        )

        assert [n.professional_id for n in found] == ["pro-plumber"]

    @pytest.mark.asyncio
    async def test_second_lookup_is_served_from_cache(self, harness):
        harness.directory.add(make_profile("pro-a", km_north=1.0))

        await harness.geo.find_nearby_professionals(ORIGIN_LAT, ORIGIN_LNG, 5)
        await harness.geo.find_nearby_professionals(ORIGIN_LAT + 0.00001, ORIGIN_LNG, 5)

        assert harness.directory.box_queries == 1
        assert harness.geo.cache_size() == 1

    @pytest.mark.asyncio
    async def test_different_filters_use_different_entries(self, harness):
        harness.directory.add(make_profile("pro-a", km_north=1.0))

        await harness.geo.find_nearby_professionals(ORIGIN_LAT, ORIGIN_LNG, 5)
        await harness.geo.find_nearby_professionals(
            ORIGIN_LAT, ORIGIN_LNG, 5, ProfessionalFilters(service_category="plumber")
        )

        assert harness.directory.box_queries == 2

    @pytest.mark.asyncio
    async def test_cached_empty_result_hides_newcomer_until_cleared(self, harness):
        assert await harness.geo.find_nearby_professionals(ORIGIN_LAT, ORIGIN_LNG, 5) == []

        harness.directory.add(make_profile("pro-new", km_north=1.0))
        assert await harness.geo.find_nearby_professionals(ORIGIN_LAT, ORIGIN_LNG, 5) == []

        harness.geo.clear_cache()
        found = await harness.geo.find_nearby_professionals(ORIGIN_LAT, ORIGIN_LNG, 5)

        assert [n.professional_id for n in found] == ["pro-new"]

    @pytest.mark.asyncio
    async def test_directory_failure_returns_empty(self, harness):
        harness.directory.fail = True

        found = await harness.geo.find_nearby_professionals(ORIGIN_LAT, ORIGIN_LNG, 5)

        assert found == []
        assert harness.geo.cache_size() == 0


class TestLocationUpdates:
    @pytest.mark.asyncio
    async def test_update_invalidates_cached_results_containing_professional(self, harness):
        harness.directory.add(make_profile("pro-a", km_north=1.0))
        await harness.geo.find_nearby_professionals(ORIGIN_LAT, ORIGIN_LNG, 5)

        await harness.geo.update_professional_location("pro-a", north_of(ORIGIN_LAT, 20), ORIGIN_LNG)
        found = await harness.geo.find_nearby_professionals(ORIGIN_LAT, ORIGIN_LNG, 5)

        assert found == []
        assert harness.directory.box_queries == 2

    @pytest.mark.asyncio
    async def test_update_keeps_unrelated_entries(self, harness):
        harness.directory.add(make_profile("pro-a", km_north=1.0), make_profile("pro-b", km_north=30.0))
        await harness.geo.find_nearby_professionals(ORIGIN_LAT, ORIGIN_LNG, 5)

        await harness.geo.update_professional_location("pro-b", north_of(ORIGIN_LAT, 31), ORIGIN_LNG)

        assert harness.geo.cache_size() == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("lat,lng", [(91, 0), (0, -180.01), (float("nan"), 0), ("1", "2")])
    async def test_invalid_coordinates_raise(self, harness, lat, lng):
        harness.directory.add(make_profile("pro-a"))
        with pytest.raises(ValidationError):
            await harness.geo.update_professional_location("pro-a", lat, lng)

    @pytest.mark.asyncio
    async def test_unknown_professional_raises_not_found(self, harness):
        with pytest.raises(NotFoundError):
            await harness.geo.update_professional_location("ghost", 0, 0)

    @pytest.mark.asyncio
    async def test_get_professional_location(self, harness):
        harness.directory.add(make_profile("pro-a", lat=-34.6, lng=-58.4))

        assert await harness.geo.get_professional_location("pro-a") == GeoPoint(-34.6, -58.4)

        with pytest.raises(NotFoundError):
            await harness.geo.get_professional_location("ghost")


class TestFindNearbyRequests:
    @pytest.mark.asyncio
    async def test_returns_pending_requests_in_radius(self, harness):
        near = await harness.create("client-1", location=GeoPoint(north_of(ORIGIN_LAT, 2), ORIGIN_LNG))
        await harness.create("client-2", location=GeoPoint(north_of(ORIGIN_LAT, 30), ORIGIN_LNG))

        found = await harness.geo.find_nearby_requests(ORIGIN_LAT, ORIGIN_LNG, 10)

        assert [n.request.id for n in found] == [near.id]
        assert found[0].distance_km == pytest.approx(2.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_category_filter(self, harness):
        await harness.create("client-1", service_category="electrician")
        plumbing = await harness.create("client-2", service_category="plumber")

        found = await harness.geo.find_nearby_requests(ORIGIN_LAT, ORIGIN_LNG, 10, service_category="plumb")

        assert [n.request.id for n in found] == [plumbing.id]
