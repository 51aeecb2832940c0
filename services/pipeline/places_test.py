"""Tests for the Places adapter."""

import httpx
import pytest

from lib.errors import PlacesAPIError, QuotaExceededError
from services.pipeline.places import PlacesClient, transform_place


def _place(place_id, name="Acme Plumbing", **extra):
    place = {
        "place_id": place_id,
        "name": name,
        "vicinity": "100 Main St, Raleigh",
        "geometry": {"location": {"lat": 35.7, "lng": -78.6}},
        "rating": 4.6,
        "user_ratings_total": 120,
        "types": ["plumber", "point_of_interest"],
    }
    place.update(extra)
    return place


def _client(handler) -> PlacesClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PlacesClient(api_key="test-key", client=http, page_token_delay=0)


@pytest.mark.no_db
class TestTransformPlace:
    """Tests for transform_place."""

    def test_fields(self):
        """Should map a nearby result onto a business row."""
        b = transform_place(_place("p1"), "plumber", "Raleigh", "NC", "27610")
        assert b.place_id == "p1"
        assert b.formatted_address == "100 Main St, Raleigh"
        assert (b.latitude, b.longitude) == (35.7, -78.6)
        assert b.types == ["plumber", "point_of_interest"]
        assert b.business_type == "plumber"
        assert (b.city, b.state, b.postal_code) == ("Raleigh", "NC", "27610")

    def test_address_components_win(self):
        """Should prefer address components over the ZIP tile's location."""
        place = _place("p1", address_components=[
            {"long_name": "Garner", "short_name": "Garner", "types": ["locality"]},
            {"long_name": "North Carolina", "short_name": "NC", "types": ["administrative_area_level_1"]},
            {"long_name": "27529", "short_name": "27529", "types": ["postal_code"]},
        ])
        b = transform_place(place, "plumber", "Raleigh", "SC", "27610")
        assert (b.city, b.state, b.postal_code) == ("Garner", "NC", "27529")

    def test_sparse_place(self):
        """Should tolerate missing optional fields."""
        b = transform_place({"place_id": "p2"}, "plumber")
        assert b.name == ""
        assert b.latitude is None
        assert b.types == []


@pytest.mark.no_db
class TestSearchNearby:
    """Tests for PlacesClient.search_nearby."""

    @pytest.mark.asyncio
    async def test_single_page(self):
        """Should return places and count one call."""
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"status": "OK", "results": [_place("p1"), _place("p2")]})

        client = _client(handler)
        result = await client.search_nearby(35.7, -78.6, 5000, "plumber", "Raleigh", "NC", "27610")

        assert result.api_calls == 1
        assert [p.place_id for p in result.places] == ["p1", "p2"]
        assert seen[0]["location"] == "35.7,-78.6"
        assert seen[0]["radius"] == "5000"
        assert seen[0]["keyword"] == "plumber"
        await client.close()

    @pytest.mark.asyncio
    async def test_pagination(self):
        """Should follow next_page_token up to three pages."""
        calls = []

        def handler(request):
            token = request.url.params.get("pagetoken")
            calls.append(token)
            page = len(calls)
            body = {"status": "OK", "results": [_place(f"p{page}")], "next_page_token": f"t{page}"}
            return httpx.Response(200, json=body)

        result = await _client(handler).search_nearby(35.7, -78.6, 5000, "plumber")

        assert result.api_calls == 3
        assert calls == [None, "t1", "t2"]
        assert [p.place_id for p in result.places] == ["p1", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_zero_results(self):
        """Should treat ZERO_RESULTS as an empty tile."""
        client = _client(lambda r: httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []}))
        result = await client.search_nearby(35.7, -78.6, 5000, "plumber")
        assert result.places == []
        assert result.api_calls == 1

    @pytest.mark.asyncio
    async def test_skips_results_without_place_id(self):
        """Should drop results that cannot be keyed."""
        body = {"status": "OK", "results": [_place("p1"), {"name": "No id"}]}
        result = await _client(lambda r: httpx.Response(200, json=body)).search_nearby(0, 0, 100, "x")
        assert [p.place_id for p in result.places] == ["p1"]

    @pytest.mark.asyncio
    async def test_http_429_is_quota(self):
        """Should raise QuotaExceededError on HTTP 429 without retrying."""
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(429)

        with pytest.raises(QuotaExceededError):
            await _client(handler).search_nearby(0, 0, 100, "plumber")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_over_query_limit_is_quota(self):
        """Should raise QuotaExceededError on OVER_QUERY_LIMIT."""
        client = _client(lambda r: httpx.Response(200, json={"status": "OVER_QUERY_LIMIT"}))
        with pytest.raises(QuotaExceededError) as exc:
            await client.search_nearby(0, 0, 100, "plumber")
        assert exc.value.service == "Google Places API"

    @pytest.mark.asyncio
    async def test_request_denied(self):
        """Should raise PlacesAPIError for other statuses."""
        body = {"status": "REQUEST_DENIED", "error_message": "The provided API key is invalid."}
        client = _client(lambda r: httpx.Response(200, json=body))
        with pytest.raises(PlacesAPIError, match="REQUEST_DENIED") as exc:
            await client.search_nearby(0, 0, 100, "plumber")
        assert exc.value.context["error_message"] == "The provided API key is invalid."

    @pytest.mark.asyncio
    async def test_quota_on_later_page_keeps_call_count(self):
        """Should report the pages already fetched when a later page hits the quota."""
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 3:
                return httpx.Response(200, json={"status": "OVER_QUERY_LIMIT"})
            body = {"status": "OK", "results": [_place(f"p{len(calls)}")], "next_page_token": f"t{len(calls)}"}
            return httpx.Response(200, json=body)

        with pytest.raises(QuotaExceededError) as exc:
            await _client(handler).search_nearby(35.7, -78.6, 5000, "plumber")
        assert exc.value.context["api_calls"] == 2
