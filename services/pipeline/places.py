"""Google Places Nearby Search adapter.

Internal helper: performs HTTP calls only, never touches the database.
"""

import asyncio
import os
from typing import Any, Dict, List, Optional

import httpx
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel

from db.models.business import NewBusiness
from lib.errors import PlacesAPIError, QuotaExceededError, ScrapenationError
from lib.retry import with_retry

load_dotenv()

GOOGLE_PLACES_API_KEY = os.getenv("GOOGLE_PLACES_API_KEY", "")
NEARBY_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"

MAX_PAGES = 3
PAGE_TOKEN_DELAY = 2.0  # next_page_token is not valid immediately
QUOTA_STATUSES = {"OVER_QUERY_LIMIT"}


class PlacesSearchResult(BaseModel):
    places: List[NewBusiness] = []
    api_calls: int = 0


def _address_components(place: Dict[str, Any]) -> Dict[str, Optional[str]]:
    city = state = postal_code = None
    for component in place.get("address_components") or []:
        types = component.get("types") or []
        if "locality" in types:
            city = component.get("long_name")
        elif "administrative_area_level_1" in types:
            state = component.get("short_name")
        elif "postal_code" in types:
            postal_code = component.get("long_name")
    return {"city": city, "state": state, "postal_code": postal_code}


def transform_place(
    place: Dict[str, Any],
    business_type: str,
    fallback_city: Optional[str] = None,
    fallback_state: Optional[str] = None,
    fallback_postal_code: Optional[str] = None,
) -> NewBusiness:
    """Map a Places result onto a business row; the ZIP tile fills missing location."""
    parts = _address_components(place)
    location = (place.get("geometry") or {}).get("location") or {}
    return NewBusiness(
        place_id=place["place_id"],
        name=place.get("name") or "",
        formatted_address=place.get("vicinity") or place.get("formatted_address") or "",
        latitude=location.get("lat"),
        longitude=location.get("lng"),
        rating=place.get("rating"),
        user_ratings_total=place.get("user_ratings_total"),
        price_level=place.get("price_level"),
        types=place.get("types") or [],
        business_type=business_type,
        city=parts["city"] or fallback_city,
        state=parts["state"] or fallback_state,
        postal_code=parts["postal_code"] or fallback_postal_code,
    )


class PlacesClient:
    """Nearby search with pagination. One instance can be shared across tiles."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        page_token_delay: float = PAGE_TOKEN_DELAY,
    ):
        self.api_key = api_key if api_key is not None else GOOGLE_PLACES_API_KEY
        self._client = client
        self.page_token_delay = page_token_delay
        if not self.api_key:
            logger.warning("GOOGLE_PLACES_API_KEY not configured")

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _search_page(self, params: Dict[str, Any]) -> Dict[str, Any]:
        async def call() -> Dict[str, Any]:
            resp = await self._http().get(NEARBY_SEARCH_URL, params=params)
            if resp.status_code == 429:
                raise QuotaExceededError("Google Places API", {"http_status": 429})
            resp.raise_for_status()
            return resp.json()

        data = await with_retry(
            call,
            max_attempts=5,
            on_retry=lambda attempt, e: logger.warning(f"Places retry {attempt}: {e}"),
        )

        status = data.get("status")
        if status in QUOTA_STATUSES:
            raise QuotaExceededError("Google Places API", {"status": status})
        if status not in ("OK", "ZERO_RESULTS"):
            raise PlacesAPIError(
                f"Places API returned status: {status}",
                context={"status": status, "error_message": data.get("error_message")},
            )
        return data

    async def search_nearby(
        self,
        latitude: float,
        longitude: float,
        radius_meters: int,
        keyword: str,
        fallback_city: Optional[str] = None,
        fallback_state: Optional[str] = None,
        fallback_postal_code: Optional[str] = None,
    ) -> PlacesSearchResult:
        """Up to three pages (60 places). api_calls counts pages fetched."""
        params = {
            "location": f"{latitude},{longitude}",
            "radius": radius_meters,
            "keyword": keyword,
            "key": self.api_key,
        }
        raw: List[Dict[str, Any]] = []
        pages = 0
        token: Optional[str] = None

        try:
            while pages < MAX_PAGES:
                if token:
                    await asyncio.sleep(self.page_token_delay)
                    data = await self._search_page({"pagetoken": token, "key": self.api_key})
                else:
                    data = await self._search_page(params)
                pages += 1
                raw.extend(data.get("results") or [])
                token = data.get("next_page_token")
                if not token:
                    break
        except ScrapenationError as e:
            # Pages fetched before the failure were still billed
            e.context["api_calls"] = pages
            raise

        places = [
            transform_place(p, keyword, fallback_city, fallback_state, fallback_postal_code)
            for p in raw
            if p.get("place_id")
        ]
        return PlacesSearchResult(places=places, api_calls=pages)
