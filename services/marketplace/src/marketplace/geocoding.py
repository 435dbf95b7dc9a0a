"""Client for a postcodes.io-compatible geocoding API.

Lookups are cached in the shared cache for a day: postcodes and places do
not move. A 404 (or an empty result) means "not found" and is returned as
``None``; timeouts, transport failures and server errors raise
``GeocodingUnavailable`` so callers can decide whether a miss is fatal.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from common import cache_keys
from common.cache import CacheLayer
from common.utils import (
    compact_postcode,
    is_uk_postcode,
    normalize_location_text,
    normalize_postcode,
)

from marketplace.errors import GeocodingUnavailable
from marketplace.geo import GeoPoint
from marketplace.models import LocationSearchResult, PostcodeLookupResult

DEFAULT_GEOCODER_URL = "https://api.postcodes.io"
DEFAULT_GEOCODER_TIMEOUT_SECONDS = 5.0
LOGGER = logging.getLogger("gigmatch.geocoding")


def create_geocoder_client(base_url: str, timeout_seconds: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout_seconds))


def _to_lookup_result(raw: dict[str, Any]) -> PostcodeLookupResult:
    return PostcodeLookupResult(
        postcode=raw["postcode"],
        latitude=raw["latitude"],
        longitude=raw["longitude"],
        city=raw.get("admin_district"),
        region=raw.get("region"),
        country=raw.get("country"),
        admin_district=raw.get("admin_district"),
    )


class PostcodeGeocoder:
    def __init__(self, client: httpx.AsyncClient, cache: CacheLayer) -> None:
        self.client = client
        self.cache = cache

    @staticmethod
    def validate_postcode_format(postcode: str) -> str | None:
        cleaned = normalize_postcode(postcode)
        if not is_uk_postcode(cleaned):
            return None
        return cleaned

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any | None:
        try:
            response = await self.client.get(path, params=params)
        except httpx.HTTPError as exc:
            LOGGER.error(json.dumps({"event": "geocode_failed", "path": path, "error": str(exc)}))
            raise GeocodingUnavailable(str(exc)) from exc

        if response.status_code == 404:
            LOGGER.warning(json.dumps({"event": "geocode_not_found", "path": path}))
            return None
        if response.status_code >= 400:
            LOGGER.error(
                json.dumps(
                    {"event": "geocode_failed", "path": path, "status_code": response.status_code}
                )
            )
            raise GeocodingUnavailable(f"geocoder answered {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise GeocodingUnavailable("geocoder returned invalid JSON") from exc

    async def lookup_postcode(self, postcode: str) -> PostcodeLookupResult | None:
        cleaned = self.validate_postcode_format(postcode)
        if cleaned is None:
            return None

        cache_key = cache_keys.postcode_lookup(cleaned)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return PostcodeLookupResult.model_validate(cached)

        body = await self._get_json(f"/postcodes/{compact_postcode(cleaned)}")
        if not body or body.get("status") != 200 or not body.get("result"):
            return None

        result = _to_lookup_result(body["result"])
        await self.cache.set(
            cache_key,
            result.model_dump(mode="json"),
            cache_keys.POSTCODE_LOOKUP_TTL,
        )
        return result

    async def bulk_lookup_postcodes(
        self,
        postcodes: list[str],
    ) -> dict[str, PostcodeLookupResult | None]:
        results: dict[str, PostcodeLookupResult | None] = {}
        uncached: dict[str, str] = {}
        for postcode in postcodes:
            cleaned = self.validate_postcode_format(postcode)
            if cleaned is None:
                results[postcode] = None
                continue
            cached = await self.cache.get(cache_keys.postcode_lookup(cleaned))
            if cached is not None:
                results[postcode] = PostcodeLookupResult.model_validate(cached)
            else:
                uncached[cleaned] = postcode

        if not uncached:
            return results

        try:
            response = await self.client.post("/postcodes", json={"postcodes": list(uncached)})
            response.raise_for_status()
            items = response.json().get("result") or []
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.error(json.dumps({"event": "bulk_geocode_failed", "error": str(exc)}))
            items = []

        for item in items:
            query = normalize_postcode(str(item.get("query", "")))
            original = uncached.get(query, query)
            if item.get("result"):
                result = _to_lookup_result(item["result"])
                results[original] = result
                await self.cache.set(
                    cache_keys.postcode_lookup(query),
                    result.model_dump(mode="json"),
                    cache_keys.POSTCODE_LOOKUP_TTL,
                )
            else:
                results[original] = None

        for original in uncached.values():
            results.setdefault(original, None)
        return results

    async def reverse_geocode(self, lat: float, lng: float) -> PostcodeLookupResult | None:
        cache_key = cache_keys.reverse_geocode(lat, lng)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return PostcodeLookupResult.model_validate(cached)

        try:
            body = await self._get_json("/postcodes", params={"lon": lng, "lat": lat})
        except GeocodingUnavailable:
            return None
        if not body or body.get("status") != 200 or not body.get("result"):
            return None

        result = _to_lookup_result(body["result"][0])
        await self.cache.set(
            cache_key,
            result.model_dump(mode="json"),
            cache_keys.POSTCODE_LOOKUP_TTL,
        )
        return result

    async def autocomplete_postcode(self, partial: str) -> list[str]:
        partial = partial.strip()
        if len(partial) < 2:
            return []
        try:
            body = await self._get_json(f"/postcodes/{compact_postcode(partial)}/autocomplete")
        except GeocodingUnavailable:
            return []
        if not body:
            return []
        return list(body.get("result") or [])

    async def search_places(self, query: str) -> list[LocationSearchResult]:
        query = query.strip()
        if len(query) < 2:
            return []
        try:
            body = await self._get_json("/places", params={"q": query, "limit": 10})
        except GeocodingUnavailable:
            return []
        if not body:
            return []
        return [
            LocationSearchResult(
                postcode=place.get("code", ""),
                city=place.get("name_1"),
                region=place.get("region"),
                latitude=place["latitude"],
                longitude=place["longitude"],
            )
            for place in body.get("result") or []
            if place.get("latitude") is not None and place.get("longitude") is not None
        ]

    async def geocode(self, location_text: str) -> GeoPoint | None:
        """Resolve a postcode or place name to a point.

        Raises ``GeocodingUnavailable`` when the upstream service fails.
        """
        normalized = normalize_location_text(location_text)
        if not normalized:
            return None

        cache_key = cache_keys.geocoded_location(normalized)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return GeoPoint(cached["lat"], cached["lng"])

        if is_uk_postcode(normalized):
            lookup = await self.lookup_postcode(normalized)
            point = lookup.point() if lookup else None
        else:
            body = await self._get_json("/places", params={"q": normalized, "limit": 1})
            places = (body or {}).get("result") or []
            point = GeoPoint(places[0]["latitude"], places[0]["longitude"]) if places else None

        if point is not None:
            await self.cache.set(
                cache_key,
                {"lat": point.lat, "lng": point.lng},
                cache_keys.POSTCODE_LOOKUP_TTL,
            )
        return point
