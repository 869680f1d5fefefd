"""Address search and reverse geocoding via the LocationIQ API.

Patients type a free-text address; this turns it into coordinates the
assignment engine can score. Only the resulting coordinate pair matters to
the rest of the system.
"""

import logging

import httpx

from app.config import GEOCODING_TIMEOUT, LOCATIONIQ_API_KEY, LOCATIONIQ_BASE_URL
from app.models.geocode import GeocodeResult

logger = logging.getLogger(__name__)


class GeocodingError(Exception):
    """The geocoding provider could not be reached or answered with an error."""


def _parse_result(item: dict) -> GeocodeResult | None:
    try:
        return GeocodeResult(
            latitude=float(item["lat"]),
            longitude=float(item["lon"]),
            display_name=item.get("display_name", ""),
        )
    except (KeyError, TypeError, ValueError):
        logger.debug("Skipping malformed geocoding result: %s", item)
        return None


async def _get(path: str, params: dict) -> httpx.Response:
    try:
        async with httpx.AsyncClient(base_url=LOCATIONIQ_BASE_URL, timeout=GEOCODING_TIMEOUT) as client:
            resp = await client.get(path, params={"key": LOCATIONIQ_API_KEY, "format": "json", **params})
            resp.raise_for_status()
            return resp
    except httpx.HTTPStatusError as e:
        logger.error("LocationIQ API error %s: %s", e.response.status_code, e)
        raise GeocodingError(f"LocationIQ returned {e.response.status_code}") from e
    except httpx.HTTPError as e:
        logger.error("LocationIQ request failed: %s", e)
        raise GeocodingError("LocationIQ unreachable") from e


async def search_location(query: str) -> list[GeocodeResult]:
    """Forward geocode free text into zero or more candidate locations."""
    if not LOCATIONIQ_API_KEY:
        logger.warning("LOCATIONIQ_API_KEY not set, cannot search locations")
        return []
    if not query.strip():
        return []

    resp = await _get("/search.php", {"q": query})
    data = resp.json()
    if not isinstance(data, list):
        return []
    results = [_parse_result(item) for item in data]
    return [r for r in results if r is not None]


async def reverse_geocode(latitude: float, longitude: float) -> GeocodeResult | None:
    if not LOCATIONIQ_API_KEY:
        logger.warning("LOCATIONIQ_API_KEY not set, cannot reverse geocode")
        return None

    resp = await _get("/reverse.php", {"lat": latitude, "lon": longitude})
    data = resp.json()
    if not isinstance(data, dict):
        return None
    return _parse_result(data)
