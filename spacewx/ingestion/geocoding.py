"""
geocoding.py — Resolve a subscriber's free-text location to a latitude.

Backed by the OpenStreetMap Nominatim search API:

    GET https://nominatim.openstreetmap.org/search?q=Nairobi&format=json&limit=1
    → [{"lat": "-1.2833", "lon": "36.8167", "display_name": "..."}]

Only the latitude is needed (auroral visibility depends on |lat|). Results
are not cached: every poll cycle geocodes afresh.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from spacewx.core.config import settings
from spacewx.core.errors import GeocodingError

logger = logging.getLogger(__name__)


class NominatimGeocoder:
    """Latitude lookup via Nominatim."""

    def __init__(
        self,
        *,
        base_url: str = settings.GEOCODER_URL,
        user_agent: str = settings.GEOCODER_USER_AGENT,
        timeout_seconds: float = settings.GEOCODER_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={"User-Agent": self.user_agent},
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def resolve_latitude(self, location: str) -> Optional[float]:
        """
        Look up the latitude for a place name.

        Returns None when the place is unknown. Raises GeocodingError when
        the lookup itself fails (network, HTTP error, unreadable payload).
        """
        query = (location or "").strip()
        if not query:
            return None

        client = await self._get_client()
        try:
            response = await client.get(
                self.base_url,
                params={"q": query, "format": "json", "limit": 1},
            )
            response.raise_for_status()
            matches = response.json()
        except httpx.HTTPError as exc:
            raise GeocodingError(query, str(exc) or type(exc).__name__)
        except ValueError as exc:
            raise GeocodingError(query, f"invalid JSON: {exc}")

        if not isinstance(matches, list) or not matches:
            logger.info("No geocoding match for %r", query)
            return None

        try:
            return float(matches[0]["lat"])
        except (KeyError, TypeError, ValueError) as exc:
            raise GeocodingError(query, f"unexpected payload: {exc}")
