"""
Architect Studio - Geocoding
UK address / postcode lookup through OpenStreetMap Nominatim.
"""

import logging
import math
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

NOMINATIM_URL = "https://nominatim.openstreetmap.org"
USER_AGENT    = "ArchitectStudio/1.0"
EARTH_RADIUS_M = 6_371_000


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres (haversine)."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi    = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class Geocoder:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def _get(self, path: str, params: dict):
        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                resp = await client.get(f"{NOMINATIM_URL}{path}", params=params,
                                        headers={"User-Agent": USER_AGENT})
            if resp.status_code >= 400:
                logger.error(f"[GEOCODE] Nominatim error {resp.status_code}")
                return None
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[GEOCODE] request failed: {e}")
            return None

    async def geocode_address(self, query: str) -> Optional[dict]:
        """Returns {"latitude", "longitude", "displayName", "type"} or None."""
        results = await self._get("/search", {
            "q": query, "format": "json", "limit": 1, "countrycodes": "gb",
        })
        if not results:
            return None
        top = results[0]
        try:
            return {
                "latitude":    float(top["lat"]),
                "longitude":   float(top["lon"]),
                "displayName": top.get("display_name"),
                "type":        top.get("type"),
            }
        except (KeyError, TypeError, ValueError):
            return None
