"""
Geolocation stage: Kazakhstan addresses → (lat, lon).

Nominatim first, then a static city-centre table. Addresses outside the
supported country are not geocoded at all.
"""

import logging
from typing import Optional

import httpx

from ticketflow.config import GEOCODER_TIMEOUT_SECONDS, GEOCODER_URL, GEOCODER_USER_AGENT

logger = logging.getLogger(__name__)

Coords = tuple[float, float]

COUNTRY_VARIANTS = frozenset({"казахстан", "kazakhstan", "kz", "қазақстан"})

# City centres used when the geocoder is unavailable. Keys are lower-case.
CITY_FALLBACK: dict[str, Coords] = {
    "алматы": (43.222, 76.8512),
    "алма-ата": (43.222, 76.8512),
    "almaty": (43.222, 76.8512),
    "астана": (51.1801, 71.446),
    "нур-султан": (51.1801, 71.446),
    "нурсултан": (51.1801, 71.446),
    "astana": (51.1801, 71.446),
    "шымкент": (42.3417, 69.5901),
    "shymkent": (42.3417, 69.5901),
    "атырау": (47.1167, 51.8833),
    "atyrau": (47.1167, 51.8833),
    "актобе": (50.2797, 57.2073),
    "aktobe": (50.2797, 57.2073),
    "павлодар": (52.2873, 76.9674),
    "pavlodar": (52.2873, 76.9674),
    "усть-каменогорск": (49.9839, 82.6143),
    "семей": (50.4112, 80.2275),
    "semey": (50.4112, 80.2275),
    "тараз": (42.9, 71.3667),
    "taraz": (42.9, 71.3667),
    "костанай": (53.2144, 63.6246),
    "kostanay": (53.2144, 63.6246),
    "кызылорда": (44.8479, 65.5092),
    "уральск": (51.2333, 51.3667),
    "актау": (43.6417, 51.2),
    "петропавловск": (54.875, 69.1611),
    "кокшетау": (53.2844, 69.3961),
}


def is_supported_country(country: Optional[str]) -> bool:
    return bool(country) and country.strip().lower() in COUNTRY_VARIANTS


def city_centroid(city: Optional[str]) -> Optional[Coords]:
    """Static lookup, case-insensitive, matching when either name contains the other."""
    if not city or not city.strip():
        return None
    key = city.strip().lower()
    for variant, coords in CITY_FALLBACK.items():
        if variant in key or key in variant:
            return coords
    return None


class Geocoder:
    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str = GEOCODER_URL,
        user_agent: str = GEOCODER_USER_AGENT,
        timeout: float = GEOCODER_TIMEOUT_SECONDS,
    ):
        self.client = client
        self.url = url
        self.user_agent = user_agent
        self.timeout = timeout

    async def search(self, query: str) -> Optional[Coords]:
        """One address search; raises on transport errors, None on an empty result."""
        res = await self.client.get(
            self.url,
            params={"q": query, "format": "json", "limit": 1},
            headers={"User-Agent": self.user_agent},
            timeout=self.timeout,
        )
        res.raise_for_status()
        data = res.json()
        if not data:
            return None
        return float(data[0]["lat"]), float(data[0]["lon"])

    async def geocode(
        self,
        country: Optional[str],
        city: Optional[str],
        street: Optional[str] = None,
        house: Optional[str] = None,
    ) -> Optional[Coords]:
        if not is_supported_country(country):
            return None

        if city or street:
            query = ", ".join(p for p in (street, house, city, "Kazakhstan") if p)
            try:
                coords = await self.search(query)
                if coords:
                    return coords
            except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
                logger.warning("Geocoder unavailable for %r: %s; using city fallback.", query, e)

        return city_centroid(city)
