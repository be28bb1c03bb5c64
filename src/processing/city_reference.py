"""
Reference data for supported target cities: centroid and IANA timezone.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class CityReference:
    key: str
    latitude: float
    longitude: float
    timezone: str

    @property
    def name(self) -> str:
        return self.key.split(", ")[0].title()

    @property
    def region(self) -> str:
        return self.key.split(", ")[1].upper()


_EASTERN = "America/New_York"
_CENTRAL = "America/Chicago"
_MOUNTAIN = "America/Denver"
_PACIFIC = "America/Los_Angeles"

CITIES: dict[str, CityReference] = {
    city.key: city
    for city in (
        CityReference("new york, ny", 40.7128, -74.0060, _EASTERN),
        CityReference("los angeles, ca", 34.0522, -118.2437, _PACIFIC),
        CityReference("chicago, il", 41.8781, -87.6298, _CENTRAL),
        CityReference("houston, tx", 29.7604, -95.3698, _CENTRAL),
        CityReference("phoenix, az", 33.4484, -112.0740, "America/Phoenix"),
        CityReference("philadelphia, pa", 39.9526, -75.1652, _EASTERN),
        CityReference("san antonio, tx", 29.4241, -98.4936, _CENTRAL),
        CityReference("san diego, ca", 32.7157, -117.1611, _PACIFIC),
        CityReference("dallas, tx", 32.7767, -96.7970, _CENTRAL),
        CityReference("san jose, ca", 37.3382, -121.8863, _PACIFIC),
        CityReference("austin, tx", 30.2672, -97.7431, _CENTRAL),
        CityReference("jacksonville, fl", 30.3322, -81.6557, _EASTERN),
        CityReference("fort worth, tx", 32.7555, -97.3308, _CENTRAL),
        CityReference("columbus, oh", 39.9612, -82.9988, _EASTERN),
        CityReference("charlotte, nc", 35.2271, -80.8431, _EASTERN),
        CityReference("san francisco, ca", 37.7749, -122.4194, _PACIFIC),
        CityReference("indianapolis, in", 39.7684, -86.1581, "America/Indiana/Indianapolis"),
        CityReference("seattle, wa", 47.6062, -122.3321, _PACIFIC),
        CityReference("denver, co", 39.7392, -104.9903, _MOUNTAIN),
        CityReference("washington, dc", 38.9072, -77.0369, _EASTERN),
        CityReference("boston, ma", 42.3601, -71.0589, _EASTERN),
        CityReference("nashville, tn", 36.1627, -86.7816, _CENTRAL),
        CityReference("baltimore, md", 39.2904, -76.6122, _EASTERN),
        CityReference("louisville, ky", 38.2527, -85.7585, "America/Kentucky/Louisville"),
        CityReference("portland, or", 45.5152, -122.6784, _PACIFIC),
        CityReference("las vegas, nv", 36.1699, -115.1398, _PACIFIC),
        CityReference("milwaukee, wi", 43.0389, -87.9065, _CENTRAL),
        CityReference("albuquerque, nm", 35.0853, -106.6056, _MOUNTAIN),
        CityReference("tucson, az", 32.2226, -110.9747, "America/Phoenix"),
        CityReference("sacramento, ca", 38.5816, -121.4944, _PACIFIC),
        CityReference("atlanta, ga", 33.7490, -84.3880, _EASTERN),
        CityReference("kansas city, mo", 39.0997, -94.5786, _CENTRAL),
        CityReference("miami, fl", 25.7617, -80.1918, _EASTERN),
        CityReference("minneapolis, mn", 44.9778, -93.2650, _CENTRAL),
        CityReference("new orleans, la", 29.9511, -90.0715, _CENTRAL),
        CityReference("toronto, on", 43.6532, -79.3832, "America/Toronto"),
    )
}

_NON_WORD_RE = re.compile(r"[^a-z0-9, ]+")


def _normalize(text: str) -> str:
    return " ".join(_NON_WORD_RE.sub(" ", text.lower()).split())


def lookup_city(text: str | None) -> tuple[CityReference, bool] | None:
    """
    Find a reference city mentioned in `text`.

    Returns the city and whether the region matched too; a bare city-name
    match is weaker. Longest names win so "kansas city" beats "kansas".
    """
    if not text:
        return None
    normalized = _normalize(text)
    squashed = normalized.replace(",", "")
    for key in sorted(CITIES, key=len, reverse=True):
        city, region = key.split(", ")
        if key in normalized or f"{city} {region}" in squashed:
            return CITIES[key], True
    for key in sorted(CITIES, key=len, reverse=True):
        city = key.split(", ")[0]
        if re.search(rf"\b{re.escape(city)}\b", normalized):
            return CITIES[key], False
    return None


def city_timezone(text: str | None) -> str | None:
    match = lookup_city(text)
    return match[0].timezone if match else None
