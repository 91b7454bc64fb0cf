"""
Best-effort conversion of free-text location fields into geographic points.

Accepted inputs: WKT points ('POINT(13.40 52.52)', longitude first), GeoJSON
Point objects, and plain 'latitude, longitude' pairs. Anything else, or any
coordinate out of range, yields None rather than an error.
"""

import json
import re
from typing import NamedTuple, Optional

_NUMBER = r"[-+]?\d+(?:\.\d+)?"
_WKT_POINT = re.compile(rf"^\s*POINT\s*\(\s*({_NUMBER})\s+({_NUMBER})\s*\)\s*$", re.IGNORECASE)
_LAT_LON_PAIR = re.compile(rf"^\s*\(?\s*({_NUMBER})\s*[,;]\s*({_NUMBER})\s*\)?\s*$")


class GeoPoint(NamedTuple):
    latitude: float
    longitude: float


def _checked(latitude: float, longitude: float) -> Optional[GeoPoint]:
    if -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0:
        return GeoPoint(latitude, longitude)
    return None


def _from_geojson(text: str) -> Optional[GeoPoint]:
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    if not isinstance(payload, dict) or str(payload.get("type", "")).lower() != "point":
        return None
    coordinates = payload.get("coordinates")
    if not isinstance(coordinates, list) or len(coordinates) < 2:
        return None
    try:
        longitude, latitude = float(coordinates[0]), float(coordinates[1])
    except (TypeError, ValueError):
        return None
    return _checked(latitude, longitude)


def to_point(text: Optional[str]) -> Optional[GeoPoint]:
    """Return the point described by text, or None when it cannot be read."""
    if text is None or not isinstance(text, str) or not text.strip():
        return None

    match = _WKT_POINT.match(text)
    if match:
        return _checked(latitude=float(match.group(2)), longitude=float(match.group(1)))

    if text.lstrip().startswith("{"):
        return _from_geojson(text)

    match = _LAT_LON_PAIR.match(text)
    if match:
        return _checked(latitude=float(match.group(1)), longitude=float(match.group(2)))

    return None
