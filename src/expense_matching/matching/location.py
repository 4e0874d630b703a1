"""Geographic distance and address comparison for transaction/receipt pairs."""

from __future__ import annotations

import math
import re

from ..errors import InvalidCoordinatesError
from ..schemas.records import Location

EARTH_RADIUS_KM = 6371.0

_ADDRESS_ABBREVIATIONS = {
    "street": "st",
    "avenue": "ave",
    "boulevard": "blvd",
    "drive": "dr",
    "road": "rd",
    "lane": "ln",
    "court": "ct",
    "place": "pl",
    "suite": "ste",
    "apartment": "apt",
    "highway": "hwy",
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
}
_ABBREVIATION_RE = re.compile(r"\b(" + "|".join(_ADDRESS_ABBREVIATIONS) + r")\b")

# (upper bound in km, category), checked in order
_DISTANCE_CATEGORIES = (
    (0.1, "same_location"),
    (0.5, "very_close"),
    (2.0, "nearby"),
    (10.0, "same_area"),
    (50.0, "same_city"),
)


def _coordinate(value: object, limit: float, name: str) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise InvalidCoordinatesError(f"{name} is not numeric: {value!r}")
    if math.isnan(number) or not -limit <= number <= limit:
        raise InvalidCoordinatesError(f"{name} out of range: {value!r}")
    return number


def normalize_address(address: str) -> str:
    """Lowercase, abbreviate street words, drop punctuation, collapse spaces."""
    text = address.lower().strip()
    text = _ABBREVIATION_RE.sub(lambda m: _ADDRESS_ABBREVIATIONS[m.group(1)], text)
    text = re.sub(r"[^\w\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


class LocationMatcher:
    """Pure geographic comparisons. Holds no state."""

    def distance_km(self, a: Location | None, b: Location | None) -> float | None:
        """Great-circle (haversine) distance between two locations.

        Returns:
            Distance in km, or None if either side lacks coordinates.

        Raises:
            InvalidCoordinatesError: If coordinates are present but malformed.
        """
        if a is None or b is None or not a.has_coordinates or not b.has_coordinates:
            return None

        lat1 = math.radians(_coordinate(a.latitude, 90.0, "latitude"))
        lon1 = math.radians(_coordinate(a.longitude, 180.0, "longitude"))
        lat2 = math.radians(_coordinate(b.latitude, 90.0, "latitude"))
        lon2 = math.radians(_coordinate(b.longitude, 180.0, "longitude"))

        dlat = lat2 - lat1
        dlon = lon2 - lon1
        h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
        return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))

    def same_address(self, a: Location | None, b: Location | None) -> bool:
        """Strict comparison of normalized addresses; False if either is missing."""
        if a is None or b is None or not a.address or not b.address:
            return False
        left = normalize_address(a.address)
        return bool(left) and left == normalize_address(b.address)

    @staticmethod
    def distance_category(distance_km: float | None) -> str:
        """Coarse distance bucket for display and logging."""
        if distance_km is None or math.isinf(distance_km):
            return "unknown"
        for bound, category in _DISTANCE_CATEGORIES:
            if distance_km < bound:
                return category
        return "distant"
