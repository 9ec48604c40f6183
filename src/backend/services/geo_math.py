"""
Great-circle distance and travel speed calculations.

Used by the impossible-travel rule to decide whether two consecutive logins
could have been made by the same person.
"""

import math
from datetime import timedelta
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

EARTH_RADIUS_KM = 6371.0

# Typical commercial flight speed (~900 km/h) plus a buffer
DEFAULT_IMPOSSIBLE_SPEED_KMH = 1100.0


def _valid_coordinate(value: Optional[float], limit: float) -> bool:
    return value is not None and math.isfinite(value) and -limit <= value <= limit


class DistanceSpeedCalculator:
    """Haversine distance, implied speed and the impossible-travel threshold."""

    def __init__(self, impossible_speed_kmh: float = DEFAULT_IMPOSSIBLE_SPEED_KMH):
        self.impossible_speed_kmh = impossible_speed_kmh

    def distance(
        self,
        lat1: Optional[float],
        lon1: Optional[float],
        lat2: Optional[float],
        lon2: Optional[float],
    ) -> float:
        """
        Great-circle distance in kilometers.

        Missing or out-of-range coordinates return 0.0 instead of raising, which
        suppresses impossible-travel detection for bad data.
        """
        if not (
            _valid_coordinate(lat1, 90)
            and _valid_coordinate(lon1, 180)
            and _valid_coordinate(lat2, 90)
            and _valid_coordinate(lon2, 180)
        ):
            logger.warning(
                "invalid_coordinates_for_distance",
                lat1=lat1,
                lon1=lon1,
                lat2=lat2,
                lon2=lon2,
            )
            return 0.0

        lat_delta = math.radians(lat2 - lat1)
        lon_delta = math.radians(lon2 - lon1)
        a = math.sin(lat_delta / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(
            math.radians(lat2)
        ) * math.sin(lon_delta / 2) ** 2
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
        return EARTH_RADIUS_KM * c

    def speed(self, distance_km: float, elapsed: Optional[timedelta]) -> float:
        """
        Implied speed in km/h.

        A zero or negative interval (clock skew, duplicate timestamps) is
        treated as infinitely fast.
        """
        if elapsed is None or elapsed <= timedelta(0):
            return math.inf

        hours = (elapsed / timedelta(milliseconds=1)) / 3_600_000
        if hours == 0:
            return math.inf
        return distance_km / hours

    def is_impossible(self, speed_kmh: float) -> bool:
        return speed_kmh > self.impossible_speed_kmh
