"""Great-circle distance and coordinate validation."""

from __future__ import annotations

import math
from typing import Optional

from matchfeed.domain.matching.exceptions import InvalidCoordinates
from matchfeed.domain.matching.vectors import to_finite

EARTH_RADIUS_KM = 6371.0


def is_valid_latitude(value: Optional[float]) -> bool:
	return value is not None and math.isfinite(value) and -90.0 <= value <= 90.0


def is_valid_longitude(value: Optional[float]) -> bool:
	return value is not None and math.isfinite(value) and -180.0 <= value <= 180.0


def coerce_coordinates(lat, lng) -> tuple[Optional[float], Optional[float]]:
	"""Return (lat, lng) when both are finite and in range, else (None, None)."""
	lat_value = to_finite(lat)
	lng_value = to_finite(lng)
	if is_valid_latitude(lat_value) and is_valid_longitude(lng_value):
		return lat_value, lng_value
	return None, None


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
	for lat, lng in ((lat1, lng1), (lat2, lng2)):
		if not is_valid_latitude(lat) or not is_valid_longitude(lng):
			raise InvalidCoordinates()
	d_lat = math.radians(lat2 - lat1)
	d_lng = math.radians(lng2 - lng1)
	a = (
		math.sin(d_lat / 2) ** 2
		+ math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
	)
	c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
	return EARTH_RADIUS_KM * c


def distance_between(
	lat1: Optional[float],
	lng1: Optional[float],
	lat2: Optional[float],
	lng2: Optional[float],
) -> Optional[float]:
	if lat1 is None or lng1 is None or lat2 is None or lng2 is None:
		return None
	try:
		return haversine_km(lat1, lng1, lat2, lng2)
	except InvalidCoordinates:
		return None


__all__ = [
	"EARTH_RADIUS_KM",
	"is_valid_latitude",
	"is_valid_longitude",
	"coerce_coordinates",
	"haversine_km",
	"distance_between",
]
