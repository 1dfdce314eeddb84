"""Vector helpers shared by the scoring operators."""

from __future__ import annotations

import math
from typing import Optional, Sequence

from matchfeed.domain.matching.models import RatingAggregate


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
	return min(high, max(low, value))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
	"""Cosine of two equal-length vectors; 0 when either has zero norm."""
	dot = 0.0
	norm_a = 0.0
	norm_b = 0.0
	for av, bv in zip(a, b):
		dot += av * bv
		norm_a += av * av
		norm_b += bv * bv
	if not norm_a or not norm_b:
		return 0.0
	return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def centered(vector: Optional[Sequence[float]]) -> Optional[list[float]]:
	if not vector:
		return None
	mean = sum(vector) / len(vector)
	result = [value - mean for value in vector]
	if all(abs(value) < 1e-6 for value in result):
		return None
	return result


def to_finite(value) -> Optional[float]:
	if value is None or isinstance(value, bool):
		return None
	try:
		number = float(value)
	except (TypeError, ValueError):
		return None
	return number if math.isfinite(number) else None


def normalize_rating(value: Optional[float], rating_max: float) -> Optional[float]:
	number = to_finite(value)
	if number is None:
		return None
	return clamp(number / rating_max)


def rating_vector(aggregate: Optional[RatingAggregate], rating_max: float) -> Optional[list[float]]:
	if aggregate is None:
		return None
	values = aggregate.dimensions()
	if all(value is None for value in values):
		return None
	return [normalize_rating(value, rating_max) or 0.0 for value in values]


def average_rating(aggregate: RatingAggregate) -> Optional[float]:
	values = [number for number in (to_finite(value) for value in aggregate.dimensions()) if number is not None]
	if not values:
		return None
	return sum(values) / len(values)


__all__ = [
	"clamp",
	"cosine_similarity",
	"centered",
	"to_finite",
	"normalize_rating",
	"rating_vector",
	"average_rating",
]
