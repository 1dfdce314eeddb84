"""Pure scoring functions behind the match operators.

Every function returns a value in [0, 1]. ``None`` means "not comparable"
and is resolved to a neutral baseline by the caller, while 0 is a real
result (for example two interest sets with nothing in common).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from matchfeed.domain.matching.models import (
	Interest,
	PreferencesContext,
	QuizSnapshot,
	RatingAggregate,
	TraitValue,
)
from matchfeed.domain.matching.vectors import (
	average_rating,
	centered,
	clamp,
	cosine_similarity,
	normalize_rating,
	rating_vector,
)

TRAIT_CONFIDENCE_NORM = 5.0
NEARBY_TEXT_FALLBACK = 0.25
MAX_INTEREST_MATCHES = 5


@dataclass(slots=True, frozen=True)
class TraitSimilarity:
	value: Optional[float]
	coverage: float
	common_count: int


@dataclass(slots=True, frozen=True)
class InterestOverlap:
	overlap: float
	matches: tuple[str, ...]
	intersection: int
	user_count: int
	candidate_count: int

	def meta(self) -> dict[str, Any]:
		return {
			"matches": list(self.matches[:MAX_INTEREST_MATCHES]),
			"intersection": self.intersection,
			"userCount": self.user_count,
			"candidateCount": self.candidate_count,
		}


def trait_similarity(user: Sequence[TraitValue], candidate: Sequence[TraitValue]) -> TraitSimilarity:
	"""Confidence-weighted cosine over common traits with a coverage penalty.

	The cosine is mapped from [-1, 1] to [0, 1] so orthogonal profiles land on
	0.5, then scaled by sqrt(common / min(|user|, |candidate|)).
	"""
	if not user or not candidate:
		return TraitSimilarity(value=None, coverage=0.0, common_count=0)
	user_map = {trait.key: trait for trait in user}
	candidate_map = {trait.key: trait for trait in candidate}
	user_vec: list[float] = []
	candidate_vec: list[float] = []
	for key, trait in user_map.items():
		other = candidate_map.get(key)
		if other is None:
			continue
		user_vec.append(trait.value * clamp(trait.n / TRAIT_CONFIDENCE_NORM))
		candidate_vec.append(other.value * clamp(other.n / TRAIT_CONFIDENCE_NORM))
	if not user_vec:
		return TraitSimilarity(value=None, coverage=0.0, common_count=0)
	normalized = (cosine_similarity(user_vec, candidate_vec) + 1) / 2
	smallest = min(len(user), len(candidate))
	coverage = len(user_vec) / smallest if smallest else 0.0
	return TraitSimilarity(
		value=normalized * math.sqrt(coverage),
		coverage=coverage,
		common_count=len(user_vec),
	)


def _numeric_vector(values: Optional[Sequence[Any]]) -> Optional[list[float]]:
	if values is None:
		return None
	result: list[float] = []
	for value in values:
		if isinstance(value, bool) or not isinstance(value, (int, float)):
			return None
		result.append(float(value))
	return result


def _same_answer(a: Any, b: Any) -> bool:
	# Structured answers never compare equal; only scalar answers can match.
	if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
		return False
	return a == b


def answers_similarity(a: Mapping[str, Any], b: Mapping[str, Any]) -> float:
	if not a or not b:
		return 0.0
	overlap = 0
	matches = 0
	for key, value in a.items():
		if key not in b:
			continue
		overlap += 1
		if _same_answer(b[key], value):
			matches += 1
	return matches / overlap if overlap else 0.0


def quiz_similarity(user: QuizSnapshot, candidate: QuizSnapshot) -> float:
	vec_a = _numeric_vector(user.score_vec)
	vec_b = _numeric_vector(candidate.score_vec)
	if vec_a and vec_b and len(vec_a) == len(vec_b):
		return clamp((cosine_similarity(vec_a, vec_b) + 1) / 2)
	return answers_similarity(user.answers, candidate.answers)


def interest_overlap(user: Sequence[Interest], candidate: Sequence[Interest]) -> InterestOverlap:
	"""Jaccard similarity over ``subject_id:interest_id`` keys; 0 when either side is empty."""
	if not user or not candidate:
		return InterestOverlap(
			overlap=0.0,
			matches=(),
			intersection=0,
			user_count=len({item.key for item in user}),
			candidate_count=len({item.key for item in candidate}),
		)
	labels: dict[str, str] = {}
	user_keys: set[str] = set()
	for item in user:
		user_keys.add(item.key)
		labels[item.key] = item.label
	candidate_keys: list[str] = []
	for item in candidate:
		if item.key not in labels:
			labels[item.key] = item.label
		if item.key not in candidate_keys:
			candidate_keys.append(item.key)
	matches = [labels[key] for key in candidate_keys if key in user_keys]
	intersection = len(matches)
	union = len(user_keys) + len(candidate_keys) - intersection
	return InterestOverlap(
		overlap=intersection / union if union else 0.0,
		matches=tuple(matches),
		intersection=intersection,
		user_count=len(user_keys),
		candidate_count=len(candidate_keys),
	)


def interest_upper_bound(user_count: int, candidate_count: int) -> float:
	if user_count == 0 or candidate_count == 0:
		return 0.0
	return 1.0


def rating_quality(aggregate: Optional[RatingAggregate], rating_max: float, min_rating_count: int) -> float:
	if aggregate is None or aggregate.count < min_rating_count:
		return 0.5
	raw = average_rating(aggregate)
	if raw is None:
		return 0.5
	normalized = normalize_rating(raw, rating_max)
	return normalized if normalized is not None else 0.5


def rating_fit(
	viewer: Optional[RatingAggregate],
	candidate: Optional[RatingAggregate],
	rating_max: float,
	min_rating_count: int,
) -> float:
	"""Shape agreement between the two centred rating profiles."""
	if viewer is None or candidate is None or candidate.count < min_rating_count:
		return 0.5
	viewer_vec = centered(rating_vector(viewer, rating_max))
	candidate_vec = centered(rating_vector(candidate, rating_max))
	if viewer_vec is None or candidate_vec is None:
		return 0.5
	return clamp((cosine_similarity(viewer_vec, candidate_vec) + 1) / 2)


def newness(
	created_at: Optional[datetime],
	updated_at: Optional[datetime],
	half_life_days: float,
	now: Optional[datetime] = None,
) -> float:
	reference = updated_at or created_at
	if reference is None:
		return 0.0
	if reference.tzinfo is None:
		reference = reference.replace(tzinfo=timezone.utc)
	current = now or datetime.now(timezone.utc)
	age_days = (current - reference).total_seconds() / 86400.0
	if age_days <= 0:
		return 1.0
	decay = math.log(2) / max(1.0, half_life_days)
	return clamp(math.exp(-decay * age_days))


def proximity(
	distance_km: Optional[float],
	prefs: PreferencesContext,
	viewer_location_text: Optional[str] = None,
	candidate_location_text: Optional[str] = None,
) -> float:
	if distance_km is not None:
		radius = prefs.preferred_distance_km
		if radius is None:
			radius = prefs.default_max_distance_km
		if radius <= 0:
			return 1.0 if distance_km <= 0 else 0.0
		return clamp(1 - distance_km / radius)
	if viewer_location_text and candidate_location_text and viewer_location_text == candidate_location_text:
		return NEARBY_TEXT_FALLBACK
	return 0.0


__all__ = [
	"TraitSimilarity",
	"InterestOverlap",
	"trait_similarity",
	"answers_similarity",
	"quiz_similarity",
	"interest_overlap",
	"interest_upper_bound",
	"rating_quality",
	"rating_fit",
	"newness",
	"proximity",
]
