"""Age computation and score distribution summaries."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Callable, Optional, Sequence

from matchfeed.domain.matching.models import MatchScoreRow

_COMPONENT_LABELS = {
	"quiz": "score_quiz",
	"interests": "score_interests",
	"ratingQuality": "score_ratings_quality",
	"ratingFit": "score_ratings_fit",
	"newness": "score_new",
	"proximity": "score_nearby",
}


def compute_age(birthdate: Optional[date], now: Optional[datetime] = None) -> Optional[int]:
	"""Calendar age in whole years, or None when the birthdate is unknown."""
	if birthdate is None:
		return None
	if isinstance(birthdate, datetime):
		birthdate = birthdate.date()
	today = (now or datetime.now(timezone.utc)).date()
	age = today.year - birthdate.year
	if (today.month, today.day) < (birthdate.month, birthdate.day):
		age -= 1
	return age


def _percentile(sorted_values: Sequence[float], fraction: float) -> float:
	return sorted_values[int(len(sorted_values) * fraction)]


def _component_stats(rows: Sequence[MatchScoreRow], getter: Callable[[MatchScoreRow], float]) -> dict[str, float]:
	values = sorted(getter(row) for row in rows)
	return {
		"mean": sum(values) / len(values),
		"p50": _percentile(values, 0.5),
		"p90": _percentile(values, 0.9),
	}


def score_distribution(rows: Sequence[MatchScoreRow]) -> dict[str, Any]:
	if not rows:
		return {
			"count": 0,
			"mean": 0.0,
			"p50": 0.0,
			"p90": 0.0,
			"zeroCount": 0,
			"nullCount": 0,
			"components": {label: {"mean": 0.0, "p50": 0.0, "p90": 0.0} for label in _COMPONENT_LABELS},
		}
	scores = sorted(row.score for row in rows)
	null_count = sum(
		1
		for row in rows
		if row.score_quiz == 0
		and row.score_interests == 0
		and row.score_ratings_quality == 0
		and row.score_ratings_fit == 0
	)
	return {
		"count": len(rows),
		"mean": sum(scores) / len(scores),
		"p50": _percentile(scores, 0.5),
		"p90": _percentile(scores, 0.9),
		"zeroCount": sum(1 for value in scores if value == 0),
		"nullCount": null_count,
		"components": {
			label: _component_stats(rows, lambda row, key=key: row.component(key))
			for label, key in _COMPONENT_LABELS.items()
		},
	}


def rounded_distribution(distribution: dict[str, Any], digits: int = 4) -> dict[str, Any]:
	"""Log-friendly copy with floats rounded."""
	result: dict[str, Any] = {}
	for key, value in distribution.items():
		if isinstance(value, dict):
			result[key] = rounded_distribution(value, digits)
		elif isinstance(value, float):
			result[key] = round(value, digits)
		else:
			result[key] = value
	return result


__all__ = ["compute_age", "score_distribution", "rounded_distribution"]
