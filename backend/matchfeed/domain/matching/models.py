"""Domain models for compatibility scoring."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from matchfeed.domain.matching.exceptions import InvalidWeights

WEIGHT_KEYS = ("quiz", "interests", "rating_quality", "rating_fit", "newness", "proximity")

COMPONENT_KEYS = (
	"score_quiz",
	"score_interests",
	"score_ratings_quality",
	"score_ratings_fit",
	"score_new",
	"score_nearby",
)

# Value used when an operator reports no comparable data.
COMPONENT_DEFAULTS = {
	"score_quiz": 0.5,
	"score_interests": 0.0,
	"score_ratings_quality": 0.5,
	"score_ratings_fit": 0.5,
	"score_new": 0.0,
	"score_nearby": 0.0,
}


class Tier(str, Enum):
	"""A = every preference satisfied, B = at least one preference outside."""

	A = "A"
	B = "B"


class CompatibilityStatus(str, Enum):
	READY = "READY"
	INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


@dataclass(slots=True, frozen=True)
class TraitValue:
	key: str
	value: float
	n: int


@dataclass(slots=True, frozen=True)
class Interest:
	subject_id: int
	interest_id: int
	subject_key: str
	interest_key: str

	@property
	def key(self) -> str:
		return f"{self.subject_id}:{self.interest_id}"

	@property
	def label(self) -> str:
		return f"{self.subject_key}:{self.interest_key}"

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Interest":
		return cls(
			subject_id=int(record["subject_id"]),
			interest_id=int(record["interest_id"]),
			subject_key=str(record["subject_key"]),
			interest_key=str(record["interest_key"]),
		)


@dataclass(slots=True, frozen=True)
class QuizSnapshot:
	quiz_id: Optional[int]
	answers: Mapping[str, Any] = field(default_factory=dict)
	score_vec: Optional[tuple[Any, ...]] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "QuizSnapshot":
		answers = record.get("answers")
		score_vec = record.get("score_vec")
		return cls(
			quiz_id=int(record["quiz_id"]) if record.get("quiz_id") is not None else None,
			answers=answers if isinstance(answers, dict) else {},
			score_vec=tuple(score_vec) if isinstance(score_vec, (list, tuple)) else None,
		)


@dataclass(slots=True, frozen=True)
class RatingAggregate:
	attractive: Optional[float]
	smart: Optional[float]
	funny: Optional[float]
	interesting: Optional[float]
	count: int = 0

	def dimensions(self) -> tuple[Optional[float], Optional[float], Optional[float], Optional[float]]:
		return (self.attractive, self.smart, self.funny, self.interesting)

	def as_dict(self) -> dict[str, Any]:
		return {
			"attractive": self.attractive,
			"smart": self.smart,
			"funny": self.funny,
			"interesting": self.interesting,
			"count": self.count,
		}


@dataclass(slots=True, frozen=True)
class ViewerContext:
	user_id: int
	profile_id: Optional[int] = None
	lat: Optional[float] = None
	lng: Optional[float] = None
	location_text: Optional[str] = None
	traits: tuple[TraitValue, ...] = ()
	interests: tuple[Interest, ...] = ()
	quiz: Optional[QuizSnapshot] = None
	ratings: Optional[RatingAggregate] = None


@dataclass(slots=True, frozen=True)
class CandidateContext:
	user_id: int
	profile_id: Optional[int] = None
	lat: Optional[float] = None
	lng: Optional[float] = None
	location_text: Optional[str] = None
	birthdate: Optional[date] = None
	gender: Optional[str] = None
	created_at: Optional[datetime] = None
	updated_at: Optional[datetime] = None
	traits: tuple[TraitValue, ...] = ()
	interests: tuple[Interest, ...] = ()
	quiz: Optional[QuizSnapshot] = None
	ratings: Optional[RatingAggregate] = None
	distance_km: Optional[float] = None


@dataclass(slots=True, frozen=True)
class PreferencesContext:
	preferred_genders: tuple[str, ...] = ()
	preferred_age_min: Optional[int] = None
	preferred_age_max: Optional[int] = None
	preferred_distance_km: Optional[float] = None
	default_max_distance_km: float = 100.0
	rating_max: float = 5.0
	newness_half_life_days: float = 30.0
	min_trait_overlap: int = 2
	min_rating_count: int = 3


@dataclass(slots=True, frozen=True)
class MatchContext:
	viewer: ViewerContext
	candidate: CandidateContext
	prefs: PreferencesContext
	blocked_user_ids: frozenset[int] = frozenset()
	now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class Weights:
	quiz: float = 0.25
	interests: float = 0.2
	rating_quality: float = 0.15
	rating_fit: float = 0.1
	newness: float = 0.1
	proximity: float = 0.2

	def __post_init__(self) -> None:
		# the pruning bound assumes every weight is finite and non-negative
		for key in WEIGHT_KEYS:
			value = getattr(self, key)
			if isinstance(value, bool) or not isinstance(value, (int, float)):
				raise InvalidWeights(f"invalid_weight_{key}")
			if not math.isfinite(value) or value < 0:
				raise InvalidWeights(f"invalid_weight_{key}")

	def get(self, key: str) -> float:
		return float(getattr(self, key))

	@classmethod
	def from_mapping(cls, values: Mapping[str, float] | None, *, base: "Weights | None" = None) -> "Weights":
		"""Overlay ``values`` on ``base``; unknown keys are rejected."""
		current = base or cls()
		merged = {key: current.get(key) for key in WEIGHT_KEYS}
		for key, value in (values or {}).items():
			if key not in merged:
				raise InvalidWeights(f"unknown_weight_{key}")
			if value is not None:
				try:
					merged[key] = float(value)
				except (TypeError, ValueError):
					raise InvalidWeights(f"invalid_weight_{key}") from None
		return cls(**merged)


@dataclass(slots=True)
class OperatorResult:
	score: Optional[float]
	meta: Optional[dict[str, Any]] = None


@dataclass(slots=True)
class Compliance:
	gender: bool = True
	age: bool = True
	distance: bool = True

	@property
	def within_preferences(self) -> bool:
		return self.gender and self.age and self.distance

	def as_dict(self) -> dict[str, bool]:
		return {"gender": self.gender, "age": self.age, "distance": self.distance}


@dataclass(slots=True)
class ScoringResult:
	score: float
	components: dict[str, float]
	compliance: Compliance
	reasons: dict[str, Any]
	upper_bound: float

	@property
	def tier(self) -> Tier:
		return Tier.A if self.compliance.within_preferences else Tier.B


@dataclass(slots=True)
class MatchScoreRow:
	"""Persisted top-K entry for one (viewer, candidate) pair."""

	user_id: int
	candidate_user_id: int
	score: float
	score_quiz: float
	score_interests: float
	score_ratings_quality: float
	score_ratings_fit: float
	score_new: float
	score_nearby: float
	rating_attractive: Optional[float]
	rating_smart: Optional[float]
	rating_funny: Optional[float]
	rating_interesting: Optional[float]
	distance_km: Optional[float]
	reasons: dict[str, Any]
	tier: Tier
	algorithm_version: str
	scored_at: datetime

	def component(self, key: str) -> float:
		return float(getattr(self, key))

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "MatchScoreRow":
		reasons = record.get("reasons")
		return cls(
			user_id=int(record["user_id"]),
			candidate_user_id=int(record["candidate_user_id"]),
			score=float(record["score"]),
			score_quiz=float(record["score_quiz"]),
			score_interests=float(record["score_interests"]),
			score_ratings_quality=float(record["score_ratings_quality"]),
			score_ratings_fit=float(record["score_ratings_fit"]),
			score_new=float(record["score_new"]),
			score_nearby=float(record["score_nearby"]),
			rating_attractive=record.get("rating_attractive"),
			rating_smart=record.get("rating_smart"),
			rating_funny=record.get("rating_funny"),
			rating_interesting=record.get("rating_interesting"),
			distance_km=record.get("distance_km"),
			reasons=reasons if isinstance(reasons, dict) else {},
			tier=Tier(record.get("tier") or Tier.B.value),
			algorithm_version=str(record["algorithm_version"]),
			scored_at=record["scored_at"],
		)


@dataclass(slots=True, frozen=True)
class CompatibilitySummary:
	status: CompatibilityStatus
	score: Optional[float] = None

	@classmethod
	def insufficient(cls) -> "CompatibilitySummary":
		return cls(status=CompatibilityStatus.INSUFFICIENT_DATA, score=None)

	def to_dict(self) -> dict[str, Any]:
		return {"status": self.status.value, "score": self.score}


@dataclass(slots=True)
class CompatibilityRow:
	viewer_user_id: int
	target_user_id: int
	score: Optional[float]
	status: CompatibilityStatus
	version: str
	computed_at: datetime
	reasons: Optional[dict[str, Any]] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "CompatibilityRow":
		return cls(
			viewer_user_id=int(record["viewer_user_id"]),
			target_user_id=int(record["target_user_id"]),
			score=float(record["score"]) if record.get("score") is not None else None,
			status=CompatibilityStatus(record["status"]),
			version=str(record["version"]),
			computed_at=record["computed_at"],
			reasons=record.get("reasons"),
		)

	def summary(self) -> CompatibilitySummary:
		return CompatibilitySummary(status=self.status, score=self.score)
