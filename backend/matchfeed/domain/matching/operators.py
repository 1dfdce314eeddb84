"""Composable match operators.

An operator bundles optional capabilities:

* ``gate`` - hard exclusion, reserved for safety invariants (self, blocks).
* ``classify`` - soft preference compliance feeding the A/B tier.
* ``cheap`` - fast estimate used to bound the final score before full scoring.
* ``score`` - full component score plus explain metadata.

The aggregator only calls the capabilities an operator actually provides.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from matchfeed.domain.matching import scoring
from matchfeed.domain.matching.models import MatchContext, OperatorResult
from matchfeed.domain.matching.stats import compute_age

ScoreFn = Callable[[MatchContext], OperatorResult]
PredicateFn = Callable[[MatchContext], bool]
EstimateFn = Callable[[MatchContext], float]


@dataclass(slots=True, frozen=True)
class MatchOperator:
	key: str
	weight_key: Optional[str] = None
	component_key: Optional[str] = None
	score: Optional[ScoreFn] = None
	gate: Optional[PredicateFn] = None
	classify: Optional[PredicateFn] = None
	cheap: Optional[EstimateFn] = None
	# Highest value ``score`` can return; bounds operators without ``cheap``.
	max_score: float = 1.0


# --- hard gates ----------------------------------------------------------


def _not_self(ctx: MatchContext) -> bool:
	return ctx.candidate.user_id != ctx.viewer.user_id


def _not_blocked(ctx: MatchContext) -> bool:
	return ctx.candidate.user_id not in ctx.blocked_user_ids


SELF_GATE = MatchOperator(key="self", gate=_not_self)
BLOCK_GATE = MatchOperator(key="blocked", gate=_not_blocked)


# --- preference classifiers ----------------------------------------------


def _classify_gender(ctx: MatchContext) -> bool:
	preferred = ctx.prefs.preferred_genders
	if not preferred:
		return True
	if not ctx.candidate.gender:
		return False
	return ctx.candidate.gender in preferred


def _classify_age(ctx: MatchContext) -> bool:
	age_min = ctx.prefs.preferred_age_min
	age_max = ctx.prefs.preferred_age_max
	if age_min is None and age_max is None:
		return True
	age = compute_age(ctx.candidate.birthdate, ctx.now)
	if age is None:
		return False
	if age_min is not None and age < age_min:
		return False
	if age_max is not None and age > age_max:
		return False
	return True


def _classify_distance(ctx: MatchContext) -> bool:
	preferred = ctx.prefs.preferred_distance_km
	if preferred is None:
		return True
	# Missing geo is outside the preference but still scorable via the text fallback.
	if ctx.candidate.distance_km is None:
		return False
	return ctx.candidate.distance_km <= preferred


GENDER_CLASSIFIER = MatchOperator(key="gender", classify=_classify_gender)
AGE_CLASSIFIER = MatchOperator(key="age", classify=_classify_age)
DISTANCE_CLASSIFIER = MatchOperator(key="distance", classify=_classify_distance)


# --- scoring operators ---------------------------------------------------


def _score_traits(ctx: MatchContext) -> OperatorResult:
	viewer, candidate, prefs = ctx.viewer, ctx.candidate, ctx.prefs
	similarity: Optional[scoring.TraitSimilarity] = None
	if viewer.traits and candidate.traits:
		similarity = scoring.trait_similarity(viewer.traits, candidate.traits)
		if similarity.common_count < prefs.min_trait_overlap:
			similarity = None

	legacy: Optional[float] = None
	if similarity is None or similarity.value is None:
		if viewer.quiz is not None and candidate.quiz is not None:
			legacy = scoring.quiz_similarity(viewer.quiz, candidate.quiz)
			value = legacy
		else:
			value = 0.5
	else:
		value = similarity.value

	meta = {
		"traitSim": similarity.value if similarity else None,
		"traitCoverage": similarity.coverage if similarity else None,
		"traitCommonCount": similarity.common_count if similarity else None,
		"quizSimLegacy": legacy,
	}
	return OperatorResult(score=value, meta=meta)


def _score_interests(ctx: MatchContext) -> OperatorResult:
	result = scoring.interest_overlap(ctx.viewer.interests, ctx.candidate.interests)
	return OperatorResult(score=result.overlap, meta=result.meta())


def _cheap_interests(ctx: MatchContext) -> float:
	return scoring.interest_upper_bound(len(ctx.viewer.interests), len(ctx.candidate.interests))


def _score_rating_quality(ctx: MatchContext) -> OperatorResult:
	prefs = ctx.prefs
	return OperatorResult(
		score=scoring.rating_quality(ctx.candidate.ratings, prefs.rating_max, prefs.min_rating_count)
	)


def _score_rating_fit(ctx: MatchContext) -> OperatorResult:
	prefs = ctx.prefs
	return OperatorResult(
		score=scoring.rating_fit(ctx.viewer.ratings, ctx.candidate.ratings, prefs.rating_max, prefs.min_rating_count)
	)


def _newness_value(ctx: MatchContext) -> float:
	candidate = ctx.candidate
	return scoring.newness(candidate.created_at, candidate.updated_at, ctx.prefs.newness_half_life_days, ctx.now)


def _proximity_value(ctx: MatchContext) -> float:
	return scoring.proximity(
		ctx.candidate.distance_km,
		ctx.prefs,
		ctx.viewer.location_text,
		ctx.candidate.location_text,
	)


TRAIT_OPERATOR = MatchOperator(
	key="traits",
	weight_key="quiz",
	component_key="score_quiz",
	score=_score_traits,
)

INTEREST_OPERATOR = MatchOperator(
	key="interests",
	weight_key="interests",
	component_key="score_interests",
	score=_score_interests,
	cheap=_cheap_interests,
)

RATING_QUALITY_OPERATOR = MatchOperator(
	key="ratingQuality",
	weight_key="rating_quality",
	component_key="score_ratings_quality",
	score=_score_rating_quality,
)

RATING_FIT_OPERATOR = MatchOperator(
	key="ratingFit",
	weight_key="rating_fit",
	component_key="score_ratings_fit",
	score=_score_rating_fit,
)

NEWNESS_OPERATOR = MatchOperator(
	key="newness",
	weight_key="newness",
	component_key="score_new",
	score=lambda ctx: OperatorResult(score=_newness_value(ctx)),
	cheap=_newness_value,
)

PROXIMITY_OPERATOR = MatchOperator(
	key="proximity",
	weight_key="proximity",
	component_key="score_nearby",
	score=lambda ctx: OperatorResult(score=_proximity_value(ctx)),
	cheap=_proximity_value,
)

HARD_GATES: tuple[MatchOperator, ...] = (SELF_GATE, BLOCK_GATE)
PREFERENCE_CLASSIFIERS: tuple[MatchOperator, ...] = (GENDER_CLASSIFIER, AGE_CLASSIFIER, DISTANCE_CLASSIFIER)
SCORING_OPERATORS: tuple[MatchOperator, ...] = (
	TRAIT_OPERATOR,
	INTEREST_OPERATOR,
	RATING_QUALITY_OPERATOR,
	RATING_FIT_OPERATOR,
	NEWNESS_OPERATOR,
	PROXIMITY_OPERATOR,
)

__all__ = [
	"MatchOperator",
	"SELF_GATE",
	"BLOCK_GATE",
	"GENDER_CLASSIFIER",
	"AGE_CLASSIFIER",
	"DISTANCE_CLASSIFIER",
	"TRAIT_OPERATOR",
	"INTEREST_OPERATOR",
	"RATING_QUALITY_OPERATOR",
	"RATING_FIT_OPERATOR",
	"NEWNESS_OPERATOR",
	"PROXIMITY_OPERATOR",
	"HARD_GATES",
	"PREFERENCE_CLASSIFIERS",
	"SCORING_OPERATORS",
]
