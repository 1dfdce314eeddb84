"""Score aggregation over the operator pipeline.

The aggregator knows nothing about heaps or pruning; it reports an upper
bound and leaves the decision to the caller.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from matchfeed.domain.matching.exceptions import MatchingError
from matchfeed.domain.matching.models import (
	COMPONENT_DEFAULTS,
	Compliance,
	MatchContext,
	ScoringResult,
	Weights,
)
from matchfeed.domain.matching.operators import (
	HARD_GATES,
	PREFERENCE_CLASSIFIERS,
	SCORING_OPERATORS,
	MatchOperator,
)

_TRAIT_META_KEYS = ("traitSim", "traitCoverage", "traitCommonCount", "quizSimLegacy")

_REASON_KEYS = (
	("quizSim", "score_quiz"),
	("interestOverlap", "score_interests"),
	("ratingQuality", "score_ratings_quality"),
	("ratingFit", "score_ratings_fit"),
	("newness", "score_new"),
	("proximity", "score_nearby"),
)


def _classify(classifiers: Sequence[MatchOperator], key: str, ctx: MatchContext) -> bool:
	for op in classifiers:
		if op.key == key and op.classify is not None:
			return bool(op.classify(ctx))
	return True


def passes_gates(ctx: MatchContext, gates: Sequence[MatchOperator] = HARD_GATES) -> bool:
	return all(op.gate is None or op.gate(ctx) for op in gates)


def upper_bound(ctx: MatchContext, operators: Sequence[MatchOperator], weights: Weights) -> float:
	"""Optimistic bound on the weighted total; never below the real score."""
	bound = 0.0
	for op in operators:
		weight = weights.get(op.weight_key) if op.weight_key else 0.0
		if op.cheap is not None:
			bound += op.cheap(ctx) * weight
		else:
			bound += max(0.0, min(1.0, op.max_score)) * weight
	return bound


def score_candidate(
	ctx: MatchContext,
	gates: Sequence[MatchOperator] = HARD_GATES,
	classifiers: Sequence[MatchOperator] = PREFERENCE_CLASSIFIERS,
	operators: Sequence[MatchOperator] = SCORING_OPERATORS,
	weights: Optional[Weights] = None,
) -> Optional[ScoringResult]:
	"""Score one candidate; ``None`` means a hard gate excluded it."""
	weights = weights or Weights()
	if not passes_gates(ctx, gates):
		return None

	compliance = Compliance(
		gender=_classify(classifiers, "gender", ctx),
		age=_classify(classifiers, "age", ctx),
		distance=_classify(classifiers, "distance", ctx),
	)
	bound = upper_bound(ctx, operators, weights)

	total = 0.0
	components: dict[str, float] = dict(COMPONENT_DEFAULTS)
	scores: dict[str, Any] = {}
	reasons: dict[str, Any] = {"scores": scores, "interests": {}}
	for op in operators:
		if op.score is None or op.component_key is None or op.weight_key is None:
			raise MatchingError("operator_not_scorable")
		result = op.score(ctx)
		value = result.score
		if value is None:
			value = COMPONENT_DEFAULTS.get(op.component_key, 0.5)
		total += value * weights.get(op.weight_key)
		components[op.component_key] = value
		if not result.meta:
			continue
		if op.key == "interests":
			reasons["interests"] = result.meta
		elif op.key == "traits":
			for key in _TRAIT_META_KEYS:
				scores[key] = result.meta.get(key)
		else:
			scores[op.key] = result.meta

	for reason_key, component_key in _REASON_KEYS:
		scores[reason_key] = components[component_key]
	reasons["compliance"] = compliance.as_dict()

	candidate = ctx.candidate
	if candidate.distance_km is not None:
		reasons["distanceKm"] = round(candidate.distance_km, 1)
	if candidate.ratings is not None:
		reasons["ratings"] = candidate.ratings.as_dict()

	return ScoringResult(
		score=total,
		components=components,
		compliance=compliance,
		reasons=reasons,
		upper_bound=bound,
	)


__all__ = ["score_candidate", "upper_bound", "passes_gates"]
