"""Pairwise compatibility summaries for profile views and feed hydration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from matchfeed.domain.matching import scoring
from matchfeed.domain.matching.context import ContextAssembler, build_candidate_context
from matchfeed.domain.matching.exceptions import ViewerNotFound
from matchfeed.domain.matching.models import (
	CandidateContext,
	CompatibilityRow,
	CompatibilityStatus,
	CompatibilitySummary,
	RatingAggregate,
	ViewerContext,
)
from matchfeed.domain.matching.repo import MatchingRepository
from matchfeed.domain.matching.vectors import (
	average_rating,
	centered,
	clamp,
	cosine_similarity,
	normalize_rating,
	rating_vector,
)

_LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class CompatibilityWeights:
	quiz: float = 0.45
	interests: float = 0.25
	rating_quality: float = 0.1
	rating_fit: float = 0.2

	def as_dict(self) -> dict[str, float]:
		return {
			"quiz": self.quiz,
			"interests": self.interests,
			"rating_quality": self.rating_quality,
			"rating_fit": self.rating_fit,
		}


@dataclass(slots=True, frozen=True)
class SignalAvailability:
	has_quiz: bool = False
	has_traits: bool = False
	has_interests: bool = False
	rating_count: int = 0
	has_rating_vector: bool = False

	@property
	def as_viewer(self) -> bool:
		return self.has_quiz or self.has_traits or self.has_interests or self.has_rating_vector

	@property
	def as_candidate(self) -> bool:
		return self.has_quiz or self.has_traits or self.has_interests or self.rating_count > 0


def viewer_signals(ctx: ViewerContext, rating_max: float = 5.0) -> SignalAvailability:
	return SignalAvailability(
		has_quiz=ctx.quiz is not None,
		has_traits=bool(ctx.traits),
		has_interests=bool(ctx.interests),
		rating_count=ctx.ratings.count if ctx.ratings else 0,
		has_rating_vector=centered(rating_vector(ctx.ratings, rating_max)) is not None,
	)


def candidate_signals(ctx: CandidateContext) -> SignalAvailability:
	return SignalAvailability(
		has_quiz=ctx.quiz is not None,
		has_traits=bool(ctx.traits),
		has_interests=bool(ctx.interests),
		rating_count=ctx.ratings.count if ctx.ratings else 0,
	)


def _rating_quality(aggregate: Optional[RatingAggregate], rating_max: float) -> float:
	if aggregate is None:
		return 0.0
	raw = average_rating(aggregate)
	if raw is None:
		return 0.0
	return normalize_rating(raw, rating_max) or 0.0


def compatibility_score(
	viewer: ViewerContext,
	candidate: CandidateContext,
	*,
	weights: CompatibilityWeights | None = None,
	rating_max: float = 5.0,
) -> tuple[CompatibilitySummary, Optional[dict[str, Any]]]:
	"""Score one pair; missing signals on either side yield INSUFFICIENT_DATA.

	Unlike match scoring there is no neutral baseline here: a missing quiz or
	rating contributes 0, so the value only reflects evidence both users share.
	"""
	weights = weights or CompatibilityWeights()
	if not viewer_signals(viewer, rating_max).as_viewer or not candidate_signals(candidate).as_candidate:
		return CompatibilitySummary.insufficient(), None

	overlap = scoring.interest_overlap(viewer.interests, candidate.interests)
	quiz_sim = 0.0
	if viewer.quiz is not None and candidate.quiz is not None:
		quiz_sim = scoring.quiz_similarity(viewer.quiz, candidate.quiz)
	rating_quality = _rating_quality(candidate.ratings, rating_max)
	viewer_vec = centered(rating_vector(viewer.ratings, rating_max))
	candidate_vec = centered(rating_vector(candidate.ratings, rating_max))
	rating_fit = clamp(cosine_similarity(viewer_vec, candidate_vec)) if viewer_vec and candidate_vec else 0.0

	score = (
		quiz_sim * weights.quiz
		+ overlap.overlap * weights.interests
		+ rating_quality * weights.rating_quality
		+ rating_fit * weights.rating_fit
	)
	reasons: dict[str, Any] = {
		"scores": {
			"quizSim": quiz_sim,
			"interestOverlap": overlap.overlap,
			"ratingQuality": rating_quality,
			"ratingFit": rating_fit,
		},
		"interests": overlap.meta(),
	}
	if candidate.ratings is not None:
		reasons["ratings"] = candidate.ratings.as_dict()
	return CompatibilitySummary(status=CompatibilityStatus.READY, score=score), reasons


class CompatibilityService:
	"""Read-side compatibility lookups."""

	def __init__(
		self,
		repository: MatchingRepository | None = None,
		*,
		assembler: ContextAssembler | None = None,
		weights: CompatibilityWeights | None = None,
	) -> None:
		self.repo = repository or MatchingRepository()
		self.assembler = assembler or ContextAssembler(self.repo)
		self.weights = weights or CompatibilityWeights()

	async def get_compatibility_map(
		self,
		viewer_id: Optional[int],
		target_ids: Sequence[int],
	) -> dict[int, CompatibilitySummary]:
		if viewer_id is None:
			return {}
		targets = sorted({int(target) for target in target_ids if int(target) != viewer_id})
		if not targets:
			return {}
		rows = await self.repo.list_compatibility(viewer_id, targets)
		return {target_id: row.summary() for target_id, row in rows.items()}

	@staticmethod
	def resolve_compatibility(
		viewer_id: Optional[int],
		compat_map: Mapping[int, CompatibilitySummary],
		target_id: int,
	) -> Optional[CompatibilitySummary]:
		if viewer_id is None:
			return None
		return compat_map.get(target_id) or CompatibilitySummary.insufficient()

	async def summarize(self, viewer_id: int, target_id: int) -> CompatibilitySummary:
		"""Summary for one pair, preferring the stored match score when present."""
		try:
			viewer = await self.assembler.load_viewer(viewer_id)
		except ViewerNotFound:
			return CompatibilitySummary.insufficient()
		profile = await self.repo.get_profile(target_id)
		if profile is None or target_id in viewer.blocked_user_ids:
			return CompatibilitySummary.insufficient()
		candidates = await self.assembler.load_candidates(viewer, [profile])
		candidate = candidates[0] if candidates else build_candidate_context(viewer.context, profile)
		rating_max = viewer.prefs.rating_max
		if not viewer_signals(viewer.context, rating_max).as_viewer or not candidate_signals(candidate).as_candidate:
			return CompatibilitySummary.insufficient()
		stored = await self.repo.get_match_score(viewer_id, target_id)
		if stored is not None:
			return CompatibilitySummary(status=CompatibilityStatus.READY, score=stored.score)
		summary, _ = compatibility_score(viewer.context, candidate, weights=self.weights, rating_max=rating_max)
		return summary

	async def recompute_for_viewer(
		self,
		viewer_id: int,
		target_ids: Sequence[int],
		*,
		version: str,
	) -> list[CompatibilityRow]:
		"""Compute (without persisting) compatibility rows for the given targets."""
		viewer = await self.assembler.load_viewer(viewer_id)
		computed_at = datetime.now(timezone.utc)
		rows: list[CompatibilityRow] = []
		profiles = []
		for target_id in target_ids:
			profile = await self.repo.get_profile(target_id)
			if profile is not None:
				profiles.append(profile)
		candidates = {ctx.user_id: ctx for ctx in await self.assembler.load_candidates(viewer, profiles)}
		for target_id in target_ids:
			candidate = candidates.get(target_id)
			if candidate is None:
				summary, reasons = CompatibilitySummary.insufficient(), None
			else:
				summary, reasons = compatibility_score(
					viewer.context,
					candidate,
					weights=self.weights,
					rating_max=viewer.prefs.rating_max,
				)
			rows.append(
				CompatibilityRow(
					viewer_user_id=viewer_id,
					target_user_id=target_id,
					score=summary.score,
					status=summary.status,
					version=version,
					computed_at=computed_at,
					reasons=reasons,
				)
			)
		_LOG.debug(
			"compatibility.recomputed",
			extra={"viewer_id": viewer_id, "targets": len(target_ids), "rows": len(rows)},
		)
		return rows


__all__ = [
	"CompatibilityWeights",
	"SignalAvailability",
	"CompatibilityService",
	"compatibility_score",
	"viewer_signals",
	"candidate_signals",
]
