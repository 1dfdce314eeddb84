"""Batch recomputation of per-viewer top-K match scores."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from matchfeed.domain.matching.context import ContextAssembler, ViewerSnapshot
from matchfeed.domain.matching.engine import passes_gates, score_candidate, upper_bound
from matchfeed.domain.matching.exceptions import ViewerNotFound
from matchfeed.domain.matching.heap import TopKHeap
from matchfeed.domain.matching.models import (
	CandidateContext,
	MatchScoreRow,
	PreferencesContext,
	ScoringResult,
	Weights,
)
from matchfeed.domain.matching.operators import (
	HARD_GATES,
	PREFERENCE_CLASSIFIERS,
	SCORING_OPERATORS,
	MatchOperator,
)
from matchfeed.domain.matching.repo import MatchingRepository
from matchfeed.domain.matching.stats import rounded_distribution, score_distribution
from matchfeed.jobs.pacing import Delay, iterate_batches
from matchfeed.obs import metrics as obs_metrics
from matchfeed.settings import settings

_LOG = logging.getLogger(__name__)

JOB_NAME = "match-scores"


@dataclass(slots=True)
class MatchScoreConfig:
	user_batch_size: int = 100
	candidate_batch_size: int = 500
	pause_ms: int = 50
	algorithm_version: str = "v1"
	rating_max: float = 5.0
	newness_half_life_days: float = 30.0
	default_max_distance_km: float = 100.0
	top_k: int = 200
	min_trait_overlap: int = 2
	min_rating_count: int = 3
	weights: Weights = field(default_factory=lambda: Weights.from_mapping(settings.match_weights))

	def preference_defaults(self) -> PreferencesContext:
		return PreferencesContext(
			default_max_distance_km=self.default_max_distance_km,
			rating_max=self.rating_max,
			newness_half_life_days=self.newness_half_life_days,
			min_trait_overlap=self.min_trait_overlap,
			min_rating_count=self.min_rating_count,
		)


@dataclass(slots=True)
class UserRecomputeResult:
	user_id: int
	written: int = 0
	scored: int = 0
	pruned: int = 0
	gated: int = 0
	failed: int = 0
	distribution: dict[str, Any] = field(default_factory=dict)


def build_score_row(
	user_id: int,
	candidate: CandidateContext,
	result: ScoringResult,
	*,
	algorithm_version: str,
	scored_at: datetime,
) -> MatchScoreRow:
	ratings = candidate.ratings
	components = result.components
	return MatchScoreRow(
		user_id=user_id,
		candidate_user_id=candidate.user_id,
		score=result.score,
		score_quiz=components["score_quiz"],
		score_interests=components["score_interests"],
		score_ratings_quality=components["score_ratings_quality"],
		score_ratings_fit=components["score_ratings_fit"],
		score_new=components["score_new"],
		score_nearby=components["score_nearby"],
		rating_attractive=ratings.attractive if ratings else None,
		rating_smart=ratings.smart if ratings else None,
		rating_funny=ratings.funny if ratings else None,
		rating_interesting=ratings.interesting if ratings else None,
		distance_km=candidate.distance_km,
		reasons=result.reasons,
		tier=result.tier,
		algorithm_version=algorithm_version,
		scored_at=scored_at,
	)


class MatchScoreJob:
	"""Scores every visible candidate for each viewer and keeps the best K."""

	name = JOB_NAME

	def __init__(
		self,
		repository: MatchingRepository | None = None,
		*,
		assembler: ContextAssembler | None = None,
		config: MatchScoreConfig | None = None,
		delay: Delay = asyncio.sleep,
		gates: Sequence[MatchOperator] = HARD_GATES,
		classifiers: Sequence[MatchOperator] = PREFERENCE_CLASSIFIERS,
		operators: Sequence[MatchOperator] = SCORING_OPERATORS,
	) -> None:
		self.repo = repository or MatchingRepository()
		self.config = config or MatchScoreConfig()
		self.assembler = assembler or ContextAssembler(self.repo, defaults=self.config.preference_defaults())
		self.delay = delay
		self.gates = tuple(gates)
		self.classifiers = tuple(classifiers)
		self.operators = tuple(operators)

	async def recompute_for_user(self, user_id: int, config: MatchScoreConfig | None = None) -> UserRecomputeResult:
		cfg = config or self.config
		outcome = UserRecomputeResult(user_id=user_id)
		start = time.perf_counter()
		try:
			viewer = await self.assembler.load_viewer(user_id)
		except ViewerNotFound:
			_LOG.warning("match_scores.viewer_missing", extra={"user_id": user_id})
			return outcome

		heap: TopKHeap[MatchScoreRow] = TopKHeap(cfg.top_k)
		scored_at = datetime.now(timezone.utc)

		async def fetch(cursor: Optional[int], limit: int):
			return await self.repo.list_candidate_profiles(user_id, after_profile_id=cursor, limit=limit)

		async for page in iterate_batches(
			fetch,
			cursor_of=lambda row: int(row["id"]),
			batch_size=cfg.candidate_batch_size,
			pause_ms=cfg.pause_ms,
			delay=self.delay,
		):
			candidates = await self.assembler.load_candidates(viewer, page)
			for candidate in candidates:
				self._consider(viewer, candidate, heap, cfg, outcome, scored_at)

		rows = heap.to_list()
		if rows:
			outcome.written = await self.repo.replace_match_scores(user_id, rows)
			obs_metrics.MATCH_ROWS_WRITTEN.inc(outcome.written)
			outcome.distribution = rounded_distribution(score_distribution(rows))
			_LOG.info(
				"match_scores.user_distribution",
				extra={"user_id": user_id, "distribution": outcome.distribution},
			)
		else:
			# Nothing scored: previous rows stay as last-known-good.
			_LOG.info("match_scores.no_rows", extra={"user_id": user_id})

		obs_metrics.inc_match_candidate("scored", outcome.scored)
		obs_metrics.inc_match_candidate("pruned", outcome.pruned)
		obs_metrics.inc_match_candidate("gated", outcome.gated)
		obs_metrics.inc_match_candidate("failed", outcome.failed)
		obs_metrics.MATCH_USER_DURATION.observe(time.perf_counter() - start)
		return outcome

	def _consider(
		self,
		viewer: ViewerSnapshot,
		candidate: CandidateContext,
		heap: TopKHeap[MatchScoreRow],
		cfg: MatchScoreConfig,
		outcome: UserRecomputeResult,
		scored_at: datetime,
	) -> None:
		try:
			ctx = viewer.match_context(candidate, scored_at)
			if not passes_gates(ctx, self.gates):
				outcome.gated += 1
				return
			if heap.is_full and upper_bound(ctx, self.operators, cfg.weights) < heap.threshold:
				outcome.pruned += 1
				return
			result = score_candidate(ctx, self.gates, self.classifiers, self.operators, cfg.weights)
			if result is None:
				outcome.gated += 1
				return
			heap.push(
				build_score_row(
					viewer.context.user_id,
					candidate,
					result,
					algorithm_version=cfg.algorithm_version,
					scored_at=scored_at,
				)
			)
			outcome.scored += 1
		except Exception:
			outcome.failed += 1
			_LOG.exception(
				"match_scores.candidate_failed",
				extra={"user_id": viewer.context.user_id, "candidate_user_id": candidate.user_id},
			)

	async def run(
		self,
		*,
		user_id: Optional[int] = None,
		batch_size: Optional[int] = None,
		pause_ms: Optional[int] = None,
		algorithm_version: Optional[str] = None,
	) -> dict[str, Any]:
		cfg = self._with_overrides(pause_ms=pause_ms, algorithm_version=algorithm_version)
		if user_id is not None:
			outcome = await self.recompute_for_user(user_id, cfg)
			return {"processedUsers": 1, "written": outcome.written, "failedUsers": 0}

		processed = 0
		written = 0
		failed_users = 0

		async def fetch(cursor: Optional[int], limit: int):
			return await self.repo.list_user_ids(after_user_id=cursor, limit=limit)

		async for page in iterate_batches(
			fetch,
			cursor_of=lambda value: value,
			batch_size=batch_size or cfg.user_batch_size,
			pause_ms=cfg.pause_ms,
			delay=self.delay,
		):
			for viewer_id in page:
				try:
					outcome = await self.recompute_for_user(viewer_id, cfg)
				except Exception:
					failed_users += 1
					_LOG.exception("match_scores.user_failed", extra={"user_id": viewer_id})
					continue
				processed += 1
				written += outcome.written
		_LOG.info(
			"match_scores.completed",
			extra={"processed_users": processed, "written": written, "failed_users": failed_users},
		)
		return {"processedUsers": processed, "written": written, "failedUsers": failed_users}

	def _with_overrides(self, *, pause_ms: Optional[int], algorithm_version: Optional[str]) -> MatchScoreConfig:
		base = self.config
		if pause_ms is None and algorithm_version is None:
			return base
		return MatchScoreConfig(
			user_batch_size=base.user_batch_size,
			candidate_batch_size=base.candidate_batch_size,
			pause_ms=base.pause_ms if pause_ms is None else pause_ms,
			algorithm_version=algorithm_version or base.algorithm_version,
			rating_max=base.rating_max,
			newness_half_life_days=base.newness_half_life_days,
			default_max_distance_km=base.default_max_distance_km,
			top_k=base.top_k,
			min_trait_overlap=base.min_trait_overlap,
			min_rating_count=base.min_rating_count,
			weights=base.weights,
		)


__all__ = ["JOB_NAME", "MatchScoreConfig", "MatchScoreJob", "UserRecomputeResult", "build_score_row"]
