"""Precompute ranked feed segments so signed-in viewers skip the live pipeline."""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Callable, Optional, Sequence

from matchfeed.domain.feed.candidates import CandidateProvider
from matchfeed.domain.feed.config import FEED_CONFIG, PRESORT_MIN_SEGMENT_ITEMS, FeedConfig
from matchfeed.domain.feed.exceptions import InvalidFeedItem
from matchfeed.domain.feed.models import FeedItem, FeedViewerContext, PresortedItem
from matchfeed.domain.feed.phase1 import build_phase1_json, to_presorted_item
from matchfeed.domain.feed.presort import PresortService, current_algorithm_version
from matchfeed.domain.feed.ranking import merge_and_rank
from matchfeed.domain.feed.repo import FeedRepository
from matchfeed.domain.feed.scoring import FeedScorer
from matchfeed.jobs.freshness import FreshnessStore, hash_key_values, user_scope
from matchfeed.jobs.pacing import Delay, iterate_batches
from matchfeed.obs import metrics as obs_metrics
from matchfeed.settings import settings

_LOG = logging.getLogger(__name__)

JOB_NAME = "feed-presort"
CLEANUP_JOB_NAME = "feed-presort-cleanup"

SegmentDraft = tuple[int, list[PresortedItem], Optional[str]]


@dataclass(slots=True)
class FeedPresortConfig:
	batch_size: int = 100
	segment_size: int = 20
	max_segments: int = 3
	min_candidate_count: int = 100
	candidate_overhead: float = 1.2
	ttl_minutes: int = 30
	max_concurrent: int = 10
	max_jitter_seconds: float = 180.0
	pause_ms: int = 0
	algorithm_version: Optional[str] = None

	@property
	def version(self) -> str:
		return self.algorithm_version or current_algorithm_version()


@dataclass(slots=True)
class PresortUserResult:
	user_id: int
	candidates_fetched: int = 0
	items_after_dedup: int = 0
	segments_generated: int = 0
	items_skipped: int = 0
	duration_ms: int = 0
	skipped: bool = False


def candidate_count_for(target_items: int, config: FeedPresortConfig) -> int:
	return max(math.ceil(target_items * config.candidate_overhead), config.min_candidate_count)


def _item_key(item: FeedItem) -> Optional[str]:
	if item.type == "post" and item.post is not None:
		return f"post:{item.post.id}"
	if item.type == "suggestion" and item.suggestion is not None:
		return f"suggestion:{item.suggestion.user_id}"
	if item.type == "question" and item.question is not None:
		return f"question:{item.question.id}"
	return None


def dedupe_feed_items(items: Sequence[FeedItem]) -> tuple[list[FeedItem], int]:
	"""Keep the first (highest ranked) occurrence of each item."""
	seen: set[str] = set()
	kept: list[FeedItem] = []
	dropped = 0
	for item in items:
		key = _item_key(item)
		if key is None or key in seen:
			dropped += 1
			continue
		seen.add(key)
		kept.append(item)
	return kept, dropped


def segment_is_storable(items: Sequence[PresortedItem], segment_index: int, expected_size: int) -> bool:
	if not items:
		_LOG.warning("feed_presort.segment_empty", extra={"segment_index": segment_index})
		return False
	if segment_index == 0 and len(items) < min(PRESORT_MIN_SEGMENT_ITEMS, expected_size):
		_LOG.warning(
			"feed_presort.segment_thin",
			extra={"segment_index": segment_index, "item_count": len(items), "expected_size": expected_size},
		)
		return False
	return True


def build_segments(items: Sequence[PresortedItem], *, segment_size: int, target_segments: int) -> list[SegmentDraft]:
	"""Split into segments; only segment 0 carries a phase-1 payload."""
	available = math.ceil(len(items) / segment_size) if segment_size > 0 else 0
	segments: list[SegmentDraft] = []
	for index in range(min(target_segments, available)):
		chunk = list(items[index * segment_size : (index + 1) * segment_size])
		if not segment_is_storable(chunk, index, segment_size):
			continue
		segments.append((index, chunk, build_phase1_json(chunk) if index == 0 else None))
	return segments


class FeedPresortJob:
	name = JOB_NAME

	def __init__(
		self,
		repository: FeedRepository | None = None,
		*,
		candidates: CandidateProvider | None = None,
		scorer: FeedScorer | None = None,
		presort: PresortService | None = None,
		freshness: FreshnessStore | None = None,
		config: FeedPresortConfig | None = None,
		feed_config: FeedConfig = FEED_CONFIG,
		delay: Delay = asyncio.sleep,
		jitter: Callable[[], float] = random.random,
	) -> None:
		self.repo = repository or FeedRepository()
		self.candidates = candidates or CandidateProvider(self.repo)
		self.scorer = scorer or FeedScorer(self.repo, config=feed_config)
		self.presort = presort or PresortService(self.repo, config=feed_config)
		self.freshness = freshness or FreshnessStore()
		self.config = config or FeedPresortConfig()
		self.feed_config = feed_config
		self.delay = delay
		self.jitter = jitter

	async def input_hash(
		self,
		user_id: int,
		*,
		cfg: FeedPresortConfig,
		incremental: bool,
		relevant_post_updated_at: Any = None,
	) -> str:
		marker = await self.repo.get_presort_input_marker(user_id)
		return hash_key_values(
			[
				("algorithmVersion", cfg.version),
				("segmentSize", cfg.segment_size),
				("maxSegments", cfg.max_segments),
				("incremental", incremental),
				("minCandidateCount", cfg.min_candidate_count),
				("matchScoreAt", marker.get("match_score_at")),
				("matchScoreVersion", marker.get("match_score_version")),
				("latestLikeAt", marker.get("latest_like_at")),
				("relevantPostUpdatedAt", relevant_post_updated_at),
			]
		)

	async def _to_presorted(self, items: Sequence[FeedItem]) -> tuple[list[PresortedItem], int]:
		actor_ids = list(dict.fromkeys(item.actor_id for item in items if item.type != "question"))
		actors = await self.repo.list_actor_profiles(actor_ids)
		now_ms = int(time.time() * 1000)
		presorted: list[PresortedItem] = []
		skipped = 0
		for item in items:
			name, avatar = actors.get(item.actor_id, (None, None)) if item.type != "question" else (None, None)
			try:
				presorted.append(to_presorted_item(item, name, avatar, now_ms=now_ms))
			except InvalidFeedItem:
				_LOG.exception("feed_presort.convert_failed", extra={"type": item.type, "actor_id": item.actor_id})
				skipped += 1
		return presorted, skipped

	async def presort_for_user(
		self,
		user_id: int,
		*,
		config: Optional[FeedPresortConfig] = None,
		incremental: Optional[bool] = None,
		force: Optional[bool] = None,
	) -> PresortUserResult:
		cfg = config or self.config
		started = time.perf_counter()
		scope = user_scope(user_id)

		existing = await self.presort.get_segment(user_id, 0)
		effective_incremental = bool(incremental) and existing is not None and len(existing.items) >= PRESORT_MIN_SEGMENT_ITEMS
		relevant_post_updated_at = None
		if effective_incremental:
			actor_ids = list(dict.fromkeys(item.actor_id for item in existing.items if item.type != "question"))
			relevant_post_updated_at = await self.repo.get_latest_post_update(actor_ids)
		elif incremental:
			_LOG.info(
				"feed_presort.incremental_disabled",
				extra={"user_id": user_id, "existing_count": len(existing.items) if existing else 0},
			)

		input_hash = await self.input_hash(
			user_id,
			cfg=cfg,
			incremental=effective_incremental,
			relevant_post_updated_at=relevant_post_updated_at,
		)
		if (
			incremental is not False
			and existing is not None
			and await self.freshness.is_fresh(JOB_NAME, scope, input_hash, force=force)
		):
			obs_metrics.inc_presort_user("skipped_fresh")
			return PresortUserResult(
				user_id=user_id,
				duration_ms=int((time.perf_counter() - started) * 1000),
				skipped=True,
			)

		target_segments = 1 if effective_incremental else cfg.max_segments
		target_items = cfg.segment_size * target_segments
		ctx = FeedViewerContext(
			user_id=user_id,
			take=candidate_count_for(target_items, cfg),
			mark_seen=False,
		)
		candidates = await self.candidates.get_candidates(ctx)
		scored = await self.scorer.score_candidates_without_seen(ctx, candidates)
		ranked = merge_and_rank(ctx, scored, self.feed_config.with_max_items(target_items))
		deduped, duplicates = dedupe_feed_items(ranked)
		presorted, skipped = await self._to_presorted(deduped)
		segments = build_segments(presorted, segment_size=cfg.segment_size, target_segments=target_segments)

		if segments:
			await self.presort.store_segments(
				user_id,
				segments,
				algorithm_version=cfg.version,
				ttl=timedelta(minutes=cfg.ttl_minutes),
			)
			await self.freshness.mark(JOB_NAME, scope, input_hash)
			obs_metrics.inc_presort_user("stored")
		else:
			obs_metrics.inc_presort_user("no_segments")
			_LOG.error(
				"feed_presort.no_valid_segments",
				extra={
					"user_id": user_id,
					"candidates_fetched": len(ranked),
					"items_after_dedup": len(deduped),
					"presorted_items": len(presorted),
				},
			)

		result = PresortUserResult(
			user_id=user_id,
			candidates_fetched=len(ranked),
			items_after_dedup=len(deduped),
			segments_generated=len(segments),
			items_skipped=skipped + duplicates,
			duration_ms=int((time.perf_counter() - started) * 1000),
		)
		if skipped or duplicates:
			_LOG.info(
				"feed_presort.completed_with_warnings",
				extra={"user_id": user_id, "duplicates": duplicates, "skipped": skipped},
			)
		return result

	async def run(
		self,
		*,
		user_id: Optional[int] = None,
		batch_size: Optional[int] = None,
		segment_size: Optional[int] = None,
		max_segments: Optional[int] = None,
		incremental: Optional[bool] = None,
		no_jitter: bool = False,
		pause_ms: Optional[int] = None,
		algorithm_version: Optional[str] = None,
		force: Optional[bool] = None,
	) -> dict[str, Any]:
		cfg = replace(
			self.config,
			segment_size=segment_size or self.config.segment_size,
			max_segments=max_segments or self.config.max_segments,
			pause_ms=self.config.pause_ms if pause_ms is None else pause_ms,
			algorithm_version=algorithm_version or self.config.algorithm_version,
		)
		if user_id is not None:
			outcome = await self.presort_for_user(user_id, config=cfg, incremental=incremental, force=force)
			return {
				"processedUsers": 1,
				"totalCandidates": outcome.candidates_fetched,
				"totalSegments": outcome.segments_generated,
				"totalSkipped": outcome.items_skipped,
			}

		if not no_jitter and not settings.job_cli_runner and cfg.max_jitter_seconds > 0:
			await self.delay(self.jitter() * cfg.max_jitter_seconds)

		processed = 0
		skipped_users = 0
		failed_users = 0
		total_candidates = 0
		total_segments = 0
		total_skipped = 0
		total_duration = 0

		async def fetch(cursor: Optional[int], limit: int):
			return await self.repo.list_user_ids(after_user_id=cursor, limit=limit)

		async for page in iterate_batches(
			fetch,
			cursor_of=lambda value: value,
			batch_size=batch_size or cfg.batch_size,
			pause_ms=cfg.pause_ms,
			delay=self.delay,
		):
			for start in range(0, len(page), cfg.max_concurrent):
				chunk = page[start : start + cfg.max_concurrent]
				results = await asyncio.gather(
					*(self.presort_for_user(uid, config=cfg, incremental=incremental, force=force) for uid in chunk),
					return_exceptions=True,
				)
				for uid, outcome in zip(chunk, results):
					if isinstance(outcome, BaseException):
						failed_users += 1
						obs_metrics.inc_presort_user("failed")
						_LOG.error(
							"feed_presort.user_failed",
							extra={"user_id": uid, "error": repr(outcome)},
							exc_info=outcome,
						)
						continue
					processed += 1
					total_candidates += outcome.candidates_fetched
					total_segments += outcome.segments_generated
					total_skipped += outcome.items_skipped
					total_duration += outcome.duration_ms
					if outcome.skipped:
						skipped_users += 1

		avg_duration = round(total_duration / processed) if processed else 0
		_LOG.info(
			"feed_presort.summary",
			extra={
				"processed_users": processed,
				"skipped_users": skipped_users,
				"failed_users": failed_users,
				"total_candidates": total_candidates,
				"total_segments": total_segments,
				"total_skipped": total_skipped,
				"avg_duration_ms": avg_duration,
			},
		)
		return {
			"processedUsers": processed,
			"totalCandidates": total_candidates,
			"totalSegments": total_segments,
			"totalSkipped": total_skipped,
			"avgDurationMs": avg_duration,
		}


class FeedPresortCleanupJob:
	name = CLEANUP_JOB_NAME

	def __init__(self, presort: PresortService | None = None) -> None:
		self.presort = presort or PresortService()

	async def run(self, **_: Any) -> dict[str, Any]:
		return {"deleted": await self.presort.cleanup_expired()}


__all__ = [
	"JOB_NAME",
	"CLEANUP_JOB_NAME",
	"FeedPresortConfig",
	"FeedPresortJob",
	"FeedPresortCleanupJob",
	"PresortUserResult",
	"build_segments",
	"candidate_count_for",
	"dedupe_feed_items",
	"segment_is_storable",
]
