"""Dedupe and score feed candidates before ranking."""

from __future__ import annotations

import asyncio
import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Iterable, Mapping, Optional

from matchfeed.domain.feed.config import FEED_CONFIG, FeedConfig
from matchfeed.domain.feed.models import (
	CandidateSet,
	FeedDebugSummary,
	FeedViewerContext,
	PostCandidate,
	PostMediaType,
	SeenItemType,
	SuggestionCandidate,
)
from matchfeed.domain.feed.repo import FeedRepository


def clamp01(value: float) -> float:
	return max(0.0, min(1.0, value))


def resolve_media_type(types: Iterable[str]) -> PostMediaType:
	has_video = False
	has_image = False
	for kind in types:
		kind = str(kind).upper()
		if kind in ("VIDEO", "EMBED"):
			has_video = True
		elif kind == "IMAGE":
			has_image = True
	if has_video and has_image:
		return "mixed"
	if has_video:
		return "video"
	if has_image:
		return "image"
	return "text"


def recency_score(created_at: datetime, now: datetime) -> float:
	hours = max(0.0, (now - created_at).total_seconds() / 3600.0)
	return clamp01(1.0 / math.log(2.0 + hours))


def post_score(recency: float, seen: bool, config: FeedConfig = FEED_CONFIG) -> float:
	weights = config.weights
	# affinity and quality carry no post signal yet
	raw = weights.recency * recency + weights.affinity * 0.0 + weights.quality * 0.0
	return clamp01(raw - (weights.seen_penalty if seen else 0.0))


def suggestion_affinity(suggestion: SuggestionCandidate) -> float:
	if suggestion.source == "match":
		return 1.0
	return float(suggestion.match_score or 0.0)


def suggestion_score(suggestion: SuggestionCandidate, seen: bool, config: FeedConfig = FEED_CONFIG) -> float:
	weights = config.weights
	raw = weights.affinity * suggestion_affinity(suggestion)
	return clamp01(raw - (weights.seen_penalty if seen else 0.0))


def dedupe_candidates(candidates: CandidateSet, debug: Optional[FeedDebugSummary] = None) -> CandidateSet:
	"""Drop duplicate ids and suggestions for users who already appear as post authors."""
	posts: list[PostCandidate] = []
	post_ids: set[int] = set()
	post_actor_ids: set[int] = set()
	for post in candidates.posts:
		if post.id in post_ids:
			if debug is not None:
				debug.post_duplicates += 1
			continue
		post_ids.add(post.id)
		post_actor_ids.add(post.user_id)
		posts.append(post)

	suggestions: list[SuggestionCandidate] = []
	suggestion_ids: set[int] = set()
	for suggestion in candidates.suggestions:
		if suggestion.user_id in post_actor_ids:
			if debug is not None:
				debug.cross_source_removed += 1
			continue
		if suggestion.user_id in suggestion_ids:
			if debug is not None:
				debug.suggestion_duplicates += 1
			continue
		suggestion_ids.add(suggestion.user_id)
		suggestions.append(suggestion)

	questions = []
	question_ids: set[int] = set()
	for question in candidates.questions:
		if question.id in question_ids:
			if debug is not None:
				debug.question_duplicates += 1
			continue
		question_ids.add(question.id)
		questions.append(question)

	return CandidateSet(posts=posts, suggestions=suggestions, questions=questions, debug=candidates.debug)


def apply_scores(
	candidates: CandidateSet,
	*,
	media_types: Mapping[int, Iterable[str]],
	seen_posts: Mapping[int, datetime],
	seen_suggestions: Mapping[int, datetime],
	now: datetime,
	config: FeedConfig = FEED_CONFIG,
	debug: Optional[FeedDebugSummary] = None,
) -> CandidateSet:
	"""Attach media types and scores; both lists come back sorted by score desc."""
	window_start = now - timedelta(hours=config.seen_window_hours)

	posts: list[PostCandidate] = []
	for post in candidates.posts:
		seen_at = seen_posts.get(post.id)
		seen = seen_at is not None and seen_at >= window_start
		if seen and debug is not None:
			debug.demoted_posts += 1
		posts.append(
			replace(
				post,
				media_type=resolve_media_type(media_types.get(post.id, ())),
				score=post_score(recency_score(post.created_at, now), seen, config),
			)
		)

	suggestions: list[SuggestionCandidate] = []
	for suggestion in candidates.suggestions:
		seen_at = seen_suggestions.get(suggestion.user_id)
		seen = seen_at is not None and seen_at >= window_start
		if seen and debug is not None:
			debug.demoted_suggestions += 1
		suggestions.append(replace(suggestion, score=suggestion_score(suggestion, seen, config)))

	posts.sort(key=lambda item: item.score or 0.0, reverse=True)
	suggestions.sort(key=lambda item: item.score or 0.0, reverse=True)
	return CandidateSet(posts=posts, suggestions=suggestions, questions=list(candidates.questions), debug=debug)


class FeedScorer:
	"""Loads media and seen markers for a candidate set and scores it."""

	def __init__(self, repository: FeedRepository | None = None, *, config: FeedConfig = FEED_CONFIG) -> None:
		self.repo = repository or FeedRepository()
		self.config = config

	async def score_candidates(
		self,
		ctx: FeedViewerContext,
		candidates: CandidateSet,
		*,
		now: Optional[datetime] = None,
		include_seen: bool = True,
	) -> CandidateSet:
		now = now or datetime.now(timezone.utc)
		debug = None
		if ctx.debug:
			debug = FeedDebugSummary(seed=ctx.seed, window_hours=self.config.seen_window_hours)
		deduped = dedupe_candidates(candidates, debug)
		if debug is not None:
			debug.post_ids = [post.id for post in deduped.posts]
			debug.suggestion_user_ids = [item.user_id for item in deduped.suggestions]
			debug.question_ids = [item.id for item in deduped.questions]

		post_ids = [post.id for post in deduped.posts]
		suggestion_ids = [item.user_id for item in deduped.suggestions]
		seen_posts: Mapping[int, datetime] = {}
		seen_suggestions: Mapping[int, datetime] = {}
		if include_seen and ctx.user_id is not None:
			media_types, seen_posts, seen_suggestions = await asyncio.gather(
				self.repo.list_post_media_types(post_ids),
				self.repo.fetch_seen(ctx.user_id, SeenItemType.POST, post_ids),
				self.repo.fetch_seen(ctx.user_id, SeenItemType.SUGGESTION, suggestion_ids),
			)
		else:
			media_types = await self.repo.list_post_media_types(post_ids)

		return apply_scores(
			deduped,
			media_types=media_types,
			seen_posts=seen_posts,
			seen_suggestions=seen_suggestions,
			now=now,
			config=self.config,
			debug=debug,
		)

	async def score_candidates_without_seen(
		self,
		ctx: FeedViewerContext,
		candidates: CandidateSet,
		*,
		now: Optional[datetime] = None,
	) -> CandidateSet:
		return await self.score_candidates(ctx, candidates, now=now, include_seen=False)


__all__ = [
	"FeedScorer",
	"apply_scores",
	"clamp01",
	"dedupe_candidates",
	"post_score",
	"recency_score",
	"resolve_media_type",
	"suggestion_affinity",
	"suggestion_score",
]
