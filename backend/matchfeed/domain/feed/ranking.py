"""Sequence-driven merge of scored candidates into a feed page."""

from __future__ import annotations

import logging
from collections import Counter
from time import perf_counter
from typing import Any, Callable, Iterable, Optional

from matchfeed.domain.feed.config import FEED_CONFIG, FeedConfig, FeedSlot
from matchfeed.domain.feed.models import (
	CandidateSet,
	FeedItem,
	FeedViewerContext,
	Presentation,
	TIERS,
)
from matchfeed.domain.feed.prng import mulberry32
from matchfeed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

_POST_MEDIA_KEYS = ("text", "image", "video", "mixed")


def expand_sequence(sequence: Iterable[FeedSlot]) -> list[FeedSlot]:
	expanded: list[FeedSlot] = []
	for slot in sequence:
		count = int(slot.count) if slot.count and slot.count > 1 else 1
		expanded.extend([slot] * count)
	return expanded


def order_suggestions(items: list[FeedItem], seed: Optional[int]) -> list[FeedItem]:
	"""Score desc; with a seed, ties fall back to a seeded rank drawn in input order."""
	if not items:
		return items
	if seed is None:
		return sorted(items, key=lambda item: -item.score)
	rng = mulberry32(seed)
	ranked = [(item, item.score, rng()) for item in items]
	ranked.sort(key=lambda entry: (-entry[1], entry[2]))
	return [item for item, _, _ in ranked]


class _Bucket:
	__slots__ = ("items", "index")

	def __init__(self, items: list[FeedItem]) -> None:
		self.items = items
		self.index = 0

	def take(self, accept: Callable[[FeedItem], bool]) -> Optional[FeedItem]:
		while self.index < len(self.items):
			item = self.items[self.index]
			self.index += 1
			if accept(item):
				return item
		return None


class _RankState:
	def __init__(self, candidates: CandidateSet, seed: Optional[int], config: FeedConfig) -> None:
		self.config = config
		self.posts = [FeedItem.for_post(post) for post in candidates.posts]
		self.suggestions = order_suggestions([FeedItem.for_suggestion(s) for s in candidates.suggestions], seed)
		self.questions = [FeedItem.for_question(q) for q in candidates.questions]

		self.actor_counts: Counter[int] = Counter()
		self.used_post_ids: set[int] = set()
		self.used_suggestion_ids: set[int] = set()
		self.used_question_ids: set[int] = set()

		self.post_buckets: dict[str, _Bucket] = {"all": _Bucket(self.posts)}
		for key in _POST_MEDIA_KEYS:
			self.post_buckets[key] = _Bucket([item for item in self.posts if (item.post.media_type or "text") == key])
		self.suggestion_buckets: dict[str, _Bucket] = {
			"all": _Bucket(self.suggestions),
			"match": _Bucket([item for item in self.suggestions if item.source == "match"]),
			"suggested": _Bucket([item for item in self.suggestions if item.source == "suggested"]),
		}
		self.question_bucket = _Bucket(self.questions)

	def under_cap(self, actor_id: int) -> bool:
		return self.actor_counts[actor_id] < self.config.caps.max_per_actor

	def has_remaining(self) -> bool:
		return (
			len(self.used_post_ids) < len(self.posts)
			or len(self.used_suggestion_ids) < len(self.suggestions)
			or len(self.used_question_ids) < len(self.questions)
		)

	def take_post(self, media_type: Optional[str] = None) -> Optional[FeedItem]:
		key = "all" if not media_type or media_type == "any" else media_type
		bucket = self.post_buckets.get(key)
		if bucket is None:
			return None

		def accept(item: FeedItem) -> bool:
			if item.post.id in self.used_post_ids or not self.under_cap(item.actor_id):
				return False
			self.used_post_ids.add(item.post.id)
			return True

		return bucket.take(accept)

	def take_post_for_layout(self, media_type: Optional[str], presentation: Optional[str]) -> Optional[FeedItem]:
		if not presentation:
			return self.take_post(media_type)
		matched = self.take_post(media_type)
		if matched is not None:
			return matched
		if media_type and media_type != "any":
			return self.take_post("any")
		return None

	def take_suggestion(self, source: Optional[str] = None) -> Optional[FeedItem]:
		bucket = self.suggestion_buckets.get(source or "all")
		if bucket is None:
			return None

		def accept(item: FeedItem) -> bool:
			if item.actor_id in self.used_suggestion_ids or not self.under_cap(item.actor_id):
				return False
			self.used_suggestion_ids.add(item.actor_id)
			return True

		return bucket.take(accept)

	def take_question(self) -> Optional[FeedItem]:
		def accept(item: FeedItem) -> bool:
			if item.question.id in self.used_question_ids or not self.under_cap(item.actor_id):
				return False
			self.used_question_ids.add(item.question.id)
			return True

		return self.question_bucket.take(accept)

	def post_counts(self) -> dict[str, int]:
		return {key: len(bucket.items) for key, bucket in self.post_buckets.items()}


def _warn_missing_mosaic(state: _RankState, config: FeedConfig) -> None:
	mosaic_slots = [slot for slot in config.sequence if slot.kind == "post" and slot.presentation == "mosaic"]
	if not mosaic_slots:
		return
	total_posts = len(state.posts)
	if total_posts == 0:
		_LOG.warning(
			"feed.rank.mosaic_missing",
			extra={"slots": len(mosaic_slots), "post_candidates": state.post_counts()},
		)
		return
	typed_missing = [
		slot.media_type
		for slot in mosaic_slots
		if slot.media_type not in (None, "any") and not state.post_buckets.get(slot.media_type, _Bucket([])).items
	]
	if typed_missing:
		_LOG.info(
			"feed.rank.mosaic_typed_fallback",
			extra={"media_types": typed_missing, "post_candidates": state.post_counts()},
		)


def _rank_sequence(state: _RankState, sequence: list[FeedSlot], max_items: int) -> list[FeedItem]:
	items: list[FeedItem] = []
	slot_index = 0
	idle = 0
	while len(items) < max_items and state.has_remaining():
		slot = sequence[slot_index % len(sequence)]
		chosen: Optional[FeedItem] = None
		if slot.kind == "post":
			chosen = state.take_post_for_layout(slot.media_type, slot.presentation)
		elif slot.kind == "suggestion":
			chosen = state.take_suggestion(slot.source)
		elif slot.kind == "question":
			chosen = state.take_question()
		# grid slots contribute nothing on their own
		slot_index += 1

		if chosen is None:
			idle += 1
			if idle >= len(sequence):
				break
			continue

		idle = 0
		state.actor_counts[chosen.actor_id] += 1
		if slot.kind in ("post", "suggestion") and slot.presentation:
			chosen = chosen.with_presentation(Presentation(mode=slot.presentation))
		items.append(chosen)
	return items


def _rank_alternating(state: _RankState, max_items: int) -> list[FeedItem]:
	items: list[FeedItem] = []
	post_index = 0
	suggestion_index = 0
	while len(items) < max_items and (post_index < len(state.posts) or suggestion_index < len(state.suggestions)):
		chosen: Optional[FeedItem] = None
		if post_index < len(state.posts) and state.under_cap(state.posts[post_index].actor_id):
			chosen = state.posts[post_index]
		if chosen is None and suggestion_index < len(state.suggestions):
			candidate = state.suggestions[suggestion_index]
			if state.under_cap(candidate.actor_id):
				chosen = candidate
		if chosen is None:
			break
		state.actor_counts[chosen.actor_id] += 1
		items.append(chosen)
		if chosen.type == "post":
			post_index += 1
		else:
			suggestion_index += 1
	return items


def merge_and_rank(
	ctx: FeedViewerContext,
	candidates: CandidateSet,
	config: FeedConfig = FEED_CONFIG,
) -> list[FeedItem]:
	"""Walk the slot sequence over scored candidates, honouring the per-actor cap."""
	started = perf_counter()
	max_items = min(ctx.take, config.caps.max_items_per_response)
	state = _RankState(candidates, ctx.int_seed, config)
	_warn_missing_mosaic(state, config)

	sequence = expand_sequence(config.sequence)
	if sequence:
		items = _rank_sequence(state, sequence, max_items)
	else:
		items = _rank_alternating(state, max_items)

	obs_metrics.FEED_RANK_CANDIDATES.observe(len(state.posts) + len(state.suggestions) + len(state.questions))
	obs_metrics.FEED_RANK_DURATION.observe((perf_counter() - started) * 1000.0)
	for item in items:
		obs_metrics.inc_feed_item(item.type)
	return items


def ranking_summary(ranked: Iterable[FeedItem], combined: Optional[Iterable[FeedItem]] = None) -> dict[str, Any]:
	"""Debug view: sources and actors of the ranked page, tiers of the combined page."""
	ranked = list(ranked)
	combined = ranked if combined is None else list(combined)
	tier_counts = {tier: 0 for tier in TIERS}
	for item in combined:
		tier_counts[item.tier] = tier_counts.get(item.tier, 0) + 1
	return {
		"sourceSequence": [item.source for item in ranked],
		"tierSequence": [item.tier for item in combined],
		"actorCounts": dict(Counter(str(item.actor_id) for item in ranked)),
		"tierCounts": tier_counts,
	}


__all__ = ["expand_sequence", "merge_and_rank", "order_suggestions", "ranking_summary"]
