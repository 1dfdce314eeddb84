"""Feed assembly: relationship posts, presorted segments and the live ranking fallback."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from matchfeed.domain.feed.candidates import CandidateProvider
from matchfeed.domain.feed.config import FEED_CONFIG, LITE_TAKE, FeedConfig
from matchfeed.domain.feed.hydration import FeedHydrator
from matchfeed.domain.feed.models import (
	CursorCutoff,
	FeedItem,
	FeedViewerContext,
	PresortedItem,
	RelationshipIds,
	SegmentStatus,
)
from matchfeed.domain.feed.phase1 import parse_phase1_json, phase1_items, seen_items_from_phase1
from matchfeed.domain.feed.presort import PresortService
from matchfeed.domain.feed.queue import enqueue_presort
from matchfeed.domain.feed.ranking import merge_and_rank, ranking_summary
from matchfeed.domain.feed.relationships import RelationshipService
from matchfeed.domain.feed.repo import FeedRepository
from matchfeed.domain.feed.schemas import FeedItemOut, FeedLiteResponse, FeedResponse
from matchfeed.domain.feed.scoring import FeedScorer
from matchfeed.domain.feed.seen import SeenService, seen_items_for
from matchfeed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

RefreshScheduler = Callable[[int], Awaitable[Any]]
FeedResult = Union[FeedResponse, FeedLiteResponse, dict[str, Any]]


def next_post_cursor_id(items: Sequence[FeedItem]) -> Optional[int]:
	for item in reversed(items):
		if item.type == "post" and item.post is not None:
			return item.post.id
	return None


class _RelationshipFilter:
	def __init__(self, items: Sequence[FeedItem]) -> None:
		self.post_ids = {item.post.id for item in items if item.post is not None}
		self.actor_ids = {item.post.user_id for item in items if item.post is not None}

	def keep_item(self, item: FeedItem) -> bool:
		if item.type == "post" and item.post is not None:
			return item.post.id not in self.post_ids
		if item.type == "suggestion" and item.suggestion is not None:
			return item.suggestion.user_id not in self.actor_ids
		return True

	def keep_presorted(self, item: PresortedItem) -> bool:
		if item.type == "post":
			return item.id not in self.post_ids
		if item.type == "suggestion":
			return item.actor_id not in self.actor_ids
		return True


class FeedService:
	def __init__(
		self,
		repository: FeedRepository | None = None,
		*,
		candidates: CandidateProvider | None = None,
		scorer: FeedScorer | None = None,
		hydrator: FeedHydrator | None = None,
		presort: PresortService | None = None,
		relationships: RelationshipService | None = None,
		seen: SeenService | None = None,
		schedule_refresh: RefreshScheduler | None = None,
		config: FeedConfig = FEED_CONFIG,
	) -> None:
		self.repo = repository or FeedRepository()
		self.candidates = candidates or CandidateProvider(self.repo)
		self.scorer = scorer or FeedScorer(self.repo, config=config)
		self.hydrator = hydrator or FeedHydrator(self.repo)
		self.seen = seen or SeenService(self.repo)
		self.presort = presort or PresortService(self.repo, seen=self.seen, config=config)
		self.relationships = relationships or RelationshipService(self.repo, presort=self.presort)
		self.schedule_refresh = schedule_refresh or enqueue_presort
		self.config = config

	async def _request_refresh(self, user_id: int) -> None:
		try:
			await self.schedule_refresh(user_id)
		except Exception:
			_LOG.exception("feed.presort.refresh_enqueue_failed", extra={"user_id": user_id})

	async def _relationship_items(
		self,
		ctx: FeedViewerContext,
		cursor: Optional[CursorCutoff],
		limit: int,
	) -> list[FeedItem]:
		if ctx.user_id is None:
			return []
		ids: RelationshipIds = await self.relationships.get_relationship_ids(ctx.user_id)
		posts = await self.candidates.get_relationship_post_candidates(ctx, ids, cursor)
		items = (
			[FeedItem.for_post(post, "self") for post in posts.self_posts]
			+ [FeedItem.for_post(post, "following") for post in posts.following]
			+ [FeedItem.for_post(post, "followers") for post in posts.followers]
		)
		return items[:limit]

	async def get_feed(self, ctx: FeedViewerContext) -> FeedResult:
		limit = LITE_TAKE if ctx.lite else ctx.take
		cursor = await self.candidates.resolve_cursor(ctx.cursor_id)
		relationship_items = await self._relationship_items(ctx, cursor, limit)
		filters = _RelationshipFilter(relationship_items)

		if ctx.user_id is not None and ctx.cursor_id is None:
			try:
				served = await self._serve_presorted(ctx, limit, relationship_items, filters)
			except Exception:
				_LOG.exception("feed.presort.read_failed", extra={"user_id": ctx.user_id})
				served = None
			if served is not None:
				obs_metrics.inc_feed_request("presort")
				return served

		obs_metrics.inc_feed_request("fallback")
		return await self._serve_live(ctx, limit, cursor, relationship_items, filters)

	async def _serve_presorted(
		self,
		ctx: FeedViewerContext,
		limit: int,
		relationship_items: list[FeedItem],
		filters: _RelationshipFilter,
	) -> Optional[FeedResult]:
		user_id = ctx.user_id
		validation = await self.presort.read_segment(user_id, 0)
		if validation.status is SegmentStatus.VERSION_MISMATCH:
			await self.presort.invalidate_all_for_user(user_id, reason="version_mismatch")
			return None
		if validation.status is SegmentStatus.EXPIRED:
			await self._request_refresh(user_id)
			return None
		if not validation.valid:
			return None

		segment = validation.segment
		if ctx.lite and segment.phase1_json and not relationship_items:
			payload = parse_phase1_json(segment.phase1_json)
			if ctx.mark_seen:
				await self.seen.record_feed_seen(user_id, seen_items_from_phase1(payload))
			return payload

		remaining = max(limit - len(relationship_items), 0)
		filtered = [item for item in segment.items if filters.keep_presorted(item)]
		top = filtered[: max(remaining, 3)]
		if not await self.presort.check_all_unseen(user_id, top):
			filtered = await self.presort.apply_seen_penalty(user_id, filtered)

		presorted_items = await self.hydrator.rebuild_presorted(ctx, filtered[:remaining]) if remaining > 0 else []
		items = relationship_items + presorted_items
		hydrated = await self.hydrator.hydrate_feed_items(ctx, items)
		return await self._respond(ctx, limit, items, hydrated)

	async def _serve_live(
		self,
		ctx: FeedViewerContext,
		limit: int,
		cursor: Optional[CursorCutoff],
		relationship_items: list[FeedItem],
		filters: _RelationshipFilter,
	) -> FeedResult:
		candidates = await self.candidates.get_candidates(ctx, cursor)
		scored = await self.scorer.score_candidates(ctx, candidates)
		ranked = merge_and_rank(ctx, scored, self.config)
		combined = relationship_items + [item for item in ranked if filters.keep_item(item)]
		items = combined[:limit]
		hydrated = await self.hydrator.hydrate_feed_items(ctx, items)

		if ctx.user_id is not None:
			await self._request_refresh(ctx.user_id)

		debug = None
		if ctx.debug and scored.debug is not None:
			scored.debug.ranking = ranking_summary(ranked, combined)
			debug = scored.debug.to_dict()
		return await self._respond(ctx, limit, items, hydrated, debug=debug)

	async def _respond(
		self,
		ctx: FeedViewerContext,
		limit: int,
		items: list[FeedItem],
		hydrated: list[FeedItemOut],
		*,
		debug: Optional[dict[str, Any]] = None,
	) -> FeedResult:
		if ctx.mark_seen and ctx.user_id is not None:
			await self.seen.record_feed_seen(ctx.user_id, seen_items_for(items))

		cursor_id = next_post_cursor_id(items)
		next_cursor_id = str(cursor_id) if cursor_id is not None else None
		if ctx.lite:
			return FeedLiteResponse(items=phase1_items(items, limit), next_cursor_id=next_cursor_id)
		return FeedResponse(
			items=hydrated,
			next_cursor_id=next_cursor_id,
			has_more_posts=next_cursor_id is not None,
			debug=debug,
		)


__all__ = ["FeedService", "next_post_cursor_id"]
