"""Candidate providers for posts, profile suggestions and quiz questions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from matchfeed.domain.feed.config import FEED_CANDIDATE_CAPS, CandidateCaps
from matchfeed.domain.feed.models import (
	CandidateSet,
	CursorCutoff,
	FeedViewerContext,
	PostCandidate,
	QuestionCandidate,
	RelationshipIds,
	SuggestionCandidate,
)
from matchfeed.domain.feed.prng import random_source, shuffle_in_place
from matchfeed.domain.feed.repo import FeedRepository

_LOG = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


@dataclass(slots=True)
class PostPage:
	posts: list[PostCandidate] = field(default_factory=list)
	next_cursor_id: Optional[int] = None


@dataclass(slots=True)
class RelationshipPosts:
	self_posts: list[PostCandidate] = field(default_factory=list)
	following: list[PostCandidate] = field(default_factory=list)
	followers: list[PostCandidate] = field(default_factory=list)

	def __len__(self) -> int:
		return len(self.self_posts) + len(self.following) + len(self.followers)


class CandidateProvider:
	"""Loads raw feed candidates; scoring and ordering happen downstream."""

	def __init__(
		self,
		repository: FeedRepository | None = None,
		*,
		caps: CandidateCaps = FEED_CANDIDATE_CAPS,
		clock: Clock = _utcnow,
	) -> None:
		self.repo = repository or FeedRepository()
		self.caps = caps
		self.clock = clock

	def _lookback(self) -> datetime:
		return self.clock() - timedelta(days=self.caps.posts.max_lookback_days)

	async def resolve_cursor(self, cursor_id: Optional[int]) -> Optional[CursorCutoff]:
		if cursor_id is None:
			return None
		return await self.repo.get_post_cursor(cursor_id)

	async def get_post_candidates(
		self,
		ctx: FeedViewerContext,
		cursor: Optional[CursorCutoff] = None,
	) -> PostPage:
		if cursor is None and ctx.cursor_id is not None:
			cursor = await self.resolve_cursor(ctx.cursor_id)
		limit = max(ctx.take, self.caps.posts.max_items)
		posts = await self.repo.list_public_posts(
			ctx.user_id,
			since=self._lookback(),
			cursor=cursor,
			limit=limit,
		)
		next_cursor_id = None
		if len(posts) >= ctx.take and ctx.take > 0:
			next_cursor_id = posts[min(ctx.take, len(posts)) - 1].id
		return PostPage(posts=posts, next_cursor_id=next_cursor_id)

	async def get_relationship_post_candidates(
		self,
		ctx: FeedViewerContext,
		relationships: RelationshipIds,
		cursor: Optional[CursorCutoff] = None,
	) -> RelationshipPosts:
		if ctx.user_id is None:
			return RelationshipPosts()
		viewer_id = ctx.user_id
		caps = self.caps.posts
		since = self._lookback()
		following = [uid for uid in relationships.following_ids if uid != viewer_id]
		followers = [uid for uid in relationships.follower_ids if uid != viewer_id]
		self_posts, following_posts, follower_posts = await asyncio.gather(
			self.repo.list_posts_by_authors(
				viewer_id,
				[viewer_id],
				visibilities=("PUBLIC", "PRIVATE"),
				since=since,
				cursor=cursor,
				limit=caps.self_max_items,
			),
			self.repo.list_posts_by_authors(
				viewer_id,
				following,
				visibilities=("PUBLIC", "PRIVATE"),
				since=since,
				cursor=cursor,
				limit=caps.following_max_items,
			),
			self.repo.list_posts_by_authors(
				viewer_id,
				followers,
				visibilities=("PUBLIC",),
				since=since,
				cursor=cursor,
				limit=caps.followers_max_items,
			),
		)
		return RelationshipPosts(self_posts=self_posts, following=following_posts, followers=follower_posts)

	async def get_suggestion_candidates(self, ctx: FeedViewerContext) -> list[SuggestionCandidate]:
		"""Active matches first, then fresh match scores, else a seeded random sample."""
		if ctx.user_id is None:
			return []
		viewer_id = ctx.user_id
		caps = self.caps.suggestions
		match_ids = await self.repo.list_active_match_user_ids(
			viewer_id,
			limit=min(caps.max_match_items, caps.max_items),
		)
		suggestions: list[SuggestionCandidate] = []
		if match_ids:
			profiles = {int(row["user_id"]): row for row in await self.repo.list_visible_profiles(viewer_id, match_ids)}
			for user_id in match_ids:
				row = profiles.get(user_id)
				if row is not None:
					suggestions.append(SuggestionCandidate.from_record(row, source="match", match_score=1.0))

		remaining = caps.max_items - len(suggestions)
		if remaining <= 0:
			return suggestions

		scored = await self.repo.list_fresh_match_scores(
			viewer_id,
			since=self.clock() - timedelta(hours=caps.fresh_score_hours),
			exclude_user_ids=match_ids,
			limit=remaining,
		)
		if scored:
			profiles = {
				int(row["user_id"]): row
				for row in await self.repo.list_visible_profiles(viewer_id, [uid for uid, _ in scored])
			}
			for user_id, score in scored:
				row = profiles.get(user_id)
				if row is not None:
					suggestions.append(SuggestionCandidate.from_record(row, source="suggested", match_score=score))
			return suggestions

		rows = list(await self.repo.list_random_profiles(viewer_id, exclude_user_ids=match_ids, limit=remaining))
		shuffle_in_place(rows, random_source(ctx.int_seed))
		suggestions.extend(SuggestionCandidate.from_record(row, source="suggested") for row in rows)
		return suggestions

	async def get_question_candidates(self, ctx: FeedViewerContext) -> list[QuestionCandidate]:
		if ctx.user_id is None:
			return []
		questions = await self.repo.list_open_questions(ctx.user_id, limit=self.caps.questions.max_items)
		return questions[: self.caps.questions.max_items]

	async def get_candidates(
		self,
		ctx: FeedViewerContext,
		cursor: Optional[CursorCutoff] = None,
	) -> CandidateSet:
		page, suggestions, questions = await asyncio.gather(
			self.get_post_candidates(ctx, cursor),
			self.get_suggestion_candidates(ctx),
			self.get_question_candidates(ctx),
		)
		_LOG.debug(
			"feed.candidates.loaded",
			extra={
				"user_id": ctx.user_id,
				"posts": len(page.posts),
				"suggestions": len(suggestions),
				"questions": len(questions),
			},
		)
		return CandidateSet(posts=page.posts, suggestions=suggestions, questions=questions)


__all__ = ["CandidateProvider", "PostPage", "RelationshipPosts"]
