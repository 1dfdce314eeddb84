"""Attach media, stats and compatibility to ranked feed items."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Mapping, Optional, Sequence

from matchfeed.domain.feed.config import SUGGESTION_MEDIA_LIMIT
from matchfeed.domain.feed.models import (
	FeedItem,
	FeedViewerContext,
	PostCandidate,
	PresortedItem,
	SuggestionCandidate,
)
from matchfeed.domain.feed.repo import FeedRepository
from matchfeed.domain.feed.schemas import (
	CompatibilityOut,
	FeedItemOut,
	MediaOut,
	PostOut,
	PostStatsOut,
	PresentationOut,
	QuestionOptionOut,
	QuestionOut,
	SuggestionOut,
)
from matchfeed.domain.matching.compatibility import CompatibilityService

_LOG = logging.getLogger(__name__)

_RATING_COLUMNS = ("attractive_avg", "smart_avg", "funny_avg", "interesting_avg")


def _media_out(rows: Sequence[Mapping[str, Any]]) -> list[MediaOut]:
	return [
		MediaOut(id=str(row["id"]), type=str(row["type"]), url=row["url"], thumb_url=row.get("thumb_url"))
		for row in rows
	]


def rating_average(row: Optional[Mapping[str, Any]]) -> Optional[float]:
	if row is None:
		return None
	values = [float(row[column]) for column in _RATING_COLUMNS if row.get(column) is not None]
	if not values:
		return None
	return sum(values) / len(values)


def _settled(name: str, result: Any, default: Any) -> Any:
	if isinstance(result, BaseException):
		_LOG.warning("feed.hydrate.part_failed", extra={"part": name, "error": repr(result)})
		return default
	return result


class FeedHydrator:
	def __init__(
		self,
		repository: FeedRepository | None = None,
		*,
		compatibility: CompatibilityService | None = None,
	) -> None:
		self.repo = repository or FeedRepository()
		self.compatibility = compatibility or CompatibilityService()

	async def hydrate_feed_items(self, ctx: FeedViewerContext, items: Sequence[FeedItem]) -> list[FeedItemOut]:
		"""Hydrate in order; a failed lookup leaves its part empty instead of failing the page."""
		if not items:
			return []
		post_ids = [item.post.id for item in items if item.post is not None]
		post_actor_ids = [item.post.user_id for item in items if item.post is not None]
		suggestion_ids = [item.suggestion.user_id for item in items if item.suggestion is not None]

		results = await asyncio.gather(
			self.repo.list_post_stats(post_ids),
			self.repo.list_rating_stats(list(dict.fromkeys(post_actor_ids + suggestion_ids))),
			self.repo.list_post_media(post_ids),
			self.repo.list_profile_media(suggestion_ids, per_user=SUGGESTION_MEDIA_LIMIT),
			self.compatibility.get_compatibility_map(ctx.user_id, suggestion_ids),
			return_exceptions=True,
		)
		post_stats = _settled("post_stats", results[0], {})
		rating_stats = _settled("rating_stats", results[1], {})
		post_media = _settled("post_media", results[2], {})
		profile_media = _settled("profile_media", results[3], {})
		compat_map = _settled("compatibility", results[4], {})

		hydrated: list[FeedItemOut] = []
		for item in items:
			presentation = item.effective_presentation
			out = FeedItemOut(
				type=item.type,
				actor_id=str(item.actor_id),
				source=item.source,
				tier=item.tier,
				presentation=PresentationOut(**presentation.to_dict()) if presentation else None,
			)
			if item.post is not None:
				stats = post_stats.get(item.post.id)
				out.post = PostOut(
					id=str(item.post.id),
					author_id=str(item.post.user_id),
					author_display_name=item.post.display_name,
					text=item.post.text,
					created_at=item.post.created_at,
					media_type=item.post.media_type,
					media=_media_out(post_media.get(item.post.id, [])),
					stats=PostStatsOut(
						like_count=int(stats["like_count"]) if stats else 0,
						comment_count=int(stats["comment_count"]) if stats else 0,
					),
					score=item.post.score,
				)
			elif item.suggestion is not None:
				user_id = item.suggestion.user_id
				ratings = rating_stats.get(user_id)
				summary = CompatibilityService.resolve_compatibility(ctx.user_id, compat_map, user_id)
				out.suggestion = SuggestionOut(
					user_id=str(user_id),
					display_name=item.suggestion.display_name,
					bio=item.suggestion.bio,
					location_text=item.suggestion.location_text,
					source=item.suggestion.source,
					match_score=item.suggestion.match_score,
					score=item.suggestion.score,
					media=_media_out(profile_media.get(user_id, [])),
					rating_average=rating_average(ratings),
					rating_count=int(ratings["rating_count"]) if ratings else 0,
					compatibility=CompatibilityOut(**summary.to_dict()) if summary else None,
				)
			elif item.question is not None:
				out.question = QuestionOut(
					id=str(item.question.id),
					quiz_id=str(item.question.quiz_id),
					prompt=item.question.prompt,
					quiz_title=item.question.quiz_title,
					options=[
						QuestionOptionOut(id=str(option.id), label=option.label, value=option.value, order=option.order)
						for option in item.question.options
					],
				)
			hydrated.append(out)
		return hydrated

	async def rebuild_presorted(self, ctx: FeedViewerContext, presorted: Sequence[PresortedItem]) -> list[FeedItem]:
		"""Reload entities referenced by presorted items; vanished ones are skipped."""
		post_ids = [item.id for item in presorted if item.type == "post"]
		user_ids = [item.id for item in presorted if item.type == "suggestion"]
		question_ids = [item.id for item in presorted if item.type == "question"]
		posts, profiles, questions = await asyncio.gather(
			self.repo.get_posts_by_ids(post_ids),
			self.repo.get_profiles_by_user_ids(user_ids),
			self.repo.get_questions_by_ids(question_ids),
		)

		items: list[FeedItem] = []
		for entry in presorted:
			if entry.type == "post":
				post: Optional[PostCandidate] = posts.get(entry.id)
				if post is None:
					continue
				post = replace(post, media_type=entry.media_type or "text", score=entry.score)
				item = FeedItem.for_post(post)
			elif entry.type == "suggestion":
				row = profiles.get(entry.id)
				if row is None:
					continue
				source = "match" if entry.source == "match" else "suggested"
				suggestion = SuggestionCandidate.from_record(row, source=source)
				suggestion.score = entry.score
				item = FeedItem.for_suggestion(suggestion)
			elif entry.type == "question":
				question = questions.get(entry.id)
				if question is None:
					continue
				item = FeedItem.for_question(question)
			else:
				continue
			items.append(item.with_presentation(entry.presentation))
		return items

	async def hydrate_from_presorted(
		self,
		ctx: FeedViewerContext,
		presorted: Sequence[PresortedItem],
	) -> list[FeedItemOut]:
		if not presorted:
			return []
		return await self.hydrate_feed_items(ctx, await self.rebuild_presorted(ctx, presorted))


__all__ = ["FeedHydrator", "rating_average"]
