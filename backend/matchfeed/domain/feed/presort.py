"""Presorted feed segments: storage, validation and the seen penalty applied at read time."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from matchfeed.domain.feed.config import FEED_CONFIG, FEED_CONFIG_VERSION, SEEN_CHECK_TOP_N, FeedConfig
from matchfeed.domain.feed.models import (
	PresortedItem,
	PresortedSegment,
	SeenItemType,
	SegmentStatus,
	SegmentValidation,
)
from matchfeed.domain.feed.repo import FeedRepository
from matchfeed.domain.feed.seen import SeenService
from matchfeed.obs import metrics as obs_metrics
from matchfeed.settings import settings

_LOG = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def current_algorithm_version() -> str:
	return settings.presort_algorithm_version or FEED_CONFIG_VERSION


def validate_segment(
	segment: Optional[PresortedSegment],
	version: Optional[str] = None,
	*,
	now: Optional[datetime] = None,
) -> SegmentValidation:
	"""Classify a stored segment; only ``VALID`` segments may be served."""
	if segment is None:
		return SegmentValidation(SegmentStatus.MISSING)
	if segment.algorithm_version != (version or current_algorithm_version()):
		return SegmentValidation(SegmentStatus.VERSION_MISMATCH, segment)
	if segment.is_expired(now or _utcnow()):
		return SegmentValidation(SegmentStatus.EXPIRED, segment)
	if not segment.items:
		return SegmentValidation(SegmentStatus.EMPTY, segment)
	return SegmentValidation(SegmentStatus.VALID, segment)


class PresortService:
	def __init__(
		self,
		repository: FeedRepository | None = None,
		*,
		seen: SeenService | None = None,
		config: FeedConfig = FEED_CONFIG,
		clock: Clock = _utcnow,
	) -> None:
		self.repo = repository or FeedRepository()
		self.seen = seen or SeenService(self.repo)
		self.config = config
		self.clock = clock

	async def get_raw_segment(self, user_id: int, segment_index: int = 0) -> Optional[PresortedSegment]:
		return await self.repo.get_segment(user_id, segment_index)

	async def get_segment(self, user_id: int, segment_index: int = 0) -> Optional[PresortedSegment]:
		"""Stored segment, or None when absent or expired."""
		segment = await self.repo.get_segment(user_id, segment_index)
		if segment is None or segment.is_expired(self.clock()):
			return None
		return segment

	async def read_segment(self, user_id: int, segment_index: int = 0) -> SegmentValidation:
		validation = validate_segment(await self.get_raw_segment(user_id, segment_index), now=self.clock())
		obs_metrics.inc_presort_read(validation.status.value)
		return validation

	async def store_segment(
		self,
		user_id: int,
		segment_index: int,
		items: Sequence[PresortedItem],
		phase1_json: Optional[str],
		*,
		algorithm_version: Optional[str] = None,
		ttl: timedelta = timedelta(minutes=30),
	) -> None:
		await self.store_segments(
			user_id,
			[(segment_index, items, phase1_json)],
			algorithm_version=algorithm_version,
			ttl=ttl,
		)

	async def store_segments(
		self,
		user_id: int,
		segments: Sequence[tuple[int, Sequence[PresortedItem], Optional[str]]],
		*,
		algorithm_version: Optional[str] = None,
		ttl: timedelta = timedelta(minutes=30),
	) -> int:
		now = self.clock()
		written = await self.repo.upsert_segments(
			user_id,
			segments,
			algorithm_version=algorithm_version or current_algorithm_version(),
			expires_at=now + ttl,
			computed_at=now,
		)
		obs_metrics.PRESORT_SEGMENTS_WRITTEN.inc(written)
		return written

	async def invalidate_segment(self, user_id: int, segment_index: int) -> int:
		deleted = await self.repo.delete_segment(user_id, segment_index)
		obs_metrics.inc_presort_invalidated("segment", deleted)
		return deleted

	async def invalidate_all_for_user(self, user_id: int, *, reason: str = "user") -> int:
		deleted = await self.repo.delete_segments_for_users([user_id])
		obs_metrics.inc_presort_invalidated(reason, deleted)
		return deleted

	async def batch_invalidate(self, user_ids: Sequence[int], *, reason: str = "batch") -> int:
		unique = list(dict.fromkeys(int(uid) for uid in user_ids))
		if not unique:
			return 0
		deleted = await self.repo.delete_segments_for_users(unique)
		obs_metrics.inc_presort_invalidated(reason, deleted)
		return deleted

	async def cleanup_expired(self) -> int:
		deleted = await self.repo.delete_expired_segments(self.clock())
		obs_metrics.PRESORT_CLEANUP.inc(deleted)
		_LOG.info("feed.presort.cleanup", extra={"deleted": deleted})
		return deleted

	async def _seen_maps(self, user_id: int, items: Sequence[PresortedItem]):
		post_ids = [item.id for item in items if item.type == "post"]
		suggestion_ids = [item.id for item in items if item.type == "suggestion"]
		return await asyncio.gather(
			self.seen.fetch_feed_seen(user_id, SeenItemType.POST, post_ids),
			self.seen.fetch_feed_seen(user_id, SeenItemType.SUGGESTION, suggestion_ids),
		)

	def _is_seen(self, item: PresortedItem, posts, suggestions, cutoff: datetime) -> bool:
		if item.type == "post":
			seen_at = posts.get(item.id)
		elif item.type == "suggestion":
			seen_at = suggestions.get(item.id)
		else:
			return False
		return seen_at is not None and seen_at >= cutoff

	async def check_all_unseen(
		self,
		user_id: int,
		items: Sequence[PresortedItem],
		top_n: int = SEEN_CHECK_TOP_N,
	) -> bool:
		top = list(items[:top_n])
		if not top:
			return True
		cutoff = self.clock() - timedelta(hours=self.config.seen_window_hours)
		posts, suggestions = await self._seen_maps(user_id, top)
		return not any(self._is_seen(item, posts, suggestions, cutoff) for item in top)

	async def apply_seen_penalty(self, user_id: int, items: Sequence[PresortedItem]) -> list[PresortedItem]:
		"""Demote items seen inside the window (floored at 0) and re-sort by score."""
		cutoff = self.clock() - timedelta(hours=self.config.seen_window_hours)
		posts, suggestions = await self._seen_maps(user_id, items)
		penalty = self.config.weights.seen_penalty
		penalized = [
			item.with_score(max(0.0, item.score - penalty)) if self._is_seen(item, posts, suggestions, cutoff) else item
			for item in items
		]
		penalized.sort(key=lambda item: item.score, reverse=True)
		return penalized


__all__ = ["PresortService", "current_algorithm_version", "validate_segment"]
