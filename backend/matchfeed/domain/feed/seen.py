"""Per-viewer seen markers for posts and suggested profiles."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from matchfeed.domain.feed.models import FeedItem, SeenItem, SeenItemType
from matchfeed.domain.feed.repo import FeedRepository
from matchfeed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)


def seen_items_for(items: Iterable[FeedItem]) -> list[SeenItem]:
	"""Posts by post id and suggestions by user id; questions are never recorded."""
	seen: list[SeenItem] = []
	for item in items:
		if item.type == "post" and item.post is not None:
			seen.append(SeenItem(SeenItemType.POST, item.post.id))
		elif item.type == "suggestion" and item.suggestion is not None:
			seen.append(SeenItem(SeenItemType.SUGGESTION, item.suggestion.user_id))
	return seen


class SeenService:
	def __init__(self, repository: FeedRepository | None = None) -> None:
		self.repo = repository or FeedRepository()

	async def fetch_feed_seen(
		self,
		viewer_id: int,
		item_type: SeenItemType,
		item_ids: Sequence[int],
	) -> dict[int, datetime]:
		if not item_ids:
			return {}
		return await self.repo.fetch_seen(viewer_id, item_type, list(dict.fromkeys(item_ids)))

	async def record_feed_seen(
		self,
		viewer_id: int,
		items: Iterable[SeenItem],
		*,
		seen_at: Optional[datetime] = None,
	) -> int:
		ids_by_type: dict[SeenItemType, list[int]] = {}
		for item in items:
			bucket = ids_by_type.setdefault(item.item_type, [])
			if item.item_id not in bucket:
				bucket.append(item.item_id)
		if not ids_by_type:
			return 0
		written = await self.repo.upsert_seen(viewer_id, ids_by_type, seen_at or datetime.now(timezone.utc))
		for item_type, ids in ids_by_type.items():
			obs_metrics.inc_seen_recorded(item_type.value, len(ids))
		_LOG.debug("feed.seen.recorded", extra={"user_id": viewer_id, "count": written})
		return written


__all__ = ["SeenService", "seen_items_for"]
