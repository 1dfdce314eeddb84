"""Follow relationships and the presort invalidation they trigger."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from matchfeed.domain.feed.models import RelationshipIds
from matchfeed.domain.feed.presort import PresortService
from matchfeed.domain.feed.repo import FeedRepository
from matchfeed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)


class RelationshipService:
	"""Following means the viewer was granted access to the owner's profile."""

	def __init__(
		self,
		repository: FeedRepository | None = None,
		*,
		presort: PresortService | None = None,
	) -> None:
		self.repo = repository or FeedRepository()
		self.presort = presort or PresortService(self.repo)
		self._pending: set[asyncio.Task] = set()

	async def get_following_ids(self, user_id: int) -> list[int]:
		return await self.repo.list_following_ids(user_id)

	async def get_follower_ids(self, user_id: int) -> list[int]:
		return await self.repo.list_follower_ids(user_id)

	async def get_relationship_ids(self, user_id: int) -> RelationshipIds:
		following, followers = await asyncio.gather(
			self.get_following_ids(user_id),
			self.get_follower_ids(user_id),
		)
		following_set = set(following)
		# mutual follows count as following only
		return RelationshipIds(
			following_ids=tuple(following),
			follower_ids=tuple(uid for uid in followers if uid not in following_set),
		)

	async def batch_invalidate_segments(self, user_ids: Sequence[int]) -> int:
		return await self.presort.batch_invalidate(user_ids, reason="relationship")

	async def invalidate_user_and_follower_feeds(self, user_id: int) -> int:
		followers = await self.get_follower_ids(user_id)
		return await self.batch_invalidate_segments([user_id, *followers])

	async def _invalidate_pair(self, owner_id: int, viewer_id: int) -> None:
		try:
			deleted = await self.batch_invalidate_segments([owner_id, viewer_id])
			_LOG.info(
				"feed.relationship.invalidated",
				extra={"owner_id": owner_id, "viewer_id": viewer_id, "deleted": deleted},
			)
		except Exception:
			obs_metrics.INVALIDATION_FAILURES.inc()
			_LOG.exception(
				"feed.relationship.invalidate_failed",
				extra={"owner_id": owner_id, "viewer_id": viewer_id},
			)

	def on_access_changed(self, owner_id: int, viewer_id: int, action: Optional[str] = None) -> asyncio.Task:
		"""Schedule invalidation of both users' segments without awaiting it."""
		_LOG.debug(
			"feed.relationship.access_changed",
			extra={"owner_id": owner_id, "viewer_id": viewer_id, "action": action},
		)
		task = asyncio.create_task(self._invalidate_pair(owner_id, viewer_id))
		self._pending.add(task)
		task.add_done_callback(self._pending.discard)
		return task

	async def drain(self) -> None:
		if self._pending:
			await asyncio.gather(*list(self._pending))


__all__ = ["RelationshipService"]
