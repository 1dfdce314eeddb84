"""Redis queue of background presort refresh requests."""

from __future__ import annotations

from typing import Optional

from matchfeed.infra.redis import redis_client
from matchfeed.obs import metrics as obs_metrics
from matchfeed.settings import settings

_PRESORT_QUEUE = "feed:presort:queue"
_PRESORT_PENDING = "feed:presort:pending:{user_id}"


def _pending_key(user_id: int) -> str:
	return _PRESORT_PENDING.format(user_id=user_id)


async def enqueue_presort(user_id: int, *, dedupe_seconds: Optional[int] = None) -> bool:
	"""Queue a refresh unless one for the same user was queued within the dedupe window."""
	ttl = settings.presort_refresh_dedupe_seconds if dedupe_seconds is None else dedupe_seconds
	if ttl > 0:
		claimed = await redis_client.set(_pending_key(user_id), "1", nx=True, ex=ttl)
		if not claimed:
			return False
	depth = await redis_client.rpush(_PRESORT_QUEUE, str(user_id))
	obs_metrics.PRESORT_QUEUE_DEPTH.set(depth)
	return True


async def dequeue_presort(timeout: int = 1) -> Optional[int]:
	item = await redis_client.blpop(_PRESORT_QUEUE, timeout=timeout)
	if not item:
		return None
	_, raw = item
	return int(raw)


async def queue_depth() -> int:
	depth = int(await redis_client.llen(_PRESORT_QUEUE))
	obs_metrics.PRESORT_QUEUE_DEPTH.set(depth)
	return depth


__all__ = ["enqueue_presort", "dequeue_presort", "queue_depth"]
