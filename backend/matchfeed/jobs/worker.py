"""Worker that refreshes presorted feeds requested by the feed service."""

from __future__ import annotations

import asyncio
import logging

from matchfeed.domain.feed import queue as presort_queue
from matchfeed.jobs.feed_presort import JOB_NAME as FEED_PRESORT_JOB
from matchfeed.jobs.registry import JobOptions, JobRegistry

_LOG = logging.getLogger(__name__)


class PresortWorker:
	"""Consumes presort refresh requests from Redis and runs the presort job per user."""

	def __init__(self, registry: JobRegistry, *, poll_timeout: int = 1) -> None:
		self.registry = registry
		self.poll_timeout = poll_timeout
		self._running = False

	async def run_forever(self) -> None:
		self._running = True
		while self._running:
			processed = await self.run_once()
			if not processed:
				await asyncio.sleep(0)

	async def run_once(self) -> bool:
		user_id = await presort_queue.dequeue_presort(timeout=self.poll_timeout)
		if user_id is None:
			return False
		try:
			await self.registry.run(FEED_PRESORT_JOB, JobOptions(user_id=user_id, no_jitter=True), trigger="EVENT")
		except Exception:
			_LOG.exception("presort_worker.process_failed", extra={"user_id": user_id})
		return True

	def stop(self) -> None:
		self._running = False

	async def enqueue(self, user_id: int) -> bool:
		return await presort_queue.enqueue_presort(user_id)


__all__ = ["PresortWorker"]
