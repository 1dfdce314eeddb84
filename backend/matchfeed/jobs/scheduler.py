"""APScheduler wrapper that runs registered jobs on their intervals."""

from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from matchfeed.jobs.registry import JobOptions, JobRegistry

_LOG = logging.getLogger(__name__)


class JobScheduler:
	"""Minimal wrapper around AsyncIOScheduler for registry jobs."""

	def __init__(self, registry: JobRegistry, *, scheduler: Optional[AsyncIOScheduler] = None) -> None:
		self.registry = registry
		self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
		self._started = False

	async def _run(self, name: str) -> None:
		try:
			await self.registry.run(name, JobOptions(), trigger="CRON")
		except Exception:
			# run_job already recorded the failure; keep the scheduler alive
			_LOG.exception("scheduler.job_failed", extra={"job_name": name})

	def schedule_all(self) -> list[str]:
		scheduled: list[str] = []
		for definition in self.registry:
			if not definition.interval_minutes or definition.interval_minutes <= 0:
				continue
			self._scheduler.add_job(
				self._run,
				trigger=IntervalTrigger(minutes=definition.interval_minutes),
				args=[definition.name],
				id=definition.name,
				replace_existing=True,
				max_instances=1,
				coalesce=True,
			)
			scheduled.append(definition.name)
		_LOG.info("scheduler.jobs_scheduled", extra={"jobs": scheduled})
		return scheduled

	def start(self) -> None:
		if not self._started:
			self.schedule_all()
			self._scheduler.start()
			self._started = True

	def shutdown(self) -> None:
		if self._started:
			self._scheduler.shutdown(wait=False)
			self._started = False


__all__ = ["JobScheduler"]
