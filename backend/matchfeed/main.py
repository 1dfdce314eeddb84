"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from matchfeed import obs
from matchfeed.api import feed, ops
from matchfeed.api.errors import install_error_handlers
from matchfeed.infra import postgres
from matchfeed.jobs.registry import JobRegistry, build_job_registry
from matchfeed.jobs.scheduler import JobScheduler
from matchfeed.jobs.worker import PresortWorker
from matchfeed.settings import settings

_LOG = logging.getLogger(__name__)


def create_app(*, registry: Optional[JobRegistry] = None) -> FastAPI:
	@asynccontextmanager
	async def lifespan(app: FastAPI):
		await postgres.init_pool()
		worker_tasks: list[asyncio.Task] = []
		scheduler: JobScheduler | None = None
		worker: PresortWorker | None = None
		jobs = registry
		if settings.jobs_enabled or settings.presort_worker_enabled:
			jobs = jobs or build_job_registry()
		if settings.jobs_enabled and jobs is not None:
			scheduler = JobScheduler(jobs)
			scheduler.start()
			app.state.job_scheduler = scheduler
		if settings.presort_worker_enabled and jobs is not None:
			worker = PresortWorker(jobs)
			worker_tasks.append(asyncio.create_task(worker.run_forever(), name="feed-presort-worker"))
			app.state.presort_worker = worker
		_LOG.info(
			"app.started",
			extra={"jobs_enabled": settings.jobs_enabled, "presort_worker": settings.presort_worker_enabled},
		)
		try:
			yield
		finally:
			if scheduler is not None:
				scheduler.shutdown()
			if worker is not None:
				worker.stop()
			for task in worker_tasks:
				task.cancel()
			if worker_tasks:
				await asyncio.gather(*worker_tasks, return_exceptions=True)
			await feed.drain_background_tasks()
			await postgres.close_pool()

	app = FastAPI(title="matchfeed", lifespan=lifespan)
	install_error_handlers(app)
	obs.init(app)
	app.include_router(ops.router)
	app.include_router(feed.router)
	return app


app = create_app()


__all__ = ["app", "create_app"]
