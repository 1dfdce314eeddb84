"""Run a job handler while recording its lifecycle in ``job_runs``."""

from __future__ import annotations

import logging
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from matchfeed.jobs.repo import JobRepository
from matchfeed.obs import logging as obs_logging
from matchfeed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

T = TypeVar("T")

TRIGGERS = ("CRON", "EVENT", "MANUAL")


class JobError(Exception):
	"""Base class for job runtime errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class UnknownJob(JobError):
	reason = "unknown_job"


class InvalidTrigger(JobError):
	reason = "invalid_trigger"


def _error_text(exc: BaseException) -> str:
	return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


async def run_job(
	job_name: str,
	handler: Callable[[], Awaitable[T]],
	*,
	repository: JobRepository | None = None,
	trigger: str = "MANUAL",
	scope: Optional[str] = None,
	algorithm_version: Optional[str] = None,
	attempt: int = 1,
	metadata: Optional[dict[str, Any]] = None,
) -> T:
	"""Record RUNNING, await ``handler``, then record SUCCESS or FAILED.

	Failures are re-raised after the run row is closed.
	"""
	if trigger not in TRIGGERS:
		raise InvalidTrigger(trigger)
	repo = repository or JobRepository()
	started_at = datetime.now(timezone.utc)
	start = time.perf_counter()
	run_id = await repo.create_run(
		job_name=job_name,
		trigger=trigger,
		scope=scope,
		algorithm_version=algorithm_version,
		attempt=attempt,
		started_at=started_at,
		metadata=metadata,
	)
	token = obs_logging.bind_context(job=job_name)
	try:
		result = await handler()
	except Exception as exc:
		elapsed = time.perf_counter() - start
		await repo.finish_run(
			run_id,
			status="FAILED",
			finished_at=datetime.now(timezone.utc),
			duration_ms=max(0, int(elapsed * 1000)),
			error=_error_text(exc),
		)
		obs_metrics.record_job_run(job_name, result="failed", duration_seconds=elapsed)
		_LOG.exception("job.failed", extra={"job_name": job_name, "run_id": run_id, "scope": scope})
		raise
	finally:
		obs_logging.reset_context(token)
	elapsed = time.perf_counter() - start
	await repo.finish_run(
		run_id,
		status="SUCCESS",
		finished_at=datetime.now(timezone.utc),
		duration_ms=max(0, int(elapsed * 1000)),
	)
	obs_metrics.record_job_run(job_name, result="success", duration_seconds=elapsed)
	_LOG.info("job.succeeded", extra={"job_name": job_name, "run_id": run_id, "duration_ms": int(elapsed * 1000)})
	return result


__all__ = ["JobError", "UnknownJob", "InvalidTrigger", "run_job", "TRIGGERS"]
