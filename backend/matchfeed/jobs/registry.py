"""Explicit registry of background jobs shared by the scheduler, worker and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, Optional

from matchfeed.jobs.compatibility import CompatibilityJob
from matchfeed.jobs.compatibility import JOB_NAME as COMPATIBILITY_JOB
from matchfeed.jobs.feed_presort import CLEANUP_JOB_NAME, FeedPresortCleanupJob, FeedPresortJob
from matchfeed.jobs.feed_presort import JOB_NAME as FEED_PRESORT_JOB
from matchfeed.jobs.match_scores import JOB_NAME as MATCH_SCORES_JOB
from matchfeed.jobs.match_scores import MatchScoreJob
from matchfeed.jobs.repo import JobRepository
from matchfeed.jobs.runner import JobError, UnknownJob, run_job
from matchfeed.settings import settings


@dataclass(slots=True)
class JobOptions:
	user_id: Optional[int] = None
	batch_size: Optional[int] = None
	pause_ms: Optional[int] = None
	algorithm_version: Optional[str] = None
	no_jitter: bool = False
	force: Optional[bool] = None
	extra: dict[str, Any] = field(default_factory=dict)

	@property
	def scope(self) -> str:
		return f"user:{self.user_id}" if self.user_id is not None else "batch"

	def metadata(self) -> dict[str, Any]:
		data: dict[str, Any] = {
			"batchSize": self.batch_size,
			"pauseMs": self.pause_ms,
			"noJitter": self.no_jitter,
		}
		data.update(self.extra)
		return {key: value for key, value in data.items() if value is not None}


JobHandler = Callable[[JobOptions], Awaitable[dict[str, Any]]]


@dataclass(slots=True)
class JobDefinition:
	name: str
	handler: JobHandler
	description: str = ""
	group: str = "core"
	interval_minutes: Optional[int] = None
	algorithm_version: Optional[str] = None


class JobRegistry:
	def __init__(self, definitions: tuple[JobDefinition, ...] = (), *, repository: JobRepository | None = None) -> None:
		self.repo = repository
		self._jobs: dict[str, JobDefinition] = {}
		for definition in definitions:
			self.register(definition)

	def register(self, definition: JobDefinition) -> JobDefinition:
		if definition.name in self._jobs:
			raise JobError("duplicate_job")
		self._jobs[definition.name] = definition
		return definition

	def get(self, name: str) -> JobDefinition:
		try:
			return self._jobs[name]
		except KeyError:
			raise UnknownJob(name) from None

	def names(self) -> list[str]:
		return sorted(self._jobs)

	def by_group(self, group: str) -> list[JobDefinition]:
		return [job for name, job in sorted(self._jobs.items()) if job.group == group]

	def __contains__(self, name: object) -> bool:
		return name in self._jobs

	def __iter__(self) -> Iterator[JobDefinition]:
		return iter(self._jobs[name] for name in self.names())

	def __len__(self) -> int:
		return len(self._jobs)

	async def run(
		self,
		name: str,
		options: Optional[JobOptions] = None,
		*,
		trigger: Optional[str] = None,
	) -> dict[str, Any]:
		"""Run one job through ``run_job``; user-scoped runs default to an EVENT trigger."""
		definition = self.get(name)
		options = options or JobOptions()
		if trigger is None:
			trigger = "EVENT" if options.user_id is not None else "CRON"
		return await run_job(
			definition.name,
			lambda: definition.handler(options),
			repository=self.repo,
			trigger=trigger,
			scope=options.scope,
			algorithm_version=options.algorithm_version or definition.algorithm_version,
			metadata=options.metadata(),
		)


def build_job_registry(
	*,
	match_scores: MatchScoreJob | None = None,
	compatibility: CompatibilityJob | None = None,
	feed_presort: FeedPresortJob | None = None,
	cleanup: FeedPresortCleanupJob | None = None,
	repository: JobRepository | None = None,
) -> JobRegistry:
	match_scores = match_scores or MatchScoreJob()
	compatibility = compatibility or CompatibilityJob()
	feed_presort = feed_presort or FeedPresortJob()
	cleanup = cleanup or FeedPresortCleanupJob(feed_presort.presort)

	async def run_match_scores(options: JobOptions) -> dict[str, Any]:
		return await match_scores.run(
			user_id=options.user_id,
			batch_size=options.batch_size,
			pause_ms=options.pause_ms,
			algorithm_version=options.algorithm_version,
		)

	async def run_compatibility(options: JobOptions) -> dict[str, Any]:
		return await compatibility.run(
			user_id=options.user_id,
			batch_size=options.batch_size,
			pause_ms=options.pause_ms,
			algorithm_version=options.algorithm_version,
			force=options.force,
		)

	async def run_feed_presort(options: JobOptions) -> dict[str, Any]:
		return await feed_presort.run(
			user_id=options.user_id,
			batch_size=options.batch_size,
			pause_ms=options.pause_ms,
			algorithm_version=options.algorithm_version,
			no_jitter=options.no_jitter,
			force=options.force,
			**options.extra,
		)

	async def run_cleanup(options: JobOptions) -> dict[str, Any]:
		return await cleanup.run()

	return JobRegistry(
		(
			JobDefinition(
				name=MATCH_SCORES_JOB,
				handler=run_match_scores,
				description="Recompute top-K match scores per viewer",
				group="matching",
				interval_minutes=settings.match_score_interval_minutes,
				algorithm_version=settings.match_algorithm_version,
			),
			JobDefinition(
				name=COMPATIBILITY_JOB,
				handler=run_compatibility,
				description="Recompute viewer-to-target compatibility summaries",
				group="matching",
				interval_minutes=settings.compatibility_interval_minutes,
				algorithm_version=settings.compatibility_version,
			),
			JobDefinition(
				name=FEED_PRESORT_JOB,
				handler=run_feed_presort,
				description="Precompute presorted feed segments",
				group="feed",
				interval_minutes=settings.feed_presort_interval_minutes,
				algorithm_version=feed_presort.config.version,
			),
			JobDefinition(
				name=CLEANUP_JOB_NAME,
				handler=run_cleanup,
				description="Delete expired presorted feed segments",
				group="feed",
				interval_minutes=settings.feed_presort_cleanup_interval_minutes,
			),
		),
		repository=repository,
	)


__all__ = ["JobOptions", "JobHandler", "JobDefinition", "JobRegistry", "build_job_registry"]
