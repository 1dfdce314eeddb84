from __future__ import annotations

from typing import Any, Optional

import pytest

from matchfeed.domain.feed import queue as presort_queue
from matchfeed.jobs import __main__ as jobs_cli
from matchfeed.jobs.feed_presort import JOB_NAME as FEED_PRESORT_JOB
from matchfeed.jobs.freshness import FreshnessStore, hash_key_values
from matchfeed.jobs.registry import JobDefinition, JobOptions, JobRegistry, build_job_registry
from matchfeed.jobs.runner import InvalidTrigger, JobError, UnknownJob, run_job
from matchfeed.jobs.scheduler import JobScheduler
from matchfeed.jobs.worker import PresortWorker


class _StubJobRepo:
	def __init__(self) -> None:
		self.runs: dict[int, dict[str, Any]] = {}
		self.freshness: dict[tuple[str, str], str] = {}

	async def create_run(self, **fields) -> int:
		run_id = len(self.runs) + 1
		self.runs[run_id] = {"status": "RUNNING", **fields}
		return run_id

	async def finish_run(self, run_id: int, *, status: str, finished_at, duration_ms: int, error: Optional[str] = None):
		self.runs[run_id].update(status=status, finished_at=finished_at, duration_ms=duration_ms, error=error)

	async def get_freshness(self, job_name: str, scope: str) -> Optional[str]:
		return self.freshness.get((job_name, scope))

	async def upsert_freshness(self, job_name: str, scope: str, input_hash: str, computed_at) -> None:
		self.freshness[(job_name, scope)] = input_hash


def _registry(repo: _StubJobRepo, calls: list[JobOptions]) -> JobRegistry:
	async def handler(options: JobOptions) -> dict[str, Any]:
		calls.append(options)
		return {"processedUsers": 1}

	async def broken(options: JobOptions) -> dict[str, Any]:
		raise RuntimeError("boom")

	return JobRegistry(
		(
			JobDefinition(name="echo", handler=handler, group="test", interval_minutes=5, algorithm_version="v7"),
			JobDefinition(name="broken", handler=broken, group="test"),
		),
		repository=repo,
	)


@pytest.mark.asyncio
async def test_run_job_records_success():
	repo = _StubJobRepo()

	async def handler():
		return {"ok": True}

	result = await run_job("demo", handler, repository=repo, trigger="CRON", scope="batch", algorithm_version="v1")

	assert result == {"ok": True}
	run = repo.runs[1]
	assert run["status"] == "SUCCESS"
	assert run["job_name"] == "demo"
	assert run["algorithm_version"] == "v1"
	assert run["error"] is None


@pytest.mark.asyncio
async def test_run_job_records_failure_and_reraises():
	repo = _StubJobRepo()

	async def handler():
		raise ValueError("bad input")

	with pytest.raises(ValueError):
		await run_job("demo", handler, repository=repo)

	run = repo.runs[1]
	assert run["status"] == "FAILED"
	assert "bad input" in run["error"]


@pytest.mark.asyncio
async def test_run_job_rejects_unknown_trigger():
	async def handler():
		return None

	with pytest.raises(InvalidTrigger):
		await run_job("demo", handler, repository=_StubJobRepo(), trigger="WEBHOOK")


@pytest.mark.asyncio
async def test_registry_runs_with_event_trigger_for_user_scope():
	repo = _StubJobRepo()
	calls: list[JobOptions] = []
	registry = _registry(repo, calls)

	result = await registry.run("echo", JobOptions(user_id=42, batch_size=10))

	assert result == {"processedUsers": 1}
	assert calls[0].user_id == 42
	run = repo.runs[1]
	assert run["trigger"] == "EVENT"
	assert run["scope"] == "user:42"
	assert run["algorithm_version"] == "v7"
	assert run["metadata"] == {"batchSize": 10, "noJitter": False}


@pytest.mark.asyncio
async def test_registry_failure_is_recorded():
	repo = _StubJobRepo()
	registry = _registry(repo, [])

	with pytest.raises(RuntimeError):
		await registry.run("broken")

	assert repo.runs[1]["status"] == "FAILED"
	assert repo.runs[1]["trigger"] == "CRON"


def test_registry_lookup_and_grouping():
	registry = _registry(_StubJobRepo(), [])

	assert registry.names() == ["broken", "echo"]
	assert [job.name for job in registry.by_group("test")] == ["broken", "echo"]
	assert "echo" in registry
	assert len(registry) == 2
	with pytest.raises(UnknownJob):
		registry.get("missing")
	with pytest.raises(JobError):
		registry.register(JobDefinition(name="echo", handler=registry.get("echo").handler))


def test_default_registry_contains_all_jobs():
	registry = build_job_registry(repository=_StubJobRepo())

	assert registry.names() == ["compatibility", "feed-presort", "feed-presort-cleanup", "match-scores"]
	assert [job.name for job in registry.by_group("matching")] == ["compatibility", "match-scores"]


@pytest.mark.asyncio
async def test_freshness_store_skips_unchanged_hash():
	repo = _StubJobRepo()
	store = FreshnessStore(repo)
	digest = hash_key_values([("version", "v1"), ("updatedAt", None)])

	assert await store.is_fresh("compatibility", "user:1", digest) is False
	await store.mark("compatibility", "user:1", digest)
	assert await store.is_fresh("compatibility", "user:1", digest) is True
	assert await store.is_fresh("compatibility", "user:1", digest, force=True) is False


def test_hash_is_order_sensitive_and_stable():
	first = hash_key_values([("a", 1), ("b", [1, 2])])
	assert first == hash_key_values([("a", 1), ("b", (1, 2))])
	assert first != hash_key_values([("b", [1, 2]), ("a", 1)])


class _FakeScheduler:
	def __init__(self) -> None:
		self.jobs: list[dict[str, Any]] = []
		self.started = False

	def add_job(self, func, **kwargs) -> None:
		self.jobs.append({"func": func, **kwargs})

	def start(self) -> None:
		self.started = True

	def shutdown(self, wait: bool = True) -> None:
		self.started = False


def test_scheduler_only_schedules_jobs_with_intervals():
	fake = _FakeScheduler()
	scheduler = JobScheduler(_registry(_StubJobRepo(), []), scheduler=fake)

	scheduler.start()

	assert fake.started is True
	assert [job["id"] for job in fake.jobs] == ["echo"]
	assert fake.jobs[0]["args"] == ["echo"]
	scheduler.shutdown()
	assert fake.started is False


@pytest.mark.asyncio
async def test_scheduler_run_swallows_job_failure():
	repo = _StubJobRepo()
	scheduler = JobScheduler(_registry(repo, []), scheduler=_FakeScheduler())

	await scheduler._run("broken")

	assert repo.runs[1]["status"] == "FAILED"


@pytest.mark.asyncio
async def test_worker_runs_presort_for_queued_user():
	repo = _StubJobRepo()
	calls: list[JobOptions] = []

	async def handler(options: JobOptions) -> dict[str, Any]:
		calls.append(options)
		return {"processedUsers": 1}

	registry = JobRegistry((JobDefinition(name=FEED_PRESORT_JOB, handler=handler),), repository=repo)
	worker = PresortWorker(registry, poll_timeout=1)

	assert await worker.enqueue(7) is True
	assert await worker.enqueue(7) is False
	assert await worker.run_once() is True

	assert calls[0].user_id == 7
	assert calls[0].no_jitter is True
	assert repo.runs[1]["trigger"] == "EVENT"
	assert await presort_queue.queue_depth() == 0


def test_cli_parses_job_options():
	args = jobs_cli._parse_args(["feed-presort", "--user-id", "9", "--batch-size", "25", "--no-jitter", "--force"])
	options = jobs_cli.options_from_args(args)

	assert args.job == "feed-presort"
	assert options.user_id == 9
	assert options.batch_size == 25
	assert options.no_jitter is True
	assert options.force is True


@pytest.mark.asyncio
async def test_cli_runs_job_through_registry(capsys):
	repo = _StubJobRepo()
	calls: list[JobOptions] = []
	registry = _registry(repo, calls)

	code = await jobs_cli.run_cli(jobs_cli._parse_args(["echo", "--pause-ms", "5"]), registry)

	assert code == 0
	assert calls[0].pause_ms == 5
	assert repo.runs[1]["trigger"] == "MANUAL"
	assert '"processedUsers": 1' in capsys.readouterr().out
