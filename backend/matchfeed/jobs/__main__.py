"""Run one registered job from the command line.

    python -m matchfeed.jobs match-scores --user-id 42
    python -m matchfeed.jobs feed-presort --batch-size 50 --no-jitter
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Optional, Sequence

from matchfeed.infra import postgres
from matchfeed.jobs.registry import JobOptions, JobRegistry, build_job_registry
from matchfeed.jobs.runner import JobError
from matchfeed.obs.logging import configure_logging


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
	parser = argparse.ArgumentParser(prog="matchfeed.jobs", description="Run a matchfeed background job")
	parser.add_argument("job", help="Registered job name (use 'list' to print them)")
	parser.add_argument("--user-id", type=int, default=None, help="Restrict the run to a single user")
	parser.add_argument("--batch-size", type=int, default=None, help="Users fetched per page")
	parser.add_argument("--pause-ms", type=int, default=None, help="Pause between pages in milliseconds")
	parser.add_argument("--algorithm-version", default=None, help="Override the algorithm version tag")
	parser.add_argument("--no-jitter", action="store_true", help="Skip the start-up jitter of batch runs")
	parser.add_argument("--force", action="store_true", default=None, help="Ignore freshness hashes")
	return parser.parse_args(argv)


def options_from_args(args: argparse.Namespace) -> JobOptions:
	return JobOptions(
		user_id=args.user_id,
		batch_size=args.batch_size,
		pause_ms=args.pause_ms,
		algorithm_version=args.algorithm_version,
		no_jitter=args.no_jitter,
		force=args.force,
	)


async def run_cli(args: argparse.Namespace, registry: Optional[JobRegistry] = None) -> int:
	registry = registry or build_job_registry()
	if args.job == "list":
		for definition in registry:
			print(f"{definition.name}\t{definition.group}\t{definition.description}")
		return 0
	await postgres.init_pool()
	try:
		result = await registry.run(args.job, options_from_args(args), trigger="MANUAL")
	finally:
		await postgres.close_pool()
	print(json.dumps(result, default=str))
	return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
	configure_logging()
	args = _parse_args(argv)
	try:
		return asyncio.run(run_cli(args))
	except JobError as exc:
		print(f"job error: {exc.reason}", file=sys.stderr)
		return 2


if __name__ == "__main__":
	sys.exit(main())
