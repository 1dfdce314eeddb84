"""Persistence for job runs and input-freshness markers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from matchfeed.infra.postgres import get_pool


class JobRepository:
	"""Thin data-access layer around asyncpg."""

	async def create_run(
		self,
		*,
		job_name: str,
		trigger: str,
		scope: Optional[str],
		algorithm_version: Optional[str],
		attempt: int,
		started_at: datetime,
		metadata: Optional[dict[str, Any]],
	) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await conn.fetchval(
				"""
				INSERT INTO job_runs (job_name, status, trigger, scope, algorithm_version, attempt, started_at, metadata)
				VALUES ($1, 'RUNNING', $2, $3, $4, $5, $6, $7)
				RETURNING id
				""",
				job_name,
				trigger,
				scope,
				algorithm_version,
				attempt,
				started_at,
				metadata,
			)

	async def finish_run(
		self,
		run_id: int,
		*,
		status: str,
		finished_at: datetime,
		duration_ms: int,
		error: Optional[str] = None,
	) -> None:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				UPDATE job_runs
				SET status = $2, finished_at = $3, duration_ms = $4, error = $5
				WHERE id = $1
				""",
				run_id,
				status,
				finished_at,
				duration_ms,
				error,
			)

	async def get_freshness(self, job_name: str, scope: str) -> Optional[str]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await conn.fetchval(
				"SELECT input_hash FROM job_freshness WHERE job_name = $1 AND scope = $2",
				job_name,
				scope,
			)

	async def upsert_freshness(self, job_name: str, scope: str, input_hash: str, computed_at: datetime) -> None:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO job_freshness (job_name, scope, input_hash, computed_at)
				VALUES ($1, $2, $3, $4)
				ON CONFLICT (job_name, scope)
				DO UPDATE SET input_hash = EXCLUDED.input_hash, computed_at = EXCLUDED.computed_at
				""",
				job_name,
				scope,
				input_hash,
				computed_at,
			)


__all__ = ["JobRepository"]
