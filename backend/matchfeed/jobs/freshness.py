"""Input-hash freshness checks so unchanged scopes can be skipped."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

import asyncpg

from matchfeed.jobs.repo import JobRepository
from matchfeed.settings import settings

_LOG = logging.getLogger(__name__)

HashEntry = tuple[str, Any]


def _normalize(value: Any) -> Any:
	if isinstance(value, datetime):
		if value.tzinfo is None:
			value = value.replace(tzinfo=timezone.utc)
		return value.astimezone(timezone.utc).isoformat()
	if isinstance(value, date):
		return value.isoformat()
	if isinstance(value, Enum):
		return value.value
	if is_dataclass(value) and not isinstance(value, type):
		return _normalize(asdict(value))
	if isinstance(value, dict):
		return {str(key): _normalize(item) for key, item in value.items()}
	if isinstance(value, (list, tuple)):
		return [_normalize(item) for item in value]
	return value


def hash_key_values(entries: Iterable[HashEntry]) -> str:
	"""SHA-256 over an ordered list of (key, value) pairs."""
	payload = json.dumps([[key, _normalize(value)] for key, value in entries], separators=(",", ":"), sort_keys=True)
	return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def is_full_run(force: Optional[bool] = None) -> bool:
	return settings.job_force_full if force is None else force


class FreshnessStore:
	"""Reads and records the last input hash per (job, scope)."""

	def __init__(self, repository: JobRepository | None = None) -> None:
		self.repo = repository or JobRepository()

	async def is_fresh(self, job_name: str, scope: str, input_hash: str, *, force: Optional[bool] = None) -> bool:
		if is_full_run(force):
			return False
		try:
			stored = await self.repo.get_freshness(job_name, scope)
		except asyncpg.exceptions.UndefinedTableError:
			_LOG.warning("freshness.table_missing", extra={"job": job_name})
			return False
		return stored == input_hash

	async def mark(self, job_name: str, scope: str, input_hash: str, computed_at: Optional[datetime] = None) -> None:
		try:
			await self.repo.upsert_freshness(job_name, scope, input_hash, computed_at or datetime.now(timezone.utc))
		except asyncpg.exceptions.UndefinedTableError:
			_LOG.warning("freshness.table_missing", extra={"job": job_name})


def user_scope(user_id: int) -> str:
	return f"user:{user_id}"


__all__ = ["hash_key_values", "is_full_run", "FreshnessStore", "user_scope"]
