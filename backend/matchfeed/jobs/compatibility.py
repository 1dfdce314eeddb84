"""Persist viewer-to-target compatibility summaries for related users."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from matchfeed.domain.matching.compatibility import CompatibilityService, CompatibilityWeights
from matchfeed.domain.matching.exceptions import ViewerNotFound
from matchfeed.domain.matching.repo import MatchingRepository
from matchfeed.jobs.freshness import FreshnessStore, hash_key_values, user_scope
from matchfeed.jobs.pacing import Delay, iterate_batches
from matchfeed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

JOB_NAME = "compatibility"


@dataclass(slots=True)
class CompatibilityJobConfig:
	batch_size: int = 100
	pause_ms: int = 50
	version: str = "v1"
	max_suggestion_targets: int = 100


class CompatibilityJob:
	"""Recomputes ``user_compatibility`` rows per viewer when inputs moved."""

	name = JOB_NAME

	def __init__(
		self,
		repository: MatchingRepository | None = None,
		*,
		service: CompatibilityService | None = None,
		freshness: FreshnessStore | None = None,
		config: CompatibilityJobConfig | None = None,
		delay: Delay = asyncio.sleep,
	) -> None:
		self.repo = repository or MatchingRepository()
		self.service = service or CompatibilityService(self.repo)
		self.freshness = freshness or FreshnessStore()
		self.config = config or CompatibilityJobConfig()
		self.delay = delay

	@property
	def weights(self) -> CompatibilityWeights:
		return self.service.weights

	async def input_hash(self, viewer_id: int, version: str) -> str:
		marker = await self.repo.get_compatibility_input_marker(viewer_id)
		entries: list[tuple[str, Any]] = [
			("version", version),
			("weights", self.weights.as_dict()),
			("maxSuggestionTargets", self.config.max_suggestion_targets),
		]
		entries.extend(sorted(marker.items()))
		return hash_key_values(entries)

	async def recompute_for_viewer(
		self,
		viewer_id: int,
		*,
		version: Optional[str] = None,
		force: Optional[bool] = None,
	) -> Optional[int]:
		"""Rows written for the viewer, or ``None`` when skipped as fresh."""
		version = version or self.config.version
		scope = user_scope(viewer_id)
		input_hash = await self.input_hash(viewer_id, version)
		if await self.freshness.is_fresh(JOB_NAME, scope, input_hash, force=force):
			_LOG.debug("compatibility.skip_fresh", extra={"user_id": viewer_id})
			return None

		targets = await self.repo.list_compatibility_targets(
			viewer_id,
			max_suggestions=self.config.max_suggestion_targets,
		)
		try:
			rows = await self.service.recompute_for_viewer(viewer_id, targets, version=version)
		except ViewerNotFound:
			_LOG.warning("compatibility.viewer_missing", extra={"user_id": viewer_id})
			return 0
		written = await self.repo.replace_compatibility(viewer_id, rows)
		for row in rows:
			obs_metrics.inc_compatibility_row(row.status.value)
		await self.freshness.mark(JOB_NAME, scope, input_hash)
		return written

	async def run(
		self,
		*,
		user_id: Optional[int] = None,
		batch_size: Optional[int] = None,
		pause_ms: Optional[int] = None,
		algorithm_version: Optional[str] = None,
		force: Optional[bool] = None,
	) -> dict[str, Any]:
		version = algorithm_version or self.config.version
		if user_id is not None:
			written = await self.recompute_for_viewer(user_id, version=version, force=force)
			return {
				"processedUsers": 1,
				"skippedUsers": 1 if written is None else 0,
				"written": written or 0,
			}

		processed = 0
		skipped = 0
		written_total = 0

		async def fetch(cursor: Optional[int], limit: int):
			return await self.repo.list_user_ids(after_user_id=cursor, limit=limit)

		async for page in iterate_batches(
			fetch,
			cursor_of=lambda value: value,
			batch_size=batch_size or self.config.batch_size,
			pause_ms=self.config.pause_ms if pause_ms is None else pause_ms,
			delay=self.delay,
		):
			for viewer_id in page:
				try:
					written = await self.recompute_for_viewer(viewer_id, version=version, force=force)
				except Exception:
					_LOG.exception("compatibility.user_failed", extra={"user_id": viewer_id})
					continue
				processed += 1
				if written is None:
					skipped += 1
				else:
					written_total += written

		_LOG.info(
			"compatibility.completed",
			extra={"processed_users": processed, "skipped_users": skipped, "written": written_total},
		)
		return {"processedUsers": processed, "skippedUsers": skipped, "written": written_total}


__all__ = ["JOB_NAME", "CompatibilityJob", "CompatibilityJobConfig"]
