"""Async repository for matching inputs and score outputs."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

import asyncpg

from matchfeed.domain.matching.models import (
	CompatibilityRow,
	Interest,
	MatchScoreRow,
	QuizSnapshot,
	RatingAggregate,
	TraitValue,
)
from matchfeed.infra.postgres import get_pool

_MATCH_SCORE_COLUMNS = (
	"user_id",
	"candidate_user_id",
	"score",
	"score_quiz",
	"score_interests",
	"score_ratings_quality",
	"score_ratings_fit",
	"score_new",
	"score_nearby",
	"rating_attractive",
	"rating_smart",
	"rating_funny",
	"rating_interesting",
	"distance_km",
	"reasons",
	"tier",
	"algorithm_version",
	"scored_at",
)

_INSERT_MATCH_SCORE = (
	f"INSERT INTO match_scores ({', '.join(_MATCH_SCORE_COLUMNS)}) "
	f"VALUES ({', '.join(f'${idx}' for idx in range(1, len(_MATCH_SCORE_COLUMNS) + 1))})"
)


def _rating_from_record(record: Mapping[str, Any]) -> RatingAggregate:
	return RatingAggregate(
		attractive=record["attractive_avg"],
		smart=record["smart_avg"],
		funny=record["funny_avg"],
		interesting=record["interesting_avg"],
		count=int(record["rating_count"] or 0),
	)


def _match_score_values(row: MatchScoreRow) -> tuple:
	return (
		row.user_id,
		row.candidate_user_id,
		row.score,
		row.score_quiz,
		row.score_interests,
		row.score_ratings_quality,
		row.score_ratings_fit,
		row.score_new,
		row.score_nearby,
		row.rating_attractive,
		row.rating_smart,
		row.rating_funny,
		row.rating_interesting,
		row.distance_km,
		row.reasons,
		row.tier.value,
		row.algorithm_version,
		row.scored_at,
	)


class MatchingRepository:
	"""Thin data-access layer around asyncpg."""

	# --- profiles & preferences ------------------------------------------

	async def get_profile(self, user_id: int) -> Optional[asyncpg.Record]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await conn.fetchrow(
				"""
				SELECT p.id, p.user_id, p.display_name, p.avatar_url, p.birthdate, p.gender,
					p.lat, p.lng, p.location_text, p.created_at, p.updated_at
				FROM profiles p
				JOIN users u ON u.id = p.user_id
				WHERE p.user_id = $1 AND p.deleted_at IS NULL AND u.deleted_at IS NULL
				""",
				user_id,
			)

	async def get_preferences(self, user_id: int) -> Optional[asyncpg.Record]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await conn.fetchrow(
				"""
				SELECT preferred_genders, preferred_age_min, preferred_age_max, preferred_distance_km
				FROM user_preferences
				WHERE user_id = $1
				""",
				user_id,
			)

	async def list_candidate_profiles(
		self,
		viewer_id: int,
		*,
		after_profile_id: Optional[int],
		limit: int,
	) -> list[asyncpg.Record]:
		"""Visible, non-deleted profiles other than the viewer's, keyset-paginated by profile id."""
		pool = await get_pool()
		async with pool.acquire() as conn:
			return list(
				await conn.fetch(
					"""
					SELECT p.id, p.user_id, p.birthdate, p.gender, p.lat, p.lng, p.location_text,
						p.created_at, p.updated_at
					FROM profiles p
					JOIN users u ON u.id = p.user_id
					WHERE p.is_visible = TRUE
						AND p.deleted_at IS NULL
						AND u.deleted_at IS NULL
						AND p.user_id <> $1
						AND ($2::bigint IS NULL OR p.id > $2)
						AND NOT EXISTS (
							SELECT 1 FROM user_blocks b
							WHERE (b.blocker_id = $1 AND b.blocked_id = p.user_id)
								OR (b.blocker_id = p.user_id AND b.blocked_id = $1)
						)
					ORDER BY p.id ASC
					LIMIT $3
					""",
					viewer_id,
					after_profile_id,
					limit,
				)
			)

	async def list_user_ids(self, *, after_user_id: Optional[int], limit: int) -> list[int]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT u.id
				FROM users u
				JOIN profiles p ON p.user_id = u.id
				WHERE u.deleted_at IS NULL
					AND p.deleted_at IS NULL
					AND ($1::bigint IS NULL OR u.id > $1)
				ORDER BY u.id ASC
				LIMIT $2
				""",
				after_user_id,
				limit,
			)
		return [int(row["id"]) for row in rows]

	# --- signals ---------------------------------------------------------

	async def list_traits(self, user_ids: Sequence[int]) -> dict[int, list[TraitValue]]:
		if not user_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT user_id, trait_key, value, n
				FROM user_traits
				WHERE user_id = ANY($1::bigint[])
				""",
				list(user_ids),
			)
		result: dict[int, list[TraitValue]] = defaultdict(list)
		for row in rows:
			result[int(row["user_id"])].append(
				TraitValue(key=row["trait_key"], value=float(row["value"]), n=int(row["n"]))
			)
		return dict(result)

	async def list_interests(self, user_ids: Sequence[int]) -> dict[int, list[Interest]]:
		if not user_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT ui.user_id, ui.subject_id, ui.interest_id,
					s.key AS subject_key, i.key AS interest_key
				FROM user_interests ui
				JOIN interest_subjects s ON s.id = ui.subject_id
				JOIN interests i ON i.id = ui.interest_id
				WHERE ui.user_id = ANY($1::bigint[])
				""",
				list(user_ids),
			)
		result: dict[int, list[Interest]] = defaultdict(list)
		for row in rows:
			result[int(row["user_id"])].append(Interest.from_record(row))
		return dict(result)

	async def get_latest_quiz(self, user_id: int) -> Optional[QuizSnapshot]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT r.quiz_id, r.answers, r.score_vec
				FROM quiz_results r
				JOIN quizzes q ON q.id = r.quiz_id
				WHERE r.user_id = $1 AND q.is_active = TRUE
				ORDER BY r.created_at DESC
				LIMIT 1
				""",
				user_id,
			)
		return QuizSnapshot.from_record(row) if row else None

	async def list_quiz_results(self, user_ids: Sequence[int], quiz_id: int) -> dict[int, QuizSnapshot]:
		"""Latest result per user for one quiz."""
		if not user_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT DISTINCT ON (user_id) user_id, quiz_id, answers, score_vec
				FROM quiz_results
				WHERE user_id = ANY($1::bigint[]) AND quiz_id = $2
				ORDER BY user_id, created_at DESC
				""",
				list(user_ids),
				quiz_id,
			)
		return {int(row["user_id"]): QuizSnapshot.from_record(row) for row in rows}

	async def list_users_with_quiz(self, user_ids: Sequence[int]) -> set[int]:
		if not user_ids:
			return set()
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT DISTINCT user_id FROM quiz_results WHERE user_id = ANY($1::bigint[])
				""",
				list(user_ids),
			)
		return {int(row["user_id"]) for row in rows}

	async def list_rating_aggregates(self, profile_ids: Sequence[int]) -> dict[int, RatingAggregate]:
		if not profile_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT profile_id, attractive_avg, smart_avg, funny_avg, interesting_avg, rating_count
				FROM profile_rating_aggregates
				WHERE profile_id = ANY($1::bigint[])
				""",
				list(profile_ids),
			)
		return {int(row["profile_id"]): _rating_from_record(row) for row in rows}

	async def list_rating_aggregates_by_user(self, user_ids: Sequence[int]) -> dict[int, RatingAggregate]:
		if not user_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT p.user_id, a.attractive_avg, a.smart_avg, a.funny_avg, a.interesting_avg, a.rating_count
				FROM profile_rating_aggregates a
				JOIN profiles p ON p.id = a.profile_id
				WHERE p.user_id = ANY($1::bigint[])
				""",
				list(user_ids),
			)
		return {int(row["user_id"]): _rating_from_record(row) for row in rows}

	async def list_blocked_user_ids(self, user_id: int) -> set[int]:
		"""Users blocked by, or blocking, ``user_id``."""
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT blocked_id AS other_id FROM user_blocks WHERE blocker_id = $1
				UNION
				SELECT blocker_id AS other_id FROM user_blocks WHERE blocked_id = $1
				""",
				user_id,
			)
		return {int(row["other_id"]) for row in rows}

	# --- match scores ----------------------------------------------------

	async def replace_match_scores(self, user_id: int, rows: Sequence[MatchScoreRow]) -> int:
		"""Swap every stored row for ``user_id`` with ``rows`` in one transaction."""
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await conn.execute("DELETE FROM match_scores WHERE user_id = $1", user_id)
				if rows:
					await conn.executemany(
						_INSERT_MATCH_SCORE,
						[_match_score_values(row) for row in rows],
					)
		return len(rows)

	async def list_match_scores(self, user_id: int, *, limit: int = 200) -> list[MatchScoreRow]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT * FROM match_scores
				WHERE user_id = $1
				ORDER BY score DESC
				LIMIT $2
				""",
				user_id,
				limit,
			)
		return [MatchScoreRow.from_record(row) for row in rows]

	async def get_match_score(self, user_id: int, candidate_user_id: int) -> Optional[MatchScoreRow]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT * FROM match_scores
				WHERE user_id = $1 AND candidate_user_id = $2
				ORDER BY scored_at DESC
				LIMIT 1
				""",
				user_id,
				candidate_user_id,
			)
		return MatchScoreRow.from_record(row) if row else None

	async def get_latest_match_score_marker(self, user_id: int) -> Optional[asyncpg.Record]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await conn.fetchrow(
				"""
				SELECT scored_at, algorithm_version
				FROM match_scores
				WHERE user_id = $1
				ORDER BY scored_at DESC
				LIMIT 1
				""",
				user_id,
			)

	# --- compatibility ---------------------------------------------------

	async def list_compatibility(self, viewer_id: int, target_ids: Sequence[int]) -> dict[int, CompatibilityRow]:
		if not target_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT viewer_user_id, target_user_id, score, status, version, reasons, computed_at
				FROM user_compatibility
				WHERE viewer_user_id = $1 AND target_user_id = ANY($2::bigint[])
				""",
				viewer_id,
				list(target_ids),
			)
		return {int(row["target_user_id"]): CompatibilityRow.from_record(row) for row in rows}

	async def replace_compatibility(self, viewer_id: int, rows: Sequence[CompatibilityRow]) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await conn.execute("DELETE FROM user_compatibility WHERE viewer_user_id = $1", viewer_id)
				if rows:
					await conn.executemany(
						"""
						INSERT INTO user_compatibility (viewer_user_id, target_user_id, score, status, version, reasons, computed_at)
						VALUES ($1, $2, $3, $4, $5, $6, $7)
						""",
						[
							(row.viewer_user_id, row.target_user_id, row.score, row.status.value, row.version, row.reasons, row.computed_at)
							for row in rows
						],
					)
		return len(rows)

	async def list_compatibility_targets(self, viewer_id: int, *, max_suggestions: int) -> list[int]:
		"""Users the viewer interacts with plus their top suggested matches, block-filtered."""
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				WITH targets AS (
					SELECT CASE WHEN m.user_a_id = $1 THEN m.user_b_id ELSE m.user_a_id END AS target_id
					FROM matches m
					WHERE m.state = 'ACTIVE' AND (m.user_a_id = $1 OR m.user_b_id = $1)
					UNION
					SELECT CASE WHEN a.owner_user_id = $1 THEN a.viewer_user_id ELSE a.owner_user_id END
					FROM profile_access a
					WHERE a.status IN ('PENDING', 'GRANTED')
						AND (a.owner_user_id = $1 OR a.viewer_user_id = $1)
					UNION
					SELECT CASE WHEN c.user_a_id = $1 THEN c.user_b_id ELSE c.user_a_id END
					FROM conversations c
					WHERE c.user_a_id = $1 OR c.user_b_id = $1
					UNION
					SELECT top.candidate_user_id FROM (
						SELECT candidate_user_id FROM match_scores
						WHERE user_id = $1
						ORDER BY score DESC
						LIMIT $2
					) top
				)
				SELECT t.target_id
				FROM targets t
				JOIN users u ON u.id = t.target_id
				WHERE u.deleted_at IS NULL
					AND t.target_id <> $1
					AND NOT EXISTS (
						SELECT 1 FROM user_blocks b
						WHERE (b.blocker_id = $1 AND b.blocked_id = t.target_id)
							OR (b.blocker_id = t.target_id AND b.blocked_id = $1)
					)
				ORDER BY t.target_id
				""",
				viewer_id,
				max_suggestions,
			)
		return [int(row["target_id"]) for row in rows]

	async def get_compatibility_input_marker(self, viewer_id: int) -> dict[str, Optional[datetime]]:
		"""Latest change timestamps of the inputs a compatibility pass reads."""
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT
					(SELECT max(scored_at) FROM match_scores WHERE user_id = $1) AS match_scores_at,
					(SELECT max(updated_at) FROM matches WHERE user_a_id = $1 OR user_b_id = $1) AS matches_at,
					(SELECT max(updated_at) FROM profile_access WHERE owner_user_id = $1 OR viewer_user_id = $1) AS access_at,
					(SELECT max(created_at) FROM conversations WHERE user_a_id = $1 OR user_b_id = $1) AS conversations_at,
					(SELECT max(created_at) FROM quiz_results WHERE user_id = $1) AS quiz_at,
					(SELECT max(created_at) FROM user_interests WHERE user_id = $1) AS interests_at,
					(SELECT max(created_at) FROM user_blocks WHERE blocker_id = $1 OR blocked_id = $1) AS blocks_at
				""",
				viewer_id,
			)
		return dict(row) if row else {}


__all__ = ["MatchingRepository"]
