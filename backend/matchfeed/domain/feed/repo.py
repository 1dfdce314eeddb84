"""Postgres access for feed candidates, hydration, presorted segments and seen markers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

import asyncpg

from matchfeed.domain.feed.models import (
	CursorCutoff,
	PostCandidate,
	PresortedItem,
	PresortedSegment,
	QuestionCandidate,
	QuestionOption,
	SeenItemType,
)
from matchfeed.infra.postgres import get_pool

_POST_COLUMNS = """
	p.id, p.user_id, p.text, p.created_at, p.updated_at, pr.display_name
"""

_PROFILE_COLUMNS = """
	pr.user_id, pr.display_name, pr.bio, pr.location_text, pr.avatar_url
"""

# $1 is the viewer id; alias ``u`` is the other user
_NOT_BLOCKED = """
	NOT EXISTS (
		SELECT 1 FROM user_blocks b
		WHERE (b.blocker_id = $1 AND b.blocked_id = u.id)
			OR (b.blocker_id = u.id AND b.blocked_id = $1)
	)
"""


def _segment_values(user_id: int, segment_index: int, items: Sequence[PresortedItem]) -> tuple:
	return (user_id, segment_index, [item.to_dict() for item in items])


class FeedRepository:
	"""Thin data-access layer around asyncpg."""

	# --- posts -----------------------------------------------------------

	async def get_post_cursor(self, post_id: int) -> Optional[CursorCutoff]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT id, created_at FROM posts WHERE id = $1", post_id)
		return CursorCutoff(id=int(row["id"]), created_at=row["created_at"]) if row else None

	async def list_public_posts(
		self,
		viewer_id: Optional[int],
		*,
		since: Optional[datetime],
		cursor: Optional[CursorCutoff],
		limit: int,
	) -> list[PostCandidate]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_POST_COLUMNS}
				FROM posts p
				JOIN users u ON u.id = p.user_id
				LEFT JOIN profiles pr ON pr.user_id = p.user_id
				WHERE p.deleted_at IS NULL
					AND p.visibility = 'PUBLIC'
					AND u.deleted_at IS NULL
					AND ($1::bigint IS NULL OR {_NOT_BLOCKED})
					AND ($2::timestamptz IS NULL OR p.created_at >= $2)
					AND ($3::timestamptz IS NULL OR (p.created_at, p.id) < ($3, $4))
				ORDER BY p.created_at DESC, p.id DESC
				LIMIT $5
				""",
				viewer_id,
				since,
				cursor.created_at if cursor else None,
				cursor.id if cursor else None,
				limit,
			)
		return [PostCandidate.from_record(row) for row in rows]

	async def list_posts_by_authors(
		self,
		viewer_id: int,
		author_ids: Sequence[int],
		*,
		visibilities: Sequence[str],
		since: Optional[datetime],
		cursor: Optional[CursorCutoff],
		limit: int,
	) -> list[PostCandidate]:
		if not author_ids or limit <= 0:
			return []
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_POST_COLUMNS}
				FROM posts p
				JOIN users u ON u.id = p.user_id
				LEFT JOIN profiles pr ON pr.user_id = p.user_id
				WHERE p.deleted_at IS NULL
					AND p.user_id = ANY($2::bigint[])
					AND p.visibility = ANY($3::text[])
					AND u.deleted_at IS NULL
					AND (u.id = $1 OR {_NOT_BLOCKED})
					AND ($4::timestamptz IS NULL OR p.created_at >= $4)
					AND ($5::timestamptz IS NULL OR (p.created_at, p.id) < ($5, $6))
				ORDER BY p.created_at DESC, p.id DESC
				LIMIT $7
				""",
				viewer_id,
				list(author_ids),
				list(visibilities),
				since,
				cursor.created_at if cursor else None,
				cursor.id if cursor else None,
				limit,
			)
		return [PostCandidate.from_record(row) for row in rows]

	async def get_posts_by_ids(self, post_ids: Sequence[int]) -> dict[int, PostCandidate]:
		if not post_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_POST_COLUMNS}
				FROM posts p
				LEFT JOIN profiles pr ON pr.user_id = p.user_id
				WHERE p.id = ANY($1::bigint[]) AND p.deleted_at IS NULL
				""",
				list(post_ids),
			)
		return {int(row["id"]): PostCandidate.from_record(row) for row in rows}

	async def list_post_media_types(self, post_ids: Sequence[int]) -> dict[int, set[str]]:
		if not post_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT post_id, type FROM post_media WHERE post_id = ANY($1::bigint[])",
				list(post_ids),
			)
		types: dict[int, set[str]] = {}
		for row in rows:
			types.setdefault(int(row["post_id"]), set()).add(str(row["type"]).upper())
		return types

	async def list_post_media(self, post_ids: Sequence[int]) -> dict[int, list[asyncpg.Record]]:
		if not post_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT id, post_id, type, url, thumb_url, ord
				FROM post_media
				WHERE post_id = ANY($1::bigint[])
				ORDER BY post_id ASC, ord ASC
				""",
				list(post_ids),
			)
		media: dict[int, list[asyncpg.Record]] = {}
		for row in rows:
			media.setdefault(int(row["post_id"]), []).append(row)
		return media

	async def list_profile_media(self, user_ids: Sequence[int], *, per_user: int) -> dict[int, list[asyncpg.Record]]:
		if not user_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT id, user_id, type, url, thumb_url, ord
				FROM (
					SELECT m.*, ROW_NUMBER() OVER (PARTITION BY m.user_id ORDER BY m.ord ASC, m.id DESC) AS rn
					FROM profile_media m
					WHERE m.user_id = ANY($1::bigint[])
				) ranked
				WHERE rn <= $2
				ORDER BY user_id ASC, rn ASC
				""",
				list(user_ids),
				per_user,
			)
		media: dict[int, list[asyncpg.Record]] = {}
		for row in rows:
			media.setdefault(int(row["user_id"]), []).append(row)
		return media

	async def list_post_stats(self, post_ids: Sequence[int]) -> dict[int, asyncpg.Record]:
		if not post_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT post_id, like_count, comment_count FROM post_stats WHERE post_id = ANY($1::bigint[])",
				list(post_ids),
			)
		return {int(row["post_id"]): row for row in rows}

	async def list_rating_stats(self, user_ids: Sequence[int]) -> dict[int, asyncpg.Record]:
		if not user_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT pr.user_id, a.attractive_avg, a.smart_avg, a.funny_avg, a.interesting_avg, a.rating_count
				FROM profiles pr
				JOIN profile_rating_aggregates a ON a.profile_id = pr.id
				WHERE pr.user_id = ANY($1::bigint[]) AND pr.deleted_at IS NULL
				""",
				list(user_ids),
			)
		return {int(row["user_id"]): row for row in rows}

	# --- profiles & suggestions -----------------------------------------

	async def list_active_match_user_ids(self, user_id: int, *, limit: int) -> list[int]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT CASE WHEN user_a_id = $1 THEN user_b_id ELSE user_a_id END AS other_id
				FROM matches
				WHERE state = 'ACTIVE' AND (user_a_id = $1 OR user_b_id = $1)
				ORDER BY updated_at DESC
				LIMIT $2
				""",
				user_id,
				limit,
			)
		ordered: list[int] = []
		for row in rows:
			other = int(row["other_id"])
			if other not in ordered:
				ordered.append(other)
		return ordered

	async def list_visible_profiles(self, viewer_id: int, user_ids: Sequence[int]) -> list[asyncpg.Record]:
		if not user_ids:
			return []
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await conn.fetch(
				f"""
				SELECT {_PROFILE_COLUMNS}
				FROM profiles pr
				JOIN users u ON u.id = pr.user_id
				WHERE pr.user_id = ANY($2::bigint[])
					AND pr.user_id <> $1
					AND pr.deleted_at IS NULL
					AND pr.is_visible
					AND u.deleted_at IS NULL
					AND {_NOT_BLOCKED}
				""",
				viewer_id,
				list(user_ids),
			)

	async def list_fresh_match_scores(
		self,
		user_id: int,
		*,
		since: datetime,
		exclude_user_ids: Sequence[int],
		limit: int,
	) -> list[tuple[int, float]]:
		if limit <= 0:
			return []
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT candidate_user_id, score
				FROM match_scores
				WHERE user_id = $1
					AND scored_at >= $2
					AND NOT (candidate_user_id = ANY($3::bigint[]))
				ORDER BY score DESC
				LIMIT $4
				""",
				user_id,
				since,
				list(exclude_user_ids),
				limit,
			)
		return [(int(row["candidate_user_id"]), float(row["score"])) for row in rows]

	async def list_random_profiles(
		self,
		viewer_id: int,
		*,
		exclude_user_ids: Sequence[int],
		limit: int,
	) -> list[asyncpg.Record]:
		if limit <= 0:
			return []
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await conn.fetch(
				f"""
				SELECT {_PROFILE_COLUMNS}
				FROM profiles pr
				JOIN users u ON u.id = pr.user_id
				WHERE pr.user_id <> $1
					AND NOT (pr.user_id = ANY($2::bigint[]))
					AND pr.deleted_at IS NULL
					AND pr.is_visible
					AND u.deleted_at IS NULL
					AND {_NOT_BLOCKED}
				ORDER BY pr.id ASC
				LIMIT $3
				""",
				viewer_id,
				list(exclude_user_ids),
				limit,
			)

	async def get_profiles_by_user_ids(self, user_ids: Sequence[int]) -> dict[int, asyncpg.Record]:
		if not user_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_PROFILE_COLUMNS}
				FROM profiles pr
				WHERE pr.user_id = ANY($1::bigint[]) AND pr.deleted_at IS NULL
				""",
				list(user_ids),
			)
		return {int(row["user_id"]): row for row in rows}

	# --- questions -------------------------------------------------------

	async def _attach_options(self, conn: asyncpg.Connection, rows: Iterable[asyncpg.Record]) -> list[QuestionCandidate]:
		rows = list(rows)
		if not rows:
			return []
		option_rows = await conn.fetch(
			"""
			SELECT id, question_id, label, value, ord
			FROM quiz_options
			WHERE question_id = ANY($1::bigint[])
			ORDER BY question_id ASC, ord ASC
			""",
			[int(row["id"]) for row in rows],
		)
		options: dict[int, list[QuestionOption]] = {}
		for row in option_rows:
			options.setdefault(int(row["question_id"]), []).append(
				QuestionOption(id=int(row["id"]), label=row["label"], value=row["value"], order=int(row["ord"]))
			)
		return [
			QuestionCandidate(
				id=int(row["id"]),
				quiz_id=int(row["quiz_id"]),
				prompt=row["prompt"],
				quiz_title=row["quiz_title"],
				options=tuple(options.get(int(row["id"]), ())),
				order=int(row["ord"]),
			)
			for row in rows
		]

	async def list_open_questions(self, user_id: int, *, limit: int) -> list[QuestionCandidate]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT q.id, q.quiz_id, q.prompt, q.ord, z.title AS quiz_title
				FROM quiz_questions q
				JOIN quizzes z ON z.id = q.quiz_id
				WHERE z.is_active
					AND NOT EXISTS (
						SELECT 1 FROM quiz_results r WHERE r.user_id = $1 AND r.quiz_id = q.quiz_id
					)
				ORDER BY z.ord ASC, z.id ASC, q.ord ASC, q.id ASC
				LIMIT $2
				""",
				user_id,
				limit,
			)
			return await self._attach_options(conn, rows)

	async def get_questions_by_ids(self, question_ids: Sequence[int]) -> dict[int, QuestionCandidate]:
		if not question_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT q.id, q.quiz_id, q.prompt, q.ord, z.title AS quiz_title
				FROM quiz_questions q
				JOIN quizzes z ON z.id = q.quiz_id
				WHERE q.id = ANY($1::bigint[])
				""",
				list(question_ids),
			)
			questions = await self._attach_options(conn, rows)
		return {question.id: question for question in questions}

	async def list_actor_profiles(self, user_ids: Sequence[int]) -> dict[int, tuple[str, Optional[str]]]:
		if not user_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT user_id, display_name, avatar_url FROM profiles WHERE user_id = ANY($1::bigint[])",
				list(user_ids),
			)
		return {int(row["user_id"]): (row["display_name"] or "User", row["avatar_url"]) for row in rows}

	# --- relationships ---------------------------------------------------

	async def list_following_ids(self, user_id: int) -> list[int]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT owner_user_id FROM profile_access
				WHERE viewer_user_id = $1 AND status = 'GRANTED' AND owner_user_id <> $1
				ORDER BY owner_user_id
				""",
				user_id,
			)
		return [int(row["owner_user_id"]) for row in rows]

	async def list_follower_ids(self, user_id: int) -> list[int]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT viewer_user_id FROM profile_access
				WHERE owner_user_id = $1 AND status = 'GRANTED' AND viewer_user_id <> $1
				ORDER BY viewer_user_id
				""",
				user_id,
			)
		return [int(row["viewer_user_id"]) for row in rows]

	# --- presorted segments ---------------------------------------------

	async def get_segment(self, user_id: int, segment_index: int) -> Optional[PresortedSegment]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT id, user_id, segment_index, items, phase1_json, computed_at, algorithm_version, expires_at
				FROM presorted_feed_segments
				WHERE user_id = $1 AND segment_index = $2
				""",
				user_id,
				segment_index,
			)
		return PresortedSegment.from_record(row) if row else None

	async def upsert_segments(
		self,
		user_id: int,
		segments: Sequence[tuple[int, Sequence[PresortedItem], Optional[str]]],
		*,
		algorithm_version: str,
		expires_at: datetime,
		computed_at: datetime,
	) -> int:
		if not segments:
			return 0
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await conn.executemany(
					"""
					INSERT INTO presorted_feed_segments
						(user_id, segment_index, items, phase1_json, algorithm_version, expires_at, computed_at)
					VALUES ($1, $2, $3, $4, $5, $6, $7)
					ON CONFLICT (user_id, segment_index) DO UPDATE
					SET items = EXCLUDED.items,
						phase1_json = EXCLUDED.phase1_json,
						algorithm_version = EXCLUDED.algorithm_version,
						expires_at = EXCLUDED.expires_at,
						computed_at = EXCLUDED.computed_at
					""",
					[
						(*_segment_values(user_id, index, items), phase1_json, algorithm_version, expires_at, computed_at)
						for index, items, phase1_json in segments
					],
				)
		return len(segments)

	async def delete_segment(self, user_id: int, segment_index: int) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute(
				"DELETE FROM presorted_feed_segments WHERE user_id = $1 AND segment_index = $2",
				user_id,
				segment_index,
			)
		return _affected(result)

	async def delete_segments_for_users(self, user_ids: Sequence[int]) -> int:
		if not user_ids:
			return 0
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute(
				"DELETE FROM presorted_feed_segments WHERE user_id = ANY($1::bigint[])",
				list(user_ids),
			)
		return _affected(result)

	async def delete_expired_segments(self, now: datetime) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute("DELETE FROM presorted_feed_segments WHERE expires_at < $1", now)
		return _affected(result)

	async def list_user_ids(self, *, after_user_id: Optional[int], limit: int) -> list[int]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT id FROM users
				WHERE deleted_at IS NULL AND ($1::bigint IS NULL OR id > $1)
				ORDER BY id ASC
				LIMIT $2
				""",
				after_user_id,
				limit,
			)
		return [int(row["id"]) for row in rows]

	async def get_presort_input_marker(self, user_id: int) -> Mapping[str, Any]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT
					(SELECT scored_at FROM match_scores WHERE user_id = $1 ORDER BY scored_at DESC LIMIT 1) AS match_score_at,
					(SELECT algorithm_version FROM match_scores WHERE user_id = $1 ORDER BY scored_at DESC LIMIT 1) AS match_score_version,
					(SELECT max(created_at) FROM post_likes WHERE user_id = $1) AS latest_like_at
				""",
				user_id,
			)
		return dict(row) if row else {}

	async def get_latest_post_update(self, author_ids: Sequence[int]) -> Optional[datetime]:
		if not author_ids:
			return None
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await conn.fetchval(
				"SELECT max(updated_at) FROM posts WHERE user_id = ANY($1::bigint[]) AND deleted_at IS NULL",
				list(author_ids),
			)

	# --- seen markers ----------------------------------------------------

	async def fetch_seen(
		self,
		viewer_id: int,
		item_type: SeenItemType,
		item_ids: Sequence[int],
	) -> dict[int, datetime]:
		if not item_ids:
			return {}
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT item_id, seen_at FROM feed_seen
				WHERE viewer_user_id = $1 AND item_type = $2 AND item_id = ANY($3::bigint[])
				""",
				viewer_id,
				item_type.value,
				list(item_ids),
			)
		return {int(row["item_id"]): row["seen_at"] for row in rows}

	async def upsert_seen(
		self,
		viewer_id: int,
		ids_by_type: Mapping[SeenItemType, Sequence[int]],
		seen_at: datetime,
	) -> int:
		values = [
			(viewer_id, item_type.value, item_id, seen_at)
			for item_type, item_ids in ids_by_type.items()
			for item_id in item_ids
		]
		if not values:
			return 0
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await conn.executemany(
					"""
					INSERT INTO feed_seen (viewer_user_id, item_type, item_id, seen_at)
					VALUES ($1, $2, $3, $4)
					ON CONFLICT (viewer_user_id, item_type, item_id)
					DO UPDATE SET seen_at = EXCLUDED.seen_at
					""",
					values,
				)
		return len(values)


def _affected(status: str) -> int:
	try:
		return int(status.split()[-1])
	except (AttributeError, IndexError, ValueError):
		return 0


__all__ = ["FeedRepository"]
