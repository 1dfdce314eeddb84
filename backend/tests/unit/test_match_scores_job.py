from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from matchfeed.domain.matching.context import ContextAssembler, build_candidate_contexts
from matchfeed.domain.matching.models import Interest, MatchScoreRow, Tier
from matchfeed.domain.matching.operators import NEWNESS_OPERATOR, SCORING_OPERATORS
from matchfeed.jobs.match_scores import MatchScoreConfig, MatchScoreJob
from matchfeed.jobs.pacing import iterate_batches

MUSIC = Interest(subject_id=1, interest_id=1, subject_key="hobby", interest_key="music")
FILM = Interest(subject_id=1, interest_id=2, subject_key="hobby", interest_key="film")


def _profile(user_id: int, **extra) -> dict:
	record = {
		"id": user_id * 10,
		"user_id": user_id,
		"lat": None,
		"lng": None,
		"location_text": None,
		"birthdate": None,
		"gender": None,
		"created_at": datetime.now(timezone.utc) - timedelta(days=user_id),
		"updated_at": None,
	}
	record.update(extra)
	return record


class _StubMatchingRepo:
	def __init__(self, profiles: list[dict], *, blocked: set[int] | None = None) -> None:
		self.profiles = {profile["user_id"]: profile for profile in profiles}
		self.blocked = blocked or set()
		self.interests = {1: [MUSIC, FILM], 2: [MUSIC, FILM], 4: [MUSIC]}
		self.replaced: dict[int, list[MatchScoreRow]] = {}
		self.broken_users: set[int] = set()
		self.preferences: Optional[dict] = None

	async def get_profile(self, user_id: int):
		if user_id in self.broken_users:
			raise RuntimeError("profile lookup failed")
		return self.profiles.get(user_id)

	async def get_preferences(self, user_id: int):
		return self.preferences

	async def list_traits(self, user_ids):
		return {}

	async def list_interests(self, user_ids):
		return {uid: self.interests[uid] for uid in user_ids if uid in self.interests}

	async def get_latest_quiz(self, user_id: int):
		return None

	async def list_quiz_results(self, user_ids, quiz_id):
		return {}

	async def list_rating_aggregates(self, profile_ids):
		return {}

	async def list_blocked_user_ids(self, user_id: int) -> set[int]:
		return set(self.blocked)

	async def list_candidate_profiles(self, user_id: int, *, after_profile_id: Optional[int], limit: int):
		rows = sorted(
			(profile for uid, profile in self.profiles.items() if uid != user_id),
			key=lambda row: row["id"],
		)
		if after_profile_id is not None:
			rows = [row for row in rows if row["id"] > after_profile_id]
		return rows[:limit]

	async def list_user_ids(self, *, after_user_id: Optional[int], limit: int):
		ids = sorted(self.profiles) + sorted(self.broken_users)
		if after_user_id is not None:
			ids = [uid for uid in ids if uid > after_user_id]
		return ids[:limit]

	async def replace_match_scores(self, user_id: int, rows):
		self.replaced[user_id] = list(rows)
		return len(rows)


@pytest.mark.asyncio
async def test_recompute_keeps_top_k_and_skips_blocked():
	repo = _StubMatchingRepo([_profile(uid) for uid in range(1, 7)], blocked={3})
	delays: list[float] = []

	async def fake_delay(seconds: float) -> None:
		delays.append(seconds)

	job = MatchScoreJob(
		repo,
		config=MatchScoreConfig(top_k=2, candidate_batch_size=2, pause_ms=50),
		delay=fake_delay,
	)

	outcome = await job.recompute_for_user(1)

	rows = repo.replaced[1]
	assert outcome.written == 2
	assert outcome.gated == 1
	assert 3 not in {row.candidate_user_id for row in rows}
	assert rows[0].candidate_user_id == 2
	assert rows[0].score >= rows[1].score
	assert all(row.tier is Tier.A for row in rows)
	assert delays == [0.05, 0.05]


@pytest.mark.asyncio
async def test_candidate_contexts_validate_coordinates():
	repo = _StubMatchingRepo(
		[
			_profile(1, lat=45.5, lng=-73.56),
			_profile(2, lat=45.5, lng=-73.56),
			_profile(4, lat=200.0, lng=-73.56),
		]
	)
	viewer = await ContextAssembler(repo).load_viewer(1)

	candidates = await build_candidate_contexts(repo, viewer, [repo.profiles[2], repo.profiles[4]])

	by_user = {candidate.user_id: candidate for candidate in candidates}
	assert by_user[2].distance_km == pytest.approx(0.0)
	assert by_user[4].lat is None
	assert by_user[4].distance_km is None
	assert [item.key for item in by_user[4].interests] == [MUSIC.key]


@pytest.mark.asyncio
async def test_failing_candidate_is_skipped_and_counted():
	repo = _StubMatchingRepo([_profile(uid) for uid in range(1, 5)])

	def flaky_newness(ctx):
		if ctx.candidate.user_id == 3:
			raise ValueError("corrupt profile")
		return NEWNESS_OPERATOR.score(ctx)

	operators = tuple(
		replace(op, score=flaky_newness) if op.key == NEWNESS_OPERATOR.key else op for op in SCORING_OPERATORS
	)

	async def no_delay(_: float) -> None:
		return None

	job = MatchScoreJob(repo, config=MatchScoreConfig(pause_ms=0), delay=no_delay, operators=operators)
	outcome = await job.recompute_for_user(1)

	assert outcome.failed == 1
	assert outcome.scored == 2
	assert {row.candidate_user_id for row in repo.replaced[1]} == {2, 4}


@pytest.mark.asyncio
async def test_preference_misses_stay_in_top_k_as_tier_b():
	repo = _StubMatchingRepo([_profile(1), _profile(2, gender="F"), _profile(4, gender="M")])
	repo.preferences = {"preferred_genders": ["F"]}

	async def no_delay(_: float) -> None:
		return None

	job = MatchScoreJob(repo, config=MatchScoreConfig(top_k=5, pause_ms=0), delay=no_delay)
	outcome = await job.recompute_for_user(1)

	tiers = {row.candidate_user_id: row.tier for row in repo.replaced[1]}
	assert outcome.written == 2
	assert tiers == {2: Tier.A, 4: Tier.B}
	assert repo.replaced[1][1].reasons["compliance"]["gender"] is False


@pytest.mark.asyncio
async def test_missing_viewer_writes_nothing():
	repo = _StubMatchingRepo([_profile(2)])

	async def no_delay(_: float) -> None:
		return None

	job = MatchScoreJob(repo, delay=no_delay)
	outcome = await job.recompute_for_user(1)

	assert outcome.written == 0
	assert repo.replaced == {}


@pytest.mark.asyncio
async def test_batch_run_continues_after_user_failure():
	repo = _StubMatchingRepo([_profile(1), _profile(2)])
	repo.broken_users.add(5)

	async def no_delay(_: float) -> None:
		return None

	job = MatchScoreJob(repo, config=MatchScoreConfig(pause_ms=0), delay=no_delay)
	summary = await job.run()

	assert summary == {"processedUsers": 2, "written": 2, "failedUsers": 1}


@pytest.mark.asyncio
async def test_iterate_batches_pauses_between_full_pages():
	data = list(range(1, 8))
	delays: list[float] = []

	async def fetch(cursor, limit):
		start = 0 if cursor is None else data.index(cursor) + 1
		return data[start : start + limit]

	async def fake_delay(seconds: float) -> None:
		delays.append(seconds)

	pages = [
		list(page)
		async for page in iterate_batches(fetch, cursor_of=lambda v: v, batch_size=3, pause_ms=250, delay=fake_delay)
	]

	assert pages == [[1, 2, 3], [4, 5, 6], [7]]
	assert delays == [0.25, 0.25]


@pytest.mark.asyncio
async def test_iterate_batches_rejects_non_positive_batch():
	async def fetch(cursor, limit):
		return []

	with pytest.raises(ValueError):
		async for _ in iterate_batches(fetch, cursor_of=lambda v: v, batch_size=0):
			pass
