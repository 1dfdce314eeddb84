from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from matchfeed.domain.feed import queue as presort_queue
from matchfeed.domain.feed.config import PHASE1_MAX_BYTES
from matchfeed.domain.feed.models import (
	CandidateSet,
	FeedItem,
	PostCandidate,
	PresortedItem,
	PresortedSegment,
	Presentation,
	SYSTEM_ACTOR_ID,
	QuestionCandidate,
	SeenItemType,
	SegmentStatus,
	SuggestionCandidate,
)
from matchfeed.domain.feed.phase1 import (
	EMPTY_PHASE1_JSON,
	build_phase1_json,
	parse_phase1_json,
	phase1_from_feed_item,
	seen_items_from_phase1,
	to_presorted_item,
)
from matchfeed.domain.feed.presort import PresortService, current_algorithm_version, validate_segment
from matchfeed.jobs.feed_presort import (
	FeedPresortCleanupJob,
	FeedPresortConfig,
	FeedPresortJob,
	build_segments,
	candidate_count_for,
	dedupe_feed_items,
	segment_is_storable,
)
from matchfeed.jobs.freshness import FreshnessStore

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _item(item_id: int, *, type: str = "post", score: float = 0.5, actor_id: Optional[int] = None, **extra) -> PresortedItem:
	return PresortedItem(
		type=type,
		id=item_id,
		score=score,
		actor_id=actor_id if actor_id is not None else item_id + 100,
		source="post" if type == "post" else "suggested",
		created_at_ms=1_700_000_000_000,
		**extra,
	)


def _segment(items, *, version: Optional[str] = None, expires_in: timedelta = timedelta(minutes=10)) -> PresortedSegment:
	return PresortedSegment(
		user_id=1,
		segment_index=0,
		items=list(items),
		phase1_json=None,
		computed_at=NOW,
		algorithm_version=version or current_algorithm_version(),
		expires_at=NOW + expires_in,
	)


class _PresortRepo:
	def __init__(self) -> None:
		self.segments: dict[tuple[int, int], PresortedSegment] = {}
		self.seen: dict[tuple[SeenItemType, int], datetime] = {}
		self.deleted_users: list[list[int]] = []
		self.marker: dict[str, Any] = {"match_score_at": NOW, "match_score_version": "v1"}

	async def get_segment(self, user_id, segment_index):
		return self.segments.get((user_id, segment_index))

	async def upsert_segments(self, user_id, segments, *, algorithm_version, expires_at, computed_at):
		for index, items, phase1_json in segments:
			self.segments[(user_id, index)] = PresortedSegment(
				user_id=user_id,
				segment_index=index,
				items=list(items),
				phase1_json=phase1_json,
				computed_at=computed_at,
				algorithm_version=algorithm_version,
				expires_at=expires_at,
			)
		return len(segments)

	async def delete_segment(self, user_id, segment_index):
		return 1 if self.segments.pop((user_id, segment_index), None) else 0

	async def delete_segments_for_users(self, user_ids):
		self.deleted_users.append(list(user_ids))
		doomed = [key for key in self.segments if key[0] in user_ids]
		for key in doomed:
			del self.segments[key]
		return len(doomed)

	async def delete_expired_segments(self, now):
		doomed = [key for key, segment in self.segments.items() if segment.expires_at <= now]
		for key in doomed:
			del self.segments[key]
		return len(doomed)

	async def fetch_seen(self, viewer_id, item_type, item_ids):
		return {item_id: self.seen[(item_type, item_id)] for item_id in item_ids if (item_type, item_id) in self.seen}

	async def list_post_media_types(self, post_ids):
		return {}

	async def get_presort_input_marker(self, user_id):
		return self.marker

	async def get_latest_post_update(self, author_ids):
		return None

	async def list_actor_profiles(self, user_ids):
		return {uid: (f"actor {uid}", None) for uid in user_ids}

	async def list_user_ids(self, *, after_user_id, limit):
		users = [1, 2]
		if after_user_id is not None:
			users = [uid for uid in users if uid > after_user_id]
		return users[:limit]


class _FreshnessRepo:
	def __init__(self) -> None:
		self.hashes: dict[tuple[str, str], str] = {}

	async def get_freshness(self, job_name, scope):
		return self.hashes.get((job_name, scope))

	async def upsert_freshness(self, job_name, scope, input_hash, computed_at):
		self.hashes[(job_name, scope)] = input_hash


class _StubCandidates:
	def __init__(self) -> None:
		self.contexts = []

	async def get_candidates(self, ctx, cursor=None):
		self.contexts.append(ctx)
		return CandidateSet(
			posts=[
				PostCandidate(id=i, user_id=100 + i, created_at=NOW - timedelta(hours=i), text=f"post {i}")
				for i in range(1, 9)
			],
			suggestions=[SuggestionCandidate(user_id=200 + i, source="suggested", match_score=0.5) for i in range(1, 4)],
			questions=[QuestionCandidate(id=7, quiz_id=1, prompt="Beach or mountains?")],
		)


def test_validate_segment_classifies_in_order():
	version = current_algorithm_version()
	assert validate_segment(None, now=NOW).status is SegmentStatus.MISSING
	assert validate_segment(_segment([_item(1)], version="old"), now=NOW).status is SegmentStatus.VERSION_MISMATCH
	assert (
		validate_segment(_segment([], version="old", expires_in=timedelta(minutes=-1)), now=NOW).status
		is SegmentStatus.VERSION_MISMATCH
	)
	assert validate_segment(_segment([_item(1)], expires_in=timedelta(0)), version, now=NOW).status is SegmentStatus.EXPIRED
	assert validate_segment(_segment([]), version, now=NOW).status is SegmentStatus.EMPTY
	valid = validate_segment(_segment([_item(1)]), version, now=NOW)
	assert valid.valid
	assert valid.segment.items[0].id == 1


def test_phase1_json_carries_two_items_and_cursor():
	items = [
		_item(1, actor_name="Ana", text_preview="hello", presentation=Presentation(mode="highlight")),
		_item(2, type="suggestion"),
		_item(3),
	]
	payload = json.loads(build_phase1_json(items))

	assert [entry["id"] for entry in payload["items"]] == ["1", "2"]
	assert [entry["kind"] for entry in payload["items"]] == ["post", "profile"]
	assert payload["items"][0]["actor"] == {"id": "101", "name": "Ana", "avatarUrl": None}
	assert payload["items"][0]["presentation"] == {"mode": "highlight", "accent": None}
	assert payload["items"][1]["actor"]["name"] == "User"
	assert payload["nextCursor"] == "3"
	assert json.loads(build_phase1_json(items[:2]))["nextCursor"] is None


def test_phase1_json_over_size_cap_collapses():
	items = [_item(1, text_preview="x" * (PHASE1_MAX_BYTES + 10)), _item(2)]
	assert build_phase1_json(items) == EMPTY_PHASE1_JSON
	assert parse_phase1_json(EMPTY_PHASE1_JSON) == {"items": [], "nextCursor": None}
	assert parse_phase1_json("[1, 2]") == {"items": [], "nextCursor": None}


def test_phase1_size_cap_counts_utf8_bytes():
	ascii_items = [_item(1, text_preview="x" * 5000), _item(2)]
	assert json.loads(build_phase1_json(ascii_items))["items"][0]["textPreview"] == "x" * 5000

	accented_items = [_item(1, text_preview="\u00e9" * 5000), _item(2)]
	assert build_phase1_json(accented_items) == EMPTY_PHASE1_JSON


def test_seen_items_from_phase1_skips_questions_and_bad_ids():
	payload = {
		"items": [
			{"id": "4", "kind": "post"},
			{"id": "9", "kind": "profile"},
			{"id": "2", "kind": "question"},
			{"id": "nope", "kind": "post"},
		]
	}
	seen = seen_items_from_phase1(payload)
	assert [(item.item_type, item.item_id) for item in seen] == [(SeenItemType.POST, 4), (SeenItemType.SUGGESTION, 9)]


def test_to_presorted_item_trims_preview():
	post = PostCandidate(id=5, user_id=8, created_at=NOW, text="a" * 200, media_type="image", score=0.7)
	item = to_presorted_item(FeedItem.for_post(post), "Bo", None, now_ms=1)

	assert item.id == 5
	assert item.actor_id == 8
	assert item.media_type == "image"
	assert item.created_at_ms == int(NOW.timestamp() * 1000)
	assert item.text_preview == "a" * 150 + "..."
	assert item.score == pytest.approx(0.7)

	question = to_presorted_item(FeedItem.for_question(QuestionCandidate(id=3, quiz_id=1, prompt="?")), now_ms=42)
	assert question.created_at_ms == 42
	assert question.media_type is None
	assert question.actor_id == SYSTEM_ACTOR_ID
	assert json.loads(build_phase1_json([question]))["items"][0]["actor"] == {"id": "0", "name": "System", "avatarUrl": None}


def test_phase1_card_for_question_uses_system_actor():
	card = phase1_from_feed_item(FeedItem.for_question(QuestionCandidate(id=3, quiz_id=1, prompt="Cats?")), now_ms=5)
	assert card["kind"] == "question"
	assert card["actor"]["name"] == "System"
	assert card["textPreview"] == "Cats?"
	assert card["presentation"] == {"mode": "question", "accent": None}


def test_build_segments_splits_and_only_first_has_phase1():
	items = [_item(i) for i in range(1, 26)]
	segments = build_segments(items, segment_size=10, target_segments=3)

	assert [index for index, _, _ in segments] == [0, 1, 2]
	assert [len(chunk) for _, chunk, _ in segments] == [10, 10, 5]
	assert segments[0][2] is not None
	assert segments[1][2] is None and segments[2][2] is None


def test_thin_first_segment_is_not_stored():
	assert segment_is_storable([_item(1), _item(2)], 0, 20) is False
	assert segment_is_storable([_item(1), _item(2)], 1, 20) is True
	assert segment_is_storable([_item(1), _item(2)], 0, 2) is True
	assert segment_is_storable([], 1, 20) is False
	assert build_segments([_item(1), _item(2), _item(3)], segment_size=10, target_segments=3) == []


def test_dedupe_feed_items_keeps_first():
	post = PostCandidate(id=1, user_id=2, created_at=NOW)
	items = [FeedItem.for_post(post), FeedItem.for_post(post), FeedItem.for_suggestion(SuggestionCandidate(user_id=2))]
	kept, dropped = dedupe_feed_items(items)
	assert len(kept) == 2
	assert dropped == 1


def test_candidate_count_has_floor():
	cfg = FeedPresortConfig()
	assert candidate_count_for(60, cfg) == 100
	assert candidate_count_for(100, cfg) == 120


@pytest.mark.asyncio
async def test_presort_service_stores_and_reads_segments():
	repo = _PresortRepo()
	service = PresortService(repo, clock=lambda: NOW)

	written = await service.store_segments(1, [(0, [_item(1), _item(2)], EMPTY_PHASE1_JSON)], ttl=timedelta(minutes=30))
	validation = await service.read_segment(1)

	assert written == 1
	assert validation.valid
	assert validation.segment.expires_at == NOW + timedelta(minutes=30)
	assert validation.segment.algorithm_version == current_algorithm_version()


@pytest.mark.asyncio
async def test_presort_service_never_serves_expired_segments():
	repo = _PresortRepo()
	repo.segments[(1, 0)] = _segment([_item(1)], expires_in=timedelta(minutes=-5))
	service = PresortService(repo, clock=lambda: NOW)

	assert (await service.read_segment(1)).status is SegmentStatus.EXPIRED
	assert await service.get_segment(1) is None
	assert await service.cleanup_expired() == 1
	assert repo.segments == {}


@pytest.mark.asyncio
async def test_presort_service_invalidation():
	repo = _PresortRepo()
	for user_id in (1, 2, 3):
		repo.segments[(user_id, 0)] = _segment([_item(1)])
	service = PresortService(repo, clock=lambda: NOW)

	assert await service.invalidate_all_for_user(3) == 1
	assert await service.batch_invalidate([1, 1, 2]) == 2
	assert repo.deleted_users[-1] == [1, 2]
	assert await service.batch_invalidate([]) == 0


@pytest.mark.asyncio
async def test_seen_penalty_demotes_recently_seen_items():
	repo = _PresortRepo()
	repo.seen[(SeenItemType.POST, 1)] = NOW - timedelta(hours=1)
	repo.seen[(SeenItemType.SUGGESTION, 3)] = NOW - timedelta(hours=30)
	service = PresortService(repo, clock=lambda: NOW)
	items = [_item(1, score=0.9), _item(2, score=0.8), _item(3, type="suggestion", score=0.1)]

	assert await service.check_all_unseen(1, items) is False
	assert await service.check_all_unseen(1, items[1:]) is True

	penalized = await service.apply_seen_penalty(1, items)
	assert [item.id for item in penalized] == [2, 1, 3]
	assert penalized[1].score == pytest.approx(0.7)
	assert penalized[2].score == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_enqueue_presort_dedupes_within_window():
	assert await presort_queue.enqueue_presort(5) is True
	assert await presort_queue.enqueue_presort(5) is False
	assert await presort_queue.queue_depth() == 1
	assert await presort_queue.dequeue_presort(timeout=1) == 5
	assert await presort_queue.queue_depth() == 0


@pytest.mark.asyncio
async def test_enqueue_presort_without_dedupe_window():
	assert await presort_queue.enqueue_presort(6, dedupe_seconds=0) is True
	assert await presort_queue.enqueue_presort(6, dedupe_seconds=0) is True
	assert await presort_queue.queue_depth() == 2


def _job(repo: _PresortRepo, candidates: _StubCandidates, delays: list[float]) -> FeedPresortJob:
	async def delay(seconds: float) -> None:
		delays.append(seconds)

	return FeedPresortJob(
		repo,
		candidates=candidates,
		presort=PresortService(repo, clock=lambda: NOW),
		freshness=FreshnessStore(_FreshnessRepo()),
		config=FeedPresortConfig(segment_size=5, max_segments=2, min_candidate_count=10),
		delay=delay,
		jitter=lambda: 0.5,
	)


@pytest.mark.asyncio
async def test_presort_for_user_writes_segments_then_skips_when_fresh():
	repo = _PresortRepo()
	candidates = _StubCandidates()
	job = _job(repo, candidates, [])

	first = await job.presort_for_user(1)
	assert first.skipped is False
	assert first.segments_generated == 2
	assert first.candidates_fetched == 10
	assert candidates.contexts[0].take == 12
	assert candidates.contexts[0].mark_seen is False

	head = repo.segments[(1, 0)]
	assert len(head.items) == 5
	assert head.phase1_json is not None
	assert repo.segments[(1, 1)].phase1_json is None
	assert head.items[0].actor_name == "actor 101"

	second = await job.presort_for_user(1)
	assert second.skipped is True
	assert len(candidates.contexts) == 1

	forced = await job.presort_for_user(1, force=True)
	assert forced.skipped is False


@pytest.mark.asyncio
async def test_presort_batch_run_processes_every_user():
	repo = _PresortRepo()
	delays: list[float] = []
	job = _job(repo, _StubCandidates(), delays)

	result = await job.run(batch_size=10)

	assert result["processedUsers"] == 2
	assert result["totalSegments"] == 4
	assert delays == [90.0]
	assert {key[0] for key in repo.segments} == {1, 2}


@pytest.mark.asyncio
async def test_presort_single_user_run_skips_jitter():
	repo = _PresortRepo()
	delays: list[float] = []
	job = _job(repo, _StubCandidates(), delays)

	result = await job.run(user_id=2)

	assert result == {"processedUsers": 1, "totalCandidates": 10, "totalSegments": 2, "totalSkipped": 0}
	assert delays == []


@pytest.mark.asyncio
async def test_cleanup_job_reports_deleted_segments():
	repo = _PresortRepo()
	repo.segments[(1, 0)] = _segment([_item(1)], expires_in=timedelta(minutes=-1))
	repo.segments[(2, 0)] = _segment([_item(1)])
	job = FeedPresortCleanupJob(PresortService(repo, clock=lambda: NOW))

	assert await job.run() == {"deleted": 1}
	assert list(repo.segments) == [(2, 0)]
