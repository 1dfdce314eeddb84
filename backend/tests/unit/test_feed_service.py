from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from matchfeed.domain.feed.candidates import RelationshipPosts
from matchfeed.domain.feed.context import build_feed_context, parse_limit
from matchfeed.domain.feed.exceptions import InvalidFeedRequest
from matchfeed.domain.feed.hydration import FeedHydrator
from matchfeed.domain.feed.models import (
	CandidateSet,
	CursorCutoff,
	FeedViewerContext,
	PostCandidate,
	PresortedItem,
	PresortedSegment,
	QuestionCandidate,
	QuestionOption,
	RelationshipIds,
	SeenItemType,
	SuggestionCandidate,
)
from matchfeed.domain.feed.phase1 import build_phase1_json
from matchfeed.domain.feed.presort import PresortService, current_algorithm_version
from matchfeed.domain.feed.relationships import RelationshipService
from matchfeed.domain.feed.schemas import FeedLiteResponse, FeedResponse
from matchfeed.domain.feed.service import FeedService
from matchfeed.obs import metrics as obs_metrics

NOW = datetime.now(timezone.utc)


def _post(post_id: int, user_id: int, *, hours_ago: float = 1.0) -> PostCandidate:
	return PostCandidate(
		id=post_id,
		user_id=user_id,
		created_at=NOW - timedelta(hours=hours_ago),
		text=f"post {post_id}",
		display_name=f"user {user_id}",
	)


class _FeedRepo:
	"""In-memory stand-in for every repository call the feed pipeline makes."""

	def __init__(self) -> None:
		self.posts: dict[int, PostCandidate] = {}
		self.profiles: dict[int, dict] = {}
		self.questions: dict[int, QuestionCandidate] = {}
		self.segments: dict[tuple[int, int], PresortedSegment] = {}
		self.following: dict[int, list[int]] = {}
		self.followers: dict[int, list[int]] = {}
		self.seen_writes: list[tuple[int, dict]] = []
		self.deleted_users: list[list[int]] = []
		self.fail_segments = False

	async def list_post_media_types(self, post_ids):
		return {}

	async def fetch_seen(self, viewer_id, item_type, item_ids):
		return {}

	async def upsert_seen(self, viewer_id, ids_by_type, seen_at):
		self.seen_writes.append((viewer_id, {key: list(value) for key, value in ids_by_type.items()}))
		return sum(len(ids) for ids in ids_by_type.values())

	async def list_post_stats(self, post_ids):
		return {post_id: {"like_count": 2, "comment_count": 1} for post_id in post_ids}

	async def list_rating_stats(self, user_ids):
		return {}

	async def list_post_media(self, post_ids):
		return {}

	async def list_profile_media(self, user_ids, *, per_user):
		return {}

	async def get_posts_by_ids(self, post_ids):
		return {post_id: self.posts[post_id] for post_id in post_ids if post_id in self.posts}

	async def get_profiles_by_user_ids(self, user_ids):
		return {uid: self.profiles[uid] for uid in user_ids if uid in self.profiles}

	async def get_questions_by_ids(self, question_ids):
		return {qid: self.questions[qid] for qid in question_ids if qid in self.questions}

	async def get_segment(self, user_id, segment_index):
		if self.fail_segments:
			raise RuntimeError("segment store down")
		return self.segments.get((user_id, segment_index))

	async def delete_segments_for_users(self, user_ids):
		self.deleted_users.append(list(user_ids))
		doomed = [key for key in self.segments if key[0] in user_ids]
		for key in doomed:
			del self.segments[key]
		return len(doomed)

	async def list_following_ids(self, user_id):
		return list(self.following.get(user_id, []))

	async def list_follower_ids(self, user_id):
		return list(self.followers.get(user_id, []))


class _StubCandidates:
	def __init__(self, candidates: CandidateSet, relationship_posts: Optional[RelationshipPosts] = None) -> None:
		self.candidates = candidates
		self.relationship_posts = relationship_posts or RelationshipPosts()
		self.live_calls = 0

	async def resolve_cursor(self, cursor_id):
		if cursor_id is None:
			return None
		return CursorCutoff(id=cursor_id, created_at=NOW)

	async def get_relationship_post_candidates(self, ctx, relationships, cursor=None):
		return self.relationship_posts

	async def get_candidates(self, ctx, cursor=None):
		self.live_calls += 1
		return self.candidates


class _StubCompatibility:
	async def get_compatibility_map(self, viewer_id, target_ids):
		return {}


def _live_candidates() -> CandidateSet:
	return CandidateSet(
		posts=[_post(1, 11, hours_ago=1), _post(2, 12, hours_ago=3)],
		suggestions=[SuggestionCandidate(user_id=40, display_name="Mo", source="match", match_score=1.0)],
		questions=[
			QuestionCandidate(
				id=3,
				quiz_id=1,
				prompt="Coffee or tea?",
				options=(QuestionOption(id=1, label="Coffee", value="coffee"),),
			)
		],
	)


def _service(
	repo: _FeedRepo,
	candidates: _StubCandidates,
	refreshes: list[int],
) -> FeedService:
	async def schedule_refresh(user_id: int) -> bool:
		refreshes.append(user_id)
		return True

	presort = PresortService(repo)
	return FeedService(
		repo,
		candidates=candidates,
		hydrator=FeedHydrator(repo, compatibility=_StubCompatibility()),
		presort=presort,
		relationships=RelationshipService(repo, presort=presort),
		schedule_refresh=schedule_refresh,
	)


def _store_segment(repo: _FeedRepo, user_id: int, items, *, version: Optional[str] = None, expires_in=timedelta(minutes=20)):
	repo.segments[(user_id, 0)] = PresortedSegment(
		user_id=user_id,
		segment_index=0,
		items=list(items),
		phase1_json=build_phase1_json(items),
		computed_at=NOW,
		algorithm_version=version or current_algorithm_version(),
		expires_at=NOW + expires_in,
	)


def _presorted(item_id: int, type: str = "post", *, actor_id: Optional[int] = None, score: float = 0.5) -> PresortedItem:
	return PresortedItem(
		type=type,
		id=item_id,
		score=score,
		actor_id=actor_id if actor_id is not None else item_id,
		source="post" if type == "post" else "suggested",
		created_at_ms=int(NOW.timestamp() * 1000),
		actor_name="Cached",
	)


@pytest.mark.asyncio
async def test_hydrate_from_presorted_reloads_entities_and_skips_vanished_ones():
	repo = _FeedRepo()
	repo.posts[21] = _post(21, 30)
	repo.profiles[50] = {"user_id": 50, "display_name": "Sam"}
	repo.questions[3] = QuestionCandidate(id=3, quiz_id=1, prompt="Coffee or tea?")
	hydrator = FeedHydrator(repo, compatibility=_StubCompatibility())
	ctx = FeedViewerContext(user_id=7)

	hydrated = await hydrator.hydrate_from_presorted(
		ctx,
		[_presorted(21, actor_id=30), _presorted(99), _presorted(50, "suggestion"), _presorted(3, "question")],
	)

	assert [item.type for item in hydrated] == ["post", "suggestion", "question"]
	assert hydrated[0].post.id == "21"
	assert hydrated[0].post.stats.like_count == 2
	assert hydrated[1].suggestion.user_id == "50"
	assert hydrated[1].suggestion.score == pytest.approx(0.5)
	assert hydrated[2].question.id == "3"
	assert hydrated[2].actor_id == "0"
	assert await hydrator.hydrate_from_presorted(ctx, []) == []


def test_build_feed_context_defaults():
	anonymous = build_feed_context(None, {})
	assert anonymous.take == 20
	assert anonymous.mark_seen is False
	assert anonymous.lite is False

	viewer = build_feed_context(7, {"take": "500", "seed": "12.75", "lite": "true", "cursorId": "9"})
	assert viewer.take == 50
	assert viewer.mark_seen is True
	assert viewer.lite is True
	assert viewer.cursor_id == 9
	assert viewer.int_seed == 12

	assert build_feed_context(7, {"markSeen": "false"}).mark_seen is False
	assert parse_limit("0") == 1


@pytest.mark.parametrize(
	"params, reason",
	[
		({"take": "many"}, "invalid_take"),
		({"cursorId": "-3"}, "invalid_cursorId"),
		({"cursorId": "abc"}, "invalid_cursorId"),
		({"seed": "nan"}, "invalid_seed"),
		({"debug": "maybe"}, "invalid_debug"),
	],
)
def test_build_feed_context_rejects_bad_params(params, reason):
	with pytest.raises(InvalidFeedRequest) as excinfo:
		build_feed_context(1, params)
	assert excinfo.value.reason == reason


@pytest.mark.asyncio
async def test_anonymous_feed_uses_live_ranking():
	repo = _FeedRepo()
	candidates = _StubCandidates(_live_candidates())
	refreshes: list[int] = []
	service = _service(repo, candidates, refreshes)

	response = await service.get_feed(FeedViewerContext(user_id=None, take=5))

	assert isinstance(response, FeedResponse)
	assert [item.type for item in response.items] == ["post", "suggestion", "post", "question"]
	assert response.items[0].post.stats.like_count == 2
	assert response.items[1].suggestion.compatibility is None
	assert response.items[3].question.options[0].value == "coffee"
	assert response.next_cursor_id == "2"
	assert response.has_more_posts is True
	assert refreshes == []
	assert repo.seen_writes == []


@pytest.mark.asyncio
async def test_valid_segment_is_served_with_relationship_posts_first():
	repo = _FeedRepo()
	repo.following[1] = [3]
	repo.posts[21] = _post(21, 30)
	repo.profiles[50] = {"user_id": 50, "display_name": "Zed"}
	candidates = _StubCandidates(CandidateSet(), RelationshipPosts(following=[_post(9, 3)]))
	refreshes: list[int] = []
	service = _service(repo, candidates, refreshes)
	_store_segment(
		repo,
		1,
		[
			_presorted(21, actor_id=30, score=0.9),
			_presorted(3, "suggestion", score=0.8),
			_presorted(50, "suggestion", score=0.7),
			_presorted(99, score=0.6),
		],
	)

	response = await service.get_feed(FeedViewerContext(user_id=1, take=10, mark_seen=True))

	assert candidates.live_calls == 0
	assert [(item.type, item.tier) for item in response.items] == [
		("post", "following"),
		("post", "everyone"),
		("suggestion", "everyone"),
	]
	assert response.items[2].suggestion.user_id == "50"
	assert response.items[2].suggestion.compatibility.status == "INSUFFICIENT_DATA"
	assert refreshes == []
	assert repo.seen_writes == [(1, {SeenItemType.POST: [9, 21], SeenItemType.SUGGESTION: [50]})]


@pytest.mark.asyncio
async def test_expired_segment_falls_back_and_requests_refresh():
	repo = _FeedRepo()
	_store_segment(repo, 1, [_presorted(21)], expires_in=timedelta(minutes=-1))
	candidates = _StubCandidates(_live_candidates())
	refreshes: list[int] = []
	service = _service(repo, candidates, refreshes)

	response = await service.get_feed(FeedViewerContext(user_id=1, take=5))

	assert isinstance(response, FeedResponse)
	assert candidates.live_calls == 1
	assert set(refreshes) == {1}
	assert repo.deleted_users == []


@pytest.mark.asyncio
async def test_version_mismatch_invalidates_user_segments():
	repo = _FeedRepo()
	_store_segment(repo, 1, [_presorted(21)], version="v0-stale")
	candidates = _StubCandidates(_live_candidates())
	service = _service(repo, candidates, [])

	await service.get_feed(FeedViewerContext(user_id=1, take=5))

	assert repo.deleted_users == [[1]]
	assert repo.segments == {}
	assert candidates.live_calls == 1


@pytest.mark.asyncio
async def test_segment_read_failure_falls_back_to_live():
	repo = _FeedRepo()
	repo.fail_segments = True
	candidates = _StubCandidates(_live_candidates())
	service = _service(repo, candidates, [])

	response = await service.get_feed(FeedViewerContext(user_id=1, take=5))

	assert candidates.live_calls == 1
	assert len(response.items) == 4


@pytest.mark.asyncio
async def test_cursor_requests_skip_presorted_segments():
	repo = _FeedRepo()
	_store_segment(repo, 1, [_presorted(21)])
	candidates = _StubCandidates(_live_candidates())
	service = _service(repo, candidates, [])

	await service.get_feed(FeedViewerContext(user_id=1, take=5, cursor_id=40))

	assert candidates.live_calls == 1


@pytest.mark.asyncio
async def test_lite_request_returns_cached_phase1_payload():
	repo = _FeedRepo()
	items = [_presorted(21, actor_id=30), _presorted(50, "suggestion"), _presorted(22, actor_id=31)]
	_store_segment(repo, 1, items)
	candidates = _StubCandidates(CandidateSet())
	service = _service(repo, candidates, [])

	payload = await service.get_feed(FeedViewerContext(user_id=1, lite=True, mark_seen=True))

	assert payload == json.loads(repo.segments[(1, 0)].phase1_json)
	assert payload["nextCursor"] == "22"
	assert repo.seen_writes == [(1, {SeenItemType.POST: [21], SeenItemType.SUGGESTION: [50]})]


@pytest.mark.asyncio
async def test_lite_request_without_segment_builds_two_cards():
	repo = _FeedRepo()
	service = _service(repo, _StubCandidates(_live_candidates()), [])

	response = await service.get_feed(FeedViewerContext(user_id=None, lite=True))

	assert isinstance(response, FeedLiteResponse)
	assert [card["kind"] for card in response.items] == ["post", "profile"]
	assert response.items[0]["actor"]["name"] == "user 11"
	assert response.next_cursor_id == "1"


@pytest.mark.asyncio
async def test_debug_payload_includes_ranking_summary():
	repo = _FeedRepo()
	service = _service(repo, _StubCandidates(_live_candidates()), [])

	response = await service.get_feed(FeedViewerContext(user_id=None, take=5, debug=True, seed=3))

	assert response.debug["seed"] == 3
	assert response.debug["ranking"]["sourceSequence"] == ["post", "match", "post", "question"]
	assert response.debug["candidates"]["counts"] == {"posts": 2, "suggestions": 1, "questions": 1}


@pytest.mark.asyncio
async def test_relationship_ids_drop_mutual_followers():
	repo = _FeedRepo()
	repo.following[1] = [2, 3]
	repo.followers[1] = [3, 4]
	service = RelationshipService(repo, presort=PresortService(repo))

	ids = await service.get_relationship_ids(1)

	assert ids == RelationshipIds(following_ids=(2, 3), follower_ids=(4,))


@pytest.mark.asyncio
async def test_access_change_invalidates_both_users():
	repo = _FeedRepo()
	_store_segment(repo, 1, [_presorted(21)])
	_store_segment(repo, 2, [_presorted(21)])
	service = RelationshipService(repo, presort=PresortService(repo))

	task = service.on_access_changed(1, 2, "grant")
	await task
	await service.drain()

	assert repo.deleted_users == [[1, 2]]
	assert repo.segments == {}


@pytest.mark.asyncio
async def test_access_change_failures_are_counted_not_raised():
	class _BrokenPresort:
		async def batch_invalidate(self, user_ids, *, reason="batch"):
			raise RuntimeError("db down")

	before = obs_metrics.INVALIDATION_FAILURES._value.get()
	service = RelationshipService(_FeedRepo(), presort=_BrokenPresort())

	await service.on_access_changed(5, 6)

	after = obs_metrics.INVALIDATION_FAILURES._value.get()
	assert after == before + 1


@pytest.mark.asyncio
async def test_invalidate_user_and_followers():
	repo = _FeedRepo()
	repo.followers[1] = [8, 9]
	service = RelationshipService(repo, presort=PresortService(repo))

	await service.invalidate_user_and_follower_feeds(1)

	assert repo.deleted_users == [[1, 8, 9]]
