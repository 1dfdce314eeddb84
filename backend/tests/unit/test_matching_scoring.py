from __future__ import annotations

import random
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from matchfeed.domain.matching import scoring
from matchfeed.domain.matching.compatibility import compatibility_score
from matchfeed.domain.matching.engine import passes_gates, score_candidate, upper_bound
from matchfeed.domain.matching.geo import distance_between, haversine_km
from matchfeed.domain.matching.exceptions import InvalidWeights
from matchfeed.domain.matching.heap import TopKHeap
from matchfeed.domain.matching.models import (
	WEIGHT_KEYS,
	CandidateContext,
	CompatibilityStatus,
	Interest,
	MatchContext,
	PreferencesContext,
	QuizSnapshot,
	RatingAggregate,
	Tier,
	TraitValue,
	ViewerContext,
	Weights,
)
from matchfeed.domain.matching.operators import SCORING_OPERATORS

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


class _Scored:
	def __init__(self, score: float, label: str = "") -> None:
		self.score = score
		self.label = label


def _interest(subject_id: int, interest_id: int, key: str) -> Interest:
	return Interest(subject_id=subject_id, interest_id=interest_id, subject_key="hobby", interest_key=key)


MUSIC = _interest(1, 1, "music")
FILM = _interest(1, 2, "film")
SPORTS = _interest(1, 3, "sports")


def _ctx(
	*,
	viewer: ViewerContext | None = None,
	candidate: CandidateContext | None = None,
	prefs: PreferencesContext | None = None,
	blocked: frozenset[int] = frozenset(),
) -> MatchContext:
	return MatchContext(
		viewer=viewer or ViewerContext(user_id=1),
		candidate=candidate or CandidateContext(user_id=2),
		prefs=prefs or PreferencesContext(),
		blocked_user_ids=blocked,
		now=NOW,
	)


def test_heap_keeps_highest_with_capacity_one():
	heap: TopKHeap[_Scored] = TopKHeap(1)
	for value in (0.3, 0.9, 0.5):
		heap.push(_Scored(value))
	assert [item.score for item in heap.to_list()] == [0.9]


def test_heap_retains_top_k_in_descending_order():
	rng = random.Random(7)
	values = [rng.random() for _ in range(200)]
	heap: TopKHeap[_Scored] = TopKHeap(10)
	for value in values:
		heap.push(_Scored(value))
	assert len(heap) == 10
	assert [item.score for item in heap.to_list()] == sorted(values, reverse=True)[:10]


def test_heap_ties_keep_earlier_entry():
	heap: TopKHeap[_Scored] = TopKHeap(1)
	heap.push(_Scored(0.5, "first"))
	assert heap.push(_Scored(0.5, "second")) is False
	assert heap.peek().label == "first"


def test_heap_zero_capacity_rejects_everything():
	heap: TopKHeap[_Scored] = TopKHeap(0)
	assert heap.push(_Scored(1.0)) is False
	assert heap.to_list() == []


def test_interest_overlap_is_jaccard():
	result = scoring.interest_overlap([MUSIC, FILM], [MUSIC, SPORTS])
	assert result.overlap == pytest.approx(1 / 3)
	assert result.matches == ("hobby:music",)
	assert result.intersection == 1


def test_interest_overlap_empty_side_is_zero():
	assert scoring.interest_overlap([], [MUSIC]).overlap == 0.0
	assert scoring.interest_overlap([MUSIC], []).overlap == 0.0


def test_missing_quiz_and_traits_scores_neutral():
	result = score_candidate(_ctx())
	assert result is not None
	assert result.components["score_quiz"] == 0.5
	assert result.components["score_interests"] == 0.0


def test_trait_similarity_identical_profiles():
	traits = [TraitValue("open", 0.8, 5), TraitValue("calm", -0.2, 5)]
	result = scoring.trait_similarity(traits, traits)
	assert result.value == pytest.approx(1.0)
	assert result.common_count == 2


def test_rating_fit_neutral_below_min_count():
	viewer = RatingAggregate(4.0, 3.0, 2.0, 1.0, count=10)
	candidate = RatingAggregate(4.0, 3.0, 2.0, 1.0, count=1)
	assert scoring.rating_fit(viewer, candidate, 5.0, 3) == 0.5


def test_newness_halves_after_half_life():
	created = NOW - timedelta(days=30)
	assert scoring.newness(created, None, 30.0, NOW) == pytest.approx(0.5)


def test_proximity_falls_back_to_location_text():
	prefs = PreferencesContext()
	assert scoring.proximity(None, prefs, "Montreal", "Montreal") == scoring.NEARBY_TEXT_FALLBACK
	assert scoring.proximity(50.0, prefs) == pytest.approx(0.5)


def test_haversine_and_invalid_coordinates():
	assert haversine_km(0.0, 0.0, 0.0, 1.0) == pytest.approx(111.19, rel=1e-3)
	assert distance_between(95.0, 0.0, 0.0, 0.0) is None


def test_upper_bound_never_below_score():
	rng = random.Random(11)
	pool = [MUSIC, FILM, SPORTS, _interest(2, 4, "chess")]
	for _ in range(100):
		viewer = ViewerContext(
			user_id=1,
			interests=tuple(rng.sample(pool, rng.randint(0, 4))),
			traits=tuple(TraitValue(key, rng.uniform(-1, 1), rng.randint(0, 8)) for key in ("a", "b", "c")),
			ratings=RatingAggregate(*(rng.uniform(1, 5) for _ in range(4)), count=rng.randint(0, 10)),
			location_text="Montreal",
		)
		candidate = CandidateContext(
			user_id=2,
			interests=tuple(rng.sample(pool, rng.randint(0, 4))),
			traits=tuple(TraitValue(key, rng.uniform(-1, 1), rng.randint(0, 8)) for key in ("a", "b", "c")),
			ratings=RatingAggregate(*(rng.uniform(1, 5) for _ in range(4)), count=rng.randint(0, 10)),
			created_at=NOW - timedelta(days=rng.uniform(0, 400)),
			distance_km=rng.choice([None, rng.uniform(0, 300)]),
			location_text=rng.choice([None, "Montreal"]),
		)
		ctx = _ctx(viewer=viewer, candidate=candidate)
		weights = Weights(**{key: rng.choice([0.0, rng.uniform(0, 2)]) for key in WEIGHT_KEYS})
		result = score_candidate(ctx, weights=weights)
		assert result is not None
		assert upper_bound(ctx, SCORING_OPERATORS, weights) >= result.score - 1e-9


@pytest.mark.parametrize("value", [-0.5, float("nan"), float("inf"), True, "0.2"])
def test_weights_reject_values_outside_the_bound_domain(value):
	with pytest.raises(InvalidWeights) as exc:
		Weights(rating_quality=value)
	assert exc.value.reason == "invalid_weight_rating_quality"


def test_weight_overrides_merge_onto_defaults():
	weights = Weights.from_mapping({"proximity": "0.4", "quiz": None})
	assert weights.proximity == pytest.approx(0.4)
	assert weights.quiz == pytest.approx(0.25)

	with pytest.raises(InvalidWeights):
		Weights.from_mapping({"charm": 0.1})
	with pytest.raises(InvalidWeights):
		Weights.from_mapping({"newness": -1})
	with pytest.raises(InvalidWeights):
		Weights.from_mapping({"newness": "lots"})


def test_self_and_blocked_candidates_are_gated():
	assert passes_gates(_ctx(candidate=CandidateContext(user_id=1))) is False
	assert passes_gates(_ctx(blocked=frozenset({2}))) is False
	assert score_candidate(_ctx(blocked=frozenset({2}))) is None


def test_preference_miss_gives_tier_b():
	prefs = PreferencesContext(preferred_genders=("F",), preferred_age_min=25, preferred_age_max=30)
	inside = CandidateContext(user_id=2, gender="F", birthdate=date(1996, 1, 1))
	outside = replace(inside, gender="M")
	assert score_candidate(_ctx(candidate=inside, prefs=prefs)).tier is Tier.A
	result = score_candidate(_ctx(candidate=outside, prefs=prefs))
	assert result is not None
	assert result.tier is Tier.B
	assert result.reasons["compliance"]["gender"] is False


def test_compatibility_insufficient_without_signals():
	summary, reasons = compatibility_score(ViewerContext(user_id=1), CandidateContext(user_id=2))
	assert summary.status is CompatibilityStatus.INSUFFICIENT_DATA
	assert summary.score is None
	assert reasons is None


def test_compatibility_ready_with_shared_quiz():
	quiz = QuizSnapshot(quiz_id=1, answers={"q1": "a", "q2": "b"})
	viewer = ViewerContext(user_id=1, quiz=quiz, interests=(MUSIC, FILM))
	candidate = CandidateContext(user_id=2, quiz=quiz, interests=(MUSIC, SPORTS))
	summary, reasons = compatibility_score(viewer, candidate)
	assert summary.status is CompatibilityStatus.READY
	assert summary.score == pytest.approx(0.45 + 0.25 / 3)
	assert reasons["interests"]["matches"] == ["hobby:music"]
