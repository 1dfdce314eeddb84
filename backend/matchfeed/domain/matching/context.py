"""Assemble validated scoring contexts from repository rows."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from matchfeed.domain.matching import geo
from matchfeed.domain.matching.exceptions import ViewerNotFound
from matchfeed.domain.matching.models import (
	CandidateContext,
	Interest,
	MatchContext,
	PreferencesContext,
	QuizSnapshot,
	RatingAggregate,
	TraitValue,
	ViewerContext,
)
from matchfeed.domain.matching.repo import MatchingRepository
from matchfeed.domain.matching.vectors import to_finite


@dataclass(slots=True, frozen=True)
class ViewerSnapshot:
	"""Everything about the viewer a scoring pass needs, loaded once."""

	context: ViewerContext
	prefs: PreferencesContext
	blocked_user_ids: frozenset[int]

	def match_context(self, candidate: CandidateContext, now: Optional[datetime] = None) -> MatchContext:
		return MatchContext(
			viewer=self.context,
			candidate=candidate,
			prefs=self.prefs,
			blocked_user_ids=self.blocked_user_ids,
			now=now or datetime.now(timezone.utc),
		)


def _clean_rating(aggregate: Optional[RatingAggregate]) -> Optional[RatingAggregate]:
	if aggregate is None:
		return None
	return RatingAggregate(
		attractive=to_finite(aggregate.attractive),
		smart=to_finite(aggregate.smart),
		funny=to_finite(aggregate.funny),
		interesting=to_finite(aggregate.interesting),
		count=max(0, int(aggregate.count or 0)),
	)


def _clean_traits(traits: Sequence[TraitValue]) -> tuple[TraitValue, ...]:
	cleaned = []
	for trait in traits:
		value = to_finite(trait.value)
		if value is None:
			continue
		cleaned.append(TraitValue(key=trait.key, value=value, n=max(0, int(trait.n))))
	return tuple(cleaned)


def build_preferences(record: Optional[Mapping[str, Any]], defaults: PreferencesContext) -> PreferencesContext:
	if record is None:
		return defaults
	genders = record.get("preferred_genders") or ()
	age_min = record.get("preferred_age_min")
	age_max = record.get("preferred_age_max")
	distance = to_finite(record.get("preferred_distance_km"))
	return replace(
		defaults,
		preferred_genders=tuple(str(value) for value in genders if value),
		preferred_age_min=int(age_min) if age_min is not None else None,
		preferred_age_max=int(age_max) if age_max is not None else None,
		preferred_distance_km=distance if distance is not None and distance >= 0 else None,
	)


def build_viewer_context(
	user_id: int,
	profile: Optional[Mapping[str, Any]],
	*,
	traits: Sequence[TraitValue] = (),
	interests: Sequence[Interest] = (),
	quiz: Optional[QuizSnapshot] = None,
	ratings: Optional[RatingAggregate] = None,
) -> ViewerContext:
	profile = profile or {}
	lat, lng = geo.coerce_coordinates(profile.get("lat"), profile.get("lng"))
	return ViewerContext(
		user_id=user_id,
		profile_id=int(profile["id"]) if profile.get("id") is not None else None,
		lat=lat,
		lng=lng,
		location_text=profile.get("location_text") or None,
		traits=_clean_traits(traits),
		interests=tuple(interests),
		quiz=quiz,
		ratings=_clean_rating(ratings),
	)


def build_candidate_context(
	viewer: ViewerContext,
	profile: Mapping[str, Any],
	*,
	traits: Sequence[TraitValue] = (),
	interests: Sequence[Interest] = (),
	quiz: Optional[QuizSnapshot] = None,
	ratings: Optional[RatingAggregate] = None,
) -> CandidateContext:
	lat, lng = geo.coerce_coordinates(profile.get("lat"), profile.get("lng"))
	return CandidateContext(
		user_id=int(profile["user_id"]),
		profile_id=int(profile["id"]) if profile.get("id") is not None else None,
		lat=lat,
		lng=lng,
		location_text=profile.get("location_text") or None,
		birthdate=profile.get("birthdate"),
		gender=profile.get("gender") or None,
		created_at=profile.get("created_at"),
		updated_at=profile.get("updated_at"),
		traits=_clean_traits(traits),
		interests=tuple(interests),
		quiz=quiz,
		ratings=_clean_rating(ratings),
		distance_km=geo.distance_between(viewer.lat, viewer.lng, lat, lng),
	)


class ContextAssembler:
	"""Loads viewer and candidate signals in batches and validates them."""

	def __init__(
		self,
		repository: MatchingRepository | None = None,
		*,
		defaults: PreferencesContext | None = None,
	) -> None:
		self.repo = repository or MatchingRepository()
		self.defaults = defaults or PreferencesContext()

	async def load_viewer(self, user_id: int) -> ViewerSnapshot:
		profile = await self.repo.get_profile(user_id)
		if profile is None:
			raise ViewerNotFound()
		traits = await self.repo.list_traits([user_id])
		interests = await self.repo.list_interests([user_id])
		quiz = await self.repo.get_latest_quiz(user_id)
		ratings = await self.repo.list_rating_aggregates([int(profile["id"])])
		prefs = build_preferences(await self.repo.get_preferences(user_id), self.defaults)
		blocked = await self.repo.list_blocked_user_ids(user_id)
		context = build_viewer_context(
			user_id,
			profile,
			traits=traits.get(user_id, ()),
			interests=interests.get(user_id, ()),
			quiz=quiz,
			ratings=ratings.get(int(profile["id"])),
		)
		return ViewerSnapshot(context=context, prefs=prefs, blocked_user_ids=frozenset(blocked))

	async def load_candidates(
		self,
		viewer: ViewerSnapshot,
		profiles: Sequence[Mapping[str, Any]],
	) -> list[CandidateContext]:
		if not profiles:
			return []
		user_ids = [int(profile["user_id"]) for profile in profiles]
		profile_ids = [int(profile["id"]) for profile in profiles]
		ctx = viewer.context
		traits = await self.repo.list_traits(user_ids) if ctx.traits else {}
		interests = await self.repo.list_interests(user_ids)
		quizzes: dict[int, QuizSnapshot] = {}
		if ctx.quiz is not None and ctx.quiz.quiz_id is not None:
			quizzes = await self.repo.list_quiz_results(user_ids, ctx.quiz.quiz_id)
		ratings = await self.repo.list_rating_aggregates(profile_ids)
		return [
			build_candidate_context(
				ctx,
				profile,
				traits=traits.get(int(profile["user_id"]), ()),
				interests=interests.get(int(profile["user_id"]), ()),
				quiz=quizzes.get(int(profile["user_id"])),
				ratings=ratings.get(int(profile["id"])),
			)
			for profile in profiles
		]


async def build_candidate_contexts(
	repository: MatchingRepository,
	viewer: ViewerSnapshot,
	profiles: Sequence[Mapping[str, Any]],
) -> list[CandidateContext]:
	return await ContextAssembler(repository).load_candidates(viewer, profiles)


__all__ = [
	"ViewerSnapshot",
	"ContextAssembler",
	"build_preferences",
	"build_viewer_context",
	"build_candidate_context",
	"build_candidate_contexts",
]
