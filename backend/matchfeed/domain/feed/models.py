"""Internal feed pipeline types (not API contracts)."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Mapping, Optional

ItemType = Literal["post", "suggestion", "question"]
ItemSource = Literal["post", "match", "suggested", "question"]
ItemTier = Literal["self", "following", "followers", "everyone"]
PostMediaType = Literal["text", "image", "video", "mixed"]

TIERS: tuple[str, ...] = ("self", "following", "followers", "everyone")

# questions are attributed to one shared non-user actor
SYSTEM_ACTOR_ID = 0
SYSTEM_ACTOR_NAME = "System"


class SeenItemType(str, Enum):
	POST = "POST"
	SUGGESTION = "SUGGESTION"


class SegmentStatus(str, Enum):
	VALID = "valid"
	MISSING = "missing"
	EXPIRED = "expired"
	VERSION_MISMATCH = "version_mismatch"
	EMPTY = "empty"


@dataclass(slots=True)
class FeedViewerContext:
	"""Parsed feed request; ``user_id`` is None for anonymous viewers."""

	user_id: Optional[int]
	take: int = 20
	cursor_id: Optional[int] = None
	debug: bool = False
	seed: Optional[float] = None
	mark_seen: bool = False
	lite: bool = False

	@property
	def int_seed(self) -> Optional[int]:
		if self.seed is None:
			return None
		return int(self.seed // 1)


@dataclass(slots=True, frozen=True)
class CursorCutoff:
	id: int
	created_at: datetime


@dataclass(slots=True, frozen=True)
class Presentation:
	mode: str
	accent: Optional[str] = None

	def to_dict(self) -> dict[str, Any]:
		return {"mode": self.mode, "accent": self.accent}

	@classmethod
	def from_dict(cls, value: Any) -> Optional["Presentation"]:
		if not isinstance(value, Mapping) or not value.get("mode"):
			return None
		return cls(mode=str(value["mode"]), accent=value.get("accent"))


@dataclass(slots=True)
class PostCandidate:
	id: int
	user_id: int
	created_at: datetime
	text: Optional[str] = None
	display_name: Optional[str] = None
	media_type: PostMediaType = "text"
	presentation: Optional[Presentation] = None
	score: Optional[float] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "PostCandidate":
		return cls(
			id=int(record["id"]),
			user_id=int(record["user_id"]),
			created_at=record["created_at"],
			text=record.get("text"),
			display_name=record.get("display_name"),
		)


@dataclass(slots=True)
class SuggestionCandidate:
	user_id: int
	display_name: Optional[str] = None
	bio: Optional[str] = None
	location_text: Optional[str] = None
	source: Literal["match", "suggested"] = "suggested"
	match_score: Optional[float] = None
	presentation: Optional[Presentation] = None
	score: Optional[float] = None

	@classmethod
	def from_record(
		cls,
		record: Mapping[str, Any],
		*,
		source: Literal["match", "suggested"] = "suggested",
		match_score: Optional[float] = None,
	) -> "SuggestionCandidate":
		return cls(
			user_id=int(record["user_id"]),
			display_name=record.get("display_name"),
			bio=record.get("bio"),
			location_text=record.get("location_text"),
			source=source,
			match_score=match_score,
		)


@dataclass(slots=True, frozen=True)
class QuestionOption:
	id: int
	label: str
	value: str
	order: int = 0


@dataclass(slots=True)
class QuestionCandidate:
	id: int
	quiz_id: int
	prompt: str
	quiz_title: Optional[str] = None
	options: tuple[QuestionOption, ...] = ()
	order: int = 0
	presentation: Optional[Presentation] = None


@dataclass(slots=True)
class FeedDebugSummary:
	seed: Optional[float] = None
	post_ids: list[int] = field(default_factory=list)
	suggestion_user_ids: list[int] = field(default_factory=list)
	question_ids: list[int] = field(default_factory=list)
	post_duplicates: int = 0
	suggestion_duplicates: int = 0
	question_duplicates: int = 0
	cross_source_removed: int = 0
	window_hours: float = 24.0
	demoted_posts: int = 0
	demoted_suggestions: int = 0
	ranking: Optional[dict[str, Any]] = None

	def to_dict(self) -> dict[str, Any]:
		payload: dict[str, Any] = {
			"seed": self.seed,
			"candidates": {
				"postIds": [str(value) for value in self.post_ids],
				"suggestionUserIds": [str(value) for value in self.suggestion_user_ids],
				"questionIds": [str(value) for value in self.question_ids],
				"counts": {
					"posts": len(self.post_ids),
					"suggestions": len(self.suggestion_user_ids),
					"questions": len(self.question_ids),
				},
			},
			"dedupe": {
				"postDuplicates": self.post_duplicates,
				"suggestionDuplicates": self.suggestion_duplicates,
				"questionDuplicates": self.question_duplicates,
				"crossSourceRemoved": self.cross_source_removed,
			},
			"seen": {
				"windowHours": self.window_hours,
				"demotedPosts": self.demoted_posts,
				"demotedSuggestions": self.demoted_suggestions,
			},
		}
		if self.ranking is not None:
			payload["ranking"] = self.ranking
		return payload


@dataclass(slots=True)
class CandidateSet:
	posts: list[PostCandidate] = field(default_factory=list)
	suggestions: list[SuggestionCandidate] = field(default_factory=list)
	questions: list[QuestionCandidate] = field(default_factory=list)
	debug: Optional[FeedDebugSummary] = None


@dataclass(slots=True)
class FeedItem:
	"""A ranked card: exactly one of post, suggestion or question is set."""

	type: ItemType
	actor_id: int
	source: ItemSource
	tier: ItemTier = "everyone"
	post: Optional[PostCandidate] = None
	suggestion: Optional[SuggestionCandidate] = None
	question: Optional[QuestionCandidate] = None
	presentation: Optional[Presentation] = None

	@classmethod
	def for_post(cls, post: PostCandidate, tier: ItemTier = "everyone") -> "FeedItem":
		return cls(type="post", actor_id=post.user_id, source="post", tier=tier, post=post)

	@classmethod
	def for_suggestion(cls, suggestion: SuggestionCandidate) -> "FeedItem":
		source: ItemSource = "match" if suggestion.source == "match" else "suggested"
		return cls(type="suggestion", actor_id=suggestion.user_id, source=source, suggestion=suggestion)

	@classmethod
	def for_question(cls, question: QuestionCandidate) -> "FeedItem":
		return cls(type="question", actor_id=SYSTEM_ACTOR_ID, source="question", question=question)

	@property
	def item_id(self) -> Optional[int]:
		if self.type == "post" and self.post is not None:
			return self.post.id
		if self.type == "suggestion" and self.suggestion is not None:
			return self.suggestion.user_id
		if self.type == "question" and self.question is not None:
			return self.question.id
		return None

	@property
	def score(self) -> float:
		if self.post is not None:
			return self.post.score or 0.0
		if self.suggestion is not None:
			return self.suggestion.score or 0.0
		return 0.0

	@property
	def effective_presentation(self) -> Optional[Presentation]:
		if self.presentation is not None:
			return self.presentation
		for body in (self.post, self.suggestion, self.question):
			if body is not None:
				return body.presentation
		return None

	def with_presentation(self, presentation: Optional[Presentation]) -> "FeedItem":
		return replace(self, presentation=presentation)


@dataclass(slots=True)
class PresortedItem:
	"""Lightweight reference stored in a presorted segment."""

	type: ItemType
	id: int
	score: float
	actor_id: int
	source: ItemSource
	created_at_ms: int
	media_type: Optional[PostMediaType] = None
	presentation: Optional[Presentation] = None
	actor_name: Optional[str] = None
	actor_avatar_url: Optional[str] = None
	text_preview: Optional[str] = None

	def with_score(self, score: float) -> "PresortedItem":
		return replace(self, score=score)

	def to_dict(self) -> dict[str, Any]:
		return {
			"type": self.type,
			"id": str(self.id),
			"score": self.score,
			"actorId": str(self.actor_id),
			"source": self.source,
			"mediaType": self.media_type,
			"presentation": self.presentation.to_dict() if self.presentation else None,
			"createdAt": self.created_at_ms,
			"actorName": self.actor_name,
			"actorAvatarUrl": self.actor_avatar_url,
			"textPreview": self.text_preview,
		}

	@classmethod
	def from_dict(cls, data: Mapping[str, Any]) -> "PresortedItem":
		return cls(
			type=data["type"],
			id=int(data["id"]),
			score=float(data.get("score") or 0.0),
			actor_id=int(data["actorId"]),
			source=data.get("source") or "post",
			created_at_ms=int(data.get("createdAt") or 0),
			media_type=data.get("mediaType"),
			presentation=Presentation.from_dict(data.get("presentation")),
			actor_name=data.get("actorName"),
			actor_avatar_url=data.get("actorAvatarUrl"),
			text_preview=data.get("textPreview"),
		)


@dataclass(slots=True)
class PresortedSegment:
	user_id: int
	segment_index: int
	items: list[PresortedItem]
	phase1_json: Optional[str]
	computed_at: datetime
	algorithm_version: str
	expires_at: datetime
	id: Optional[int] = None

	def is_expired(self, now: datetime) -> bool:
		return self.expires_at <= now

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "PresortedSegment":
		raw_items = record.get("items") or []
		return cls(
			id=int(record["id"]) if record.get("id") is not None else None,
			user_id=int(record["user_id"]),
			segment_index=int(record["segment_index"]),
			items=[PresortedItem.from_dict(item) for item in raw_items if isinstance(item, Mapping)],
			phase1_json=record.get("phase1_json"),
			computed_at=record["computed_at"],
			algorithm_version=str(record["algorithm_version"]),
			expires_at=record["expires_at"],
		)


@dataclass(slots=True, frozen=True)
class SegmentValidation:
	status: SegmentStatus
	segment: Optional[PresortedSegment] = None

	@property
	def valid(self) -> bool:
		return self.status is SegmentStatus.VALID


@dataclass(slots=True, frozen=True)
class SeenItem:
	item_type: SeenItemType
	item_id: int


@dataclass(slots=True, frozen=True)
class RelationshipIds:
	following_ids: tuple[int, ...] = ()
	follower_ids: tuple[int, ...] = ()


__all__ = [
	"ItemType",
	"ItemSource",
	"ItemTier",
	"PostMediaType",
	"TIERS",
	"SYSTEM_ACTOR_ID",
	"SYSTEM_ACTOR_NAME",
	"SeenItemType",
	"SegmentStatus",
	"FeedViewerContext",
	"CursorCutoff",
	"Presentation",
	"PostCandidate",
	"SuggestionCandidate",
	"QuestionOption",
	"QuestionCandidate",
	"FeedDebugSummary",
	"CandidateSet",
	"FeedItem",
	"PresortedItem",
	"PresortedSegment",
	"SegmentValidation",
	"SeenItem",
	"RelationshipIds",
]
