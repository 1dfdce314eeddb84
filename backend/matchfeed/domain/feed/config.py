"""Sequence-first feed configuration.

The slot sequence decides the order of cards in a response; the caps only
guard against degenerate output. Bump ``FEED_CONFIG_VERSION`` whenever the
sequence or the weights change so presorted segments are rebuilt.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Literal, Optional

SlotKind = Literal["post", "suggestion", "question", "grid"]
MediaFilter = Literal["video", "image", "text", "mixed", "any"]
SuggestionSource = Literal["match", "suggested"]
SlotPresentation = Literal["single", "mosaic", "grid", "highlight"]

FEED_CONFIG_VERSION = "v9"


@dataclass(slots=True, frozen=True)
class FeedSlot:
	kind: SlotKind
	count: int = 1
	media_type: Optional[MediaFilter] = None
	source: Optional[SuggestionSource] = None
	presentation: Optional[SlotPresentation] = None
	# grid slots only
	size: int = 0
	min_size: int = 0
	strict: bool = False
	of: Optional[Literal["post", "suggestion", "question"]] = None
	distinct_actors: bool = False


@dataclass(slots=True, frozen=True)
class FeedCaps:
	max_items_per_response: int = 5
	max_per_actor: int = 3


@dataclass(slots=True, frozen=True)
class FeedWeights:
	recency: float = 0.6
	affinity: float = 0.3
	quality: float = 0.1
	seen_penalty: float = 0.2


@dataclass(slots=True, frozen=True)
class FeedConfig:
	sequence: tuple[FeedSlot, ...]
	caps: FeedCaps = field(default_factory=FeedCaps)
	seen_window_hours: float = 24.0
	weights: FeedWeights = field(default_factory=FeedWeights)

	def with_max_items(self, max_items: int) -> "FeedConfig":
		return replace(self, caps=replace(self.caps, max_items_per_response=max_items))


FEED_SEQUENCE: tuple[FeedSlot, ...] = (
	FeedSlot(kind="post", media_type="any", presentation="highlight"),
	FeedSlot(kind="suggestion", count=3, presentation="single"),
	FeedSlot(
		kind="grid",
		size=3,
		min_size=3,
		strict=False,
		of="suggestion",
		media_type="any",
		distinct_actors=True,
		presentation="grid",
	),
	FeedSlot(kind="post", media_type="any", presentation="grid"),
	FeedSlot(kind="post", media_type="any", presentation="mosaic"),
	FeedSlot(kind="question"),
	FeedSlot(kind="post", media_type="any", presentation="single"),
)

FEED_CONFIG = FeedConfig(sequence=FEED_SEQUENCE)


@dataclass(slots=True, frozen=True)
class PostCaps:
	max_items: int = 50
	max_lookback_days: int = 30
	self_max_items: int = 5
	following_max_items: int = 20
	followers_max_items: int = 20


@dataclass(slots=True, frozen=True)
class SuggestionCaps:
	max_items: int = 30
	max_match_items: int = 10
	fresh_score_hours: int = 24


@dataclass(slots=True, frozen=True)
class QuestionCaps:
	max_items: int = 5


@dataclass(slots=True, frozen=True)
class CandidateCaps:
	posts: PostCaps = field(default_factory=PostCaps)
	suggestions: SuggestionCaps = field(default_factory=SuggestionCaps)
	questions: QuestionCaps = field(default_factory=QuestionCaps)


FEED_CANDIDATE_CAPS = CandidateCaps()

DEFAULT_TAKE = 20
MAX_TAKE = 50
LITE_TAKE = 2
SUGGESTION_MEDIA_LIMIT = 6

PRESORT_MIN_SEGMENT_ITEMS = 5
PHASE1_MAX_BYTES = 8 * 1024
PHASE1_ITEM_COUNT = 2
TEXT_PREVIEW_CHARS = 150
SEEN_CHECK_TOP_N = 3


__all__ = [
	"FEED_CONFIG_VERSION",
	"FeedSlot",
	"FeedCaps",
	"FeedWeights",
	"FeedConfig",
	"FEED_SEQUENCE",
	"FEED_CONFIG",
	"PostCaps",
	"SuggestionCaps",
	"QuestionCaps",
	"CandidateCaps",
	"FEED_CANDIDATE_CAPS",
	"DEFAULT_TAKE",
	"MAX_TAKE",
	"LITE_TAKE",
	"SUGGESTION_MEDIA_LIMIT",
	"PRESORT_MIN_SEGMENT_ITEMS",
	"PHASE1_MAX_BYTES",
	"PHASE1_ITEM_COUNT",
	"TEXT_PREVIEW_CHARS",
	"SEEN_CHECK_TOP_N",
]
