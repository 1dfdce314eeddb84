"""Pydantic schemas for the feed and compatibility endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class PresentationOut(BaseModel):
	mode: str
	accent: Optional[str] = None


class MediaOut(BaseModel):
	id: str
	type: str
	url: str
	thumb_url: Optional[str] = None


class PostStatsOut(BaseModel):
	like_count: int = 0
	comment_count: int = 0


class PostOut(BaseModel):
	id: str
	author_id: str
	author_display_name: Optional[str] = None
	text: Optional[str] = None
	created_at: datetime
	media_type: Literal["text", "image", "video", "mixed"] = "text"
	media: list[MediaOut] = Field(default_factory=list)
	stats: PostStatsOut = Field(default_factory=PostStatsOut)
	score: Optional[float] = None


class CompatibilityOut(BaseModel):
	status: Literal["READY", "INSUFFICIENT_DATA"]
	score: Optional[float] = None


class SuggestionOut(BaseModel):
	user_id: str
	display_name: Optional[str] = None
	bio: Optional[str] = None
	location_text: Optional[str] = None
	source: Literal["match", "suggested"] = "suggested"
	match_score: Optional[float] = None
	score: Optional[float] = None
	media: list[MediaOut] = Field(default_factory=list)
	rating_average: Optional[float] = None
	rating_count: int = 0
	compatibility: Optional[CompatibilityOut] = None


class QuestionOptionOut(BaseModel):
	id: str
	label: str
	value: str
	order: int = 0


class QuestionOut(BaseModel):
	id: str
	quiz_id: str
	prompt: str
	quiz_title: Optional[str] = None
	options: list[QuestionOptionOut] = Field(default_factory=list)


class FeedItemOut(BaseModel):
	type: Literal["post", "suggestion", "question"]
	actor_id: str
	source: Literal["post", "match", "suggested", "question"]
	tier: Literal["self", "following", "followers", "everyone"] = "everyone"
	presentation: Optional[PresentationOut] = None
	post: Optional[PostOut] = None
	suggestion: Optional[SuggestionOut] = None
	question: Optional[QuestionOut] = None


class FeedResponse(BaseModel):
	items: list[FeedItemOut] = Field(default_factory=list)
	next_cursor_id: Optional[str] = None
	has_more_posts: bool = False
	debug: Optional[dict[str, Any]] = None


class FeedLiteResponse(BaseModel):
	items: list[dict[str, Any]] = Field(default_factory=list)
	next_cursor_id: Optional[str] = None


__all__ = [
	"PresentationOut",
	"MediaOut",
	"PostStatsOut",
	"PostOut",
	"CompatibilityOut",
	"SuggestionOut",
	"QuestionOptionOut",
	"QuestionOut",
	"FeedItemOut",
	"FeedResponse",
	"FeedLiteResponse",
]
