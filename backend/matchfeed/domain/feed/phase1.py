"""Phase-1 payloads: the two-card JSON served for the fast first paint."""

from __future__ import annotations

import json
import time
from typing import Any, Iterable, Optional, Sequence

from matchfeed.domain.feed.config import PHASE1_ITEM_COUNT, PHASE1_MAX_BYTES, TEXT_PREVIEW_CHARS
from matchfeed.domain.feed.exceptions import InvalidFeedItem
from matchfeed.domain.feed.models import (
	SYSTEM_ACTOR_ID,
	SYSTEM_ACTOR_NAME,
	FeedItem,
	Presentation,
	PresortedItem,
	SeenItem,
	SeenItemType,
)
from matchfeed.obs import metrics as obs_metrics

EMPTY_PHASE1_JSON = '{"items":[],"nextCursor":null}'

_KIND_BY_TYPE = {"post": "post", "suggestion": "profile", "question": "question"}


def _now_ms() -> int:
	return int(time.time() * 1000)


def _dumps(payload: Any) -> str:
	return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def text_preview(text: Optional[str], limit: int = TEXT_PREVIEW_CHARS) -> Optional[str]:
	if not text:
		return None
	return text[:limit] + "..." if len(text) > limit else text


def to_presorted_item(
	item: FeedItem,
	actor_name: Optional[str] = None,
	actor_avatar_url: Optional[str] = None,
	*,
	now_ms: Optional[int] = None,
) -> PresortedItem:
	"""Reduce a ranked item to the reference stored in a presorted segment."""
	now_ms = _now_ms() if now_ms is None else now_ms
	if item.type == "post" and item.post is not None:
		item_id = item.post.id
		created_at_ms = int(item.post.created_at.timestamp() * 1000)
		preview = text_preview(item.post.text)
		media_type = item.post.media_type
	elif item.type == "suggestion" and item.suggestion is not None:
		item_id = item.suggestion.user_id
		created_at_ms = now_ms
		preview = None
		media_type = None
	elif item.type == "question" and item.question is not None:
		item_id = item.question.id
		created_at_ms = now_ms
		preview = None
		media_type = None
	else:
		raise InvalidFeedItem(f"missing_{item.type}_body")
	return PresortedItem(
		type=item.type,
		id=item_id,
		score=item.score,
		actor_id=item.actor_id,
		source=item.source,
		created_at_ms=created_at_ms,
		media_type=media_type,
		presentation=item.effective_presentation,
		actor_name=actor_name,
		actor_avatar_url=actor_avatar_url,
		text_preview=preview,
	)


def _presentation_dict(presentation: Optional[Presentation]) -> Optional[dict[str, Any]]:
	return presentation.to_dict() if presentation is not None else None


def phase1_entry(item: PresortedItem) -> dict[str, Any]:
	fallback_name = SYSTEM_ACTOR_NAME if item.type == "question" else "User"
	return {
		"id": str(item.id),
		"kind": _KIND_BY_TYPE.get(item.type, "question"),
		"actor": {
			"id": str(item.actor_id),
			"name": item.actor_name or fallback_name,
			"avatarUrl": item.actor_avatar_url,
		},
		"textPreview": item.text_preview,
		"createdAt": item.created_at_ms,
		"presentation": _presentation_dict(item.presentation),
	}


def build_phase1_json(items: Sequence[PresortedItem], max_bytes: int = PHASE1_MAX_BYTES) -> str:
	"""Serialize the first cards; oversized payloads collapse to an empty page."""
	payload = {
		"items": [phase1_entry(item) for item in items[:PHASE1_ITEM_COUNT]],
		"nextCursor": str(items[PHASE1_ITEM_COUNT].id) if len(items) > PHASE1_ITEM_COUNT else None,
	}
	encoded = _dumps(payload)
	if len(encoded.encode("utf-8")) > max_bytes:
		obs_metrics.PRESORT_PHASE1_OVERSIZE.inc()
		return EMPTY_PHASE1_JSON
	return encoded


def phase1_from_feed_item(item: FeedItem, *, now_ms: Optional[int] = None) -> dict[str, Any]:
	"""Lite-mode card built from a hydrated item."""
	now_ms = _now_ms() if now_ms is None else now_ms
	presentation = _presentation_dict(item.effective_presentation)
	if item.type == "post" and item.post is not None:
		return {
			"id": str(item.post.id),
			"kind": "post",
			"actor": {"id": str(item.post.user_id), "name": item.post.display_name or "User", "avatarUrl": None},
			"textPreview": text_preview(item.post.text),
			"createdAt": int(item.post.created_at.timestamp() * 1000),
			"presentation": presentation,
		}
	if item.type == "suggestion" and item.suggestion is not None:
		return {
			"id": str(item.suggestion.user_id),
			"kind": "profile",
			"actor": {
				"id": str(item.suggestion.user_id),
				"name": item.suggestion.display_name or "User",
				"avatarUrl": None,
			},
			"textPreview": text_preview(item.suggestion.bio),
			"createdAt": now_ms,
			"presentation": presentation,
		}
	if item.type == "question" and item.question is not None:
		return {
			"id": str(item.question.id),
			"kind": "question",
			"actor": {"id": str(SYSTEM_ACTOR_ID), "name": SYSTEM_ACTOR_NAME, "avatarUrl": None},
			"textPreview": item.question.prompt or None,
			"createdAt": now_ms,
			"presentation": presentation or {"mode": "question", "accent": None},
		}
	raise InvalidFeedItem(f"missing_{item.type}_body")


def parse_phase1_json(raw: str) -> dict[str, Any]:
	parsed = json.loads(raw)
	if not isinstance(parsed, dict):
		return json.loads(EMPTY_PHASE1_JSON)
	return parsed


def seen_items_from_phase1(payload: dict[str, Any]) -> list[SeenItem]:
	seen: list[SeenItem] = []
	for entry in payload.get("items") or []:
		kind = entry.get("kind") if isinstance(entry, dict) else None
		try:
			item_id = int(entry["id"])
		except (KeyError, TypeError, ValueError):
			continue
		if kind == "post":
			seen.append(SeenItem(SeenItemType.POST, item_id))
		elif kind == "profile":
			seen.append(SeenItem(SeenItemType.SUGGESTION, item_id))
	return seen


def phase1_items(items: Iterable[FeedItem], limit: int) -> list[dict[str, Any]]:
	now_ms = _now_ms()
	return [phase1_from_feed_item(item, now_ms=now_ms) for item in list(items)[:limit]]


__all__ = [
	"EMPTY_PHASE1_JSON",
	"build_phase1_json",
	"parse_phase1_json",
	"phase1_entry",
	"phase1_from_feed_item",
	"phase1_items",
	"seen_items_from_phase1",
	"text_preview",
	"to_presorted_item",
]
