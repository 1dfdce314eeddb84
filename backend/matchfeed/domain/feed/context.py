"""Parse feed query parameters into a ``FeedViewerContext``."""

from __future__ import annotations

import math
from typing import Any, Mapping, Optional

from matchfeed.domain.feed.config import DEFAULT_TAKE, MAX_TAKE
from matchfeed.domain.feed.exceptions import InvalidFeedRequest
from matchfeed.domain.feed.models import FeedViewerContext

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_limit(raw: Any, default: int = DEFAULT_TAKE, maximum: int = MAX_TAKE) -> int:
	if raw is None or raw == "":
		return default
	try:
		value = int(str(raw).strip())
	except ValueError:
		raise InvalidFeedRequest("invalid_take")
	return max(1, min(maximum, value))


def parse_optional_positive_int(raw: Any, name: str) -> Optional[int]:
	if raw is None or raw == "":
		return None
	try:
		value = int(str(raw).strip())
	except ValueError:
		raise InvalidFeedRequest(f"invalid_{name}")
	if value <= 0:
		raise InvalidFeedRequest(f"invalid_{name}")
	return value


def parse_optional_bool(raw: Any, name: str) -> Optional[bool]:
	if raw is None or raw == "":
		return None
	if isinstance(raw, bool):
		return raw
	text = str(raw).strip().lower()
	if text in _TRUE_VALUES:
		return True
	if text in _FALSE_VALUES:
		return False
	raise InvalidFeedRequest(f"invalid_{name}")


def parse_optional_number(raw: Any, name: str) -> Optional[float]:
	if raw is None or raw == "":
		return None
	try:
		value = float(str(raw).strip())
	except ValueError:
		raise InvalidFeedRequest(f"invalid_{name}")
	if not math.isfinite(value):
		raise InvalidFeedRequest(f"invalid_{name}")
	return value


def build_feed_context(user_id: Optional[int], params: Mapping[str, Any]) -> FeedViewerContext:
	"""Validate query parameters; ``markSeen`` defaults to true for signed-in viewers."""
	mark_seen = parse_optional_bool(params.get("markSeen"), "markSeen")
	return FeedViewerContext(
		user_id=user_id,
		take=parse_limit(params.get("take")),
		cursor_id=parse_optional_positive_int(params.get("cursorId"), "cursorId"),
		debug=bool(parse_optional_bool(params.get("debug"), "debug")),
		seed=parse_optional_number(params.get("seed"), "seed"),
		mark_seen=mark_seen if mark_seen is not None else user_id is not None,
		lite=bool(parse_optional_bool(params.get("lite"), "lite")),
	)


__all__ = [
	"build_feed_context",
	"parse_limit",
	"parse_optional_positive_int",
	"parse_optional_bool",
	"parse_optional_number",
]
