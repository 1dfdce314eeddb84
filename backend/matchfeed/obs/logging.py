"""JSON logs carrying the request or job they were emitted under.

Every record is one JSON object. Fields passed through ``extra=`` are kept
(truncated and with location data redacted), and the fields bound by
``bind_context`` are merged in, so a batch job's logs can be grepped by
``job`` and a request's by ``request_id``.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from matchfeed.settings import settings

_ROOT_LOGGER = "matchfeed"

# fields bound for the current request or job run
_BOUND: ContextVar[Mapping[str, str]] = ContextVar("matchfeed_log_context", default={})

_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}

# coordinates and free-text location never reach the logs
_REDACTED_SUFFIXES = ("lat", "lng", "latitude", "longitude", "location_text", "token", "password")

_MAX_TEXT = 256
_MAX_ITEMS = 20


def bind_context(**fields: Optional[str]) -> Token:
	"""Merge non-empty ``fields`` into the log context; pass the token to ``reset_context``."""
	merged = dict(_BOUND.get())
	merged.update({key: str(value) for key, value in fields.items() if value is not None})
	return _BOUND.set(merged)


def reset_context(token: Token) -> None:
	_BOUND.reset(token)


def current_context() -> Mapping[str, str]:
	return _BOUND.get()


def _is_redacted(key: str) -> bool:
	lowered = key.lower()
	return any(lowered == suffix or lowered.endswith(f"_{suffix}") for suffix in _REDACTED_SUFFIXES)


def _clip(value: Any) -> Any:
	if isinstance(value, str):
		return value if len(value) <= _MAX_TEXT else value[:_MAX_TEXT] + "..."
	if isinstance(value, Mapping):
		clipped = {}
		for key, nested in list(value.items())[:_MAX_ITEMS]:
			clipped[str(key)] = "[redacted]" if _is_redacted(str(key)) else _clip(nested)
		return clipped
	if isinstance(value, (list, tuple, set)):
		items = list(value)
		clipped_items = [_clip(item) for item in items[:_MAX_ITEMS]]
		if len(items) > _MAX_ITEMS:
			clipped_items.append(f"+{len(items) - _MAX_ITEMS} more")
		return clipped_items
	return value


class JSONLogFormatter(logging.Formatter):
	def format(self, record: logging.LogRecord) -> str:  # noqa: A003
		payload: dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"event": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
		}
		if settings.git_commit:
			payload["commit"] = settings.git_commit
		payload.update(current_context())
		for key, value in record.__dict__.items():
			if key in _STANDARD_ATTRS or key in payload:
				continue
			payload[key] = "[redacted]" if _is_redacted(key) else _clip(value)
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Sample info records from requests; job logs, warnings and errors always pass."""

	def __init__(self, rate: Optional[float] = None, rng=random.random) -> None:
		super().__init__()
		self.rate = settings.obs_log_sampling_rate_info if rate is None else rate
		self.rng = rng

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO or "job" in current_context():
			return True
		rate = max(0.0, min(1.0, self.rate))
		return rate >= 1.0 or self.rng() < rate


def configure_logging() -> logging.Logger:
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root = logging.getLogger()
	root.handlers[:] = [handler]
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_ROOT_LOGGER)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _ROOT_LOGGER)


__all__ = [
	"JSONLogFormatter",
	"InfoSamplingFilter",
	"bind_context",
	"reset_context",
	"current_context",
	"configure_logging",
	"get_logger",
]
