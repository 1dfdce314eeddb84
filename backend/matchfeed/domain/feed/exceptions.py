"""Feed domain exceptions."""

from __future__ import annotations


class FeedError(Exception):
	"""Base class for feed errors."""

	reason: str = "feed_error"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class InvalidFeedRequest(FeedError):
	"""Raised when feed query parameters cannot be parsed."""

	reason = "invalid_request"


class InvalidFeedItem(FeedError):
	reason = "invalid_feed_item"


__all__ = ["FeedError", "InvalidFeedRequest", "InvalidFeedItem"]
