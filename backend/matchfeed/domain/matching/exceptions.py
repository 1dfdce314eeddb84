"""Domain-level exceptions for compatibility scoring."""

from __future__ import annotations


class MatchingError(Exception):
	"""Base class for matching errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class InvalidCoordinates(MatchingError):
	reason = "invalid_coordinates"


class ViewerNotFound(MatchingError):
	reason = "viewer_not_found"


class InvalidWeights(MatchingError):
	reason = "invalid_weights"


class InvalidTarget(MatchingError):
	reason = "invalid_target"


__all__ = ["MatchingError", "InvalidCoordinates", "ViewerNotFound", "InvalidWeights", "InvalidTarget"]
