"""Matching domain exports."""

from .compatibility import CompatibilityService  # noqa: F401
from .engine import passes_gates, score_candidate, upper_bound  # noqa: F401
from .heap import TopKHeap  # noqa: F401
from .models import CompatibilityStatus, CompatibilitySummary, MatchScoreRow, Tier  # noqa: F401
