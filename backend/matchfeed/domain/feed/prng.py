"""Seeded pseudo-random helpers.

``mulberry32`` reproduces the 32-bit arithmetic of the JavaScript
generator bit for bit, so a given seed yields the same sequence the web
client computes.
"""

from __future__ import annotations

import random
from typing import Callable, MutableSequence, Optional, TypeVar

T = TypeVar("T")

_MASK = 0xFFFFFFFF
_INCREMENT = 0x6D2B79F5
_TWO_32 = 4294967296.0

RandomSource = Callable[[], float]


def _imul(a: int, b: int) -> int:
	return (a * b) & _MASK


def mulberry32(seed: int) -> RandomSource:
	"""Return a generator of floats in [0, 1) for the given integer seed."""
	state = int(seed) & _MASK

	def next_value() -> float:
		nonlocal state
		state = (state + _INCREMENT) & _MASK
		t = state
		t = _imul(t ^ (t >> 15), t | 1)
		t ^= (t + _imul(t ^ (t >> 7), t | 61)) & _MASK
		return ((t ^ (t >> 14)) & _MASK) / _TWO_32

	return next_value


def random_source(seed: Optional[int]) -> RandomSource:
	return mulberry32(seed) if seed is not None else random.random


def shuffle_in_place(items: MutableSequence[T], rng: RandomSource) -> MutableSequence[T]:
	"""Fisher-Yates shuffle drawing one value per position from ``rng``."""
	for i in range(len(items) - 1, 0, -1):
		j = int(rng() * (i + 1))
		items[i], items[j] = items[j], items[i]
	return items


__all__ = ["RandomSource", "mulberry32", "random_source", "shuffle_in_place"]
