"""Bounded min-heap keeping the K highest-scoring entries."""

from __future__ import annotations

from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


def _default_score(item) -> float:
	return float(item.score)


class TopKHeap(Generic[T]):
	"""Min-heap with the weakest retained entry at the root.

	Once full, a new entry replaces the root only when it scores strictly
	higher, so ties keep the earlier entry.
	"""

	def __init__(self, capacity: int, *, key: Callable[[T], float] = _default_score) -> None:
		self.capacity = max(0, int(capacity))
		self._key = key
		self._items: list[T] = []

	def __len__(self) -> int:
		return len(self._items)

	@property
	def size(self) -> int:
		return len(self._items)

	@property
	def is_full(self) -> bool:
		return len(self._items) >= self.capacity

	def peek(self) -> Optional[T]:
		return self._items[0] if self._items else None

	@property
	def threshold(self) -> float:
		root = self.peek()
		return self._key(root) if root is not None else float("-inf")

	def push(self, item: T) -> bool:
		"""Insert ``item``; returns whether it was retained."""
		if self.capacity == 0:
			return False
		if len(self._items) < self.capacity:
			self._items.append(item)
			self._sift_up(len(self._items) - 1)
			return True
		if self._key(item) > self._key(self._items[0]):
			self._items[0] = item
			self._sift_down(0)
			return True
		return False

	def to_list(self) -> list[T]:
		return sorted(self._items, key=self._key, reverse=True)

	def _sift_up(self, index: int) -> None:
		items, key = self._items, self._key
		while index > 0:
			parent = (index - 1) // 2
			if key(items[parent]) <= key(items[index]):
				break
			items[parent], items[index] = items[index], items[parent]
			index = parent

	def _sift_down(self, index: int) -> None:
		items, key = self._items, self._key
		length = len(items)
		while True:
			left = 2 * index + 1
			right = left + 1
			smallest = index
			if left < length and key(items[left]) < key(items[smallest]):
				smallest = left
			if right < length and key(items[right]) < key(items[smallest]):
				smallest = right
			if smallest == index:
				return
			items[index], items[smallest] = items[smallest], items[index]
			index = smallest


__all__ = ["TopKHeap"]
