"""Cursor-driven batch iteration with cooperative pauses."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence, TypeVar

T = TypeVar("T")
C = TypeVar("C")

Delay = Callable[[float], Awaitable[None]]
FetchPage = Callable[[Optional[C], int], Awaitable[Sequence[T]]]


async def pause(delay: Delay, pause_ms: int) -> None:
	if pause_ms > 0:
		await delay(pause_ms / 1000.0)


async def iterate_batches(
	fetch_page: FetchPage,
	*,
	cursor_of: Callable[[T], C],
	batch_size: int,
	pause_ms: int = 0,
	delay: Delay = asyncio.sleep,
) -> AsyncIterator[Sequence[T]]:
	"""Yield keyset pages until a short page, pausing between pages.

	The pause runs after the consumer has processed a page, so a slow
	consumer never overlaps with the next fetch.
	"""
	if batch_size <= 0:
		raise ValueError("batch_size must be positive")
	cursor: Optional[C] = None
	while True:
		page = await fetch_page(cursor, batch_size)
		if not page:
			return
		yield page
		if len(page) < batch_size:
			return
		cursor = cursor_of(page[-1])
		await pause(delay, pause_ms)


__all__ = ["Delay", "pause", "iterate_batches"]
