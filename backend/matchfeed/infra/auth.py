"""Viewer identity for FastAPI endpoints.

Authentication happens upstream; requests reach this service with the
authenticated user id in the ``X-User-Id`` header. Anonymous requests are
allowed on the feed and get a non-personalised ranking.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status


@dataclass(slots=True)
class Viewer:
	id: int


def _parse_user_id(raw: Optional[str]) -> Optional[int]:
	if raw is None:
		return None
	text = raw.strip()
	if not text:
		return None
	try:
		value = int(text)
	except ValueError:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_user_id")
	if value <= 0:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_user_id")
	return value


async def get_optional_viewer(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Optional[Viewer]:
	user_id = _parse_user_id(x_user_id)
	return Viewer(id=user_id) if user_id is not None else None


async def get_current_viewer(viewer: Optional[Viewer] = Depends(get_optional_viewer)) -> Viewer:
	if viewer is None:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_user")
	return viewer


__all__ = ["Viewer", "get_optional_viewer", "get_current_viewer"]
