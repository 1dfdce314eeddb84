"""Feed and compatibility endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request

from matchfeed.domain.feed.context import build_feed_context
from matchfeed.domain.feed.service import FeedService
from matchfeed.domain.matching.compatibility import CompatibilityService
from matchfeed.domain.matching.exceptions import InvalidTarget
from matchfeed.infra.auth import Viewer, get_current_viewer, get_optional_viewer

router = APIRouter(tags=["feed"])

_feed_service: Optional[FeedService] = None
_compatibility_service: Optional[CompatibilityService] = None


def get_feed_service() -> FeedService:
	global _feed_service
	if _feed_service is None:
		_feed_service = FeedService()
	return _feed_service


def get_compatibility_service() -> CompatibilityService:
	global _compatibility_service
	if _compatibility_service is None:
		_compatibility_service = CompatibilityService()
	return _compatibility_service


async def drain_background_tasks() -> None:
	if _feed_service is not None:
		await _feed_service.relationships.drain()


@router.get("/feed", response_model=None)
async def get_feed(
	request: Request,
	viewer: Optional[Viewer] = Depends(get_optional_viewer),
	service: FeedService = Depends(get_feed_service),
):
	ctx = build_feed_context(viewer.id if viewer else None, request.query_params)
	# cached phase-1 payloads come back as plain dicts
	return await service.get_feed(ctx)


@router.get("/compatibility/{target_id}")
async def get_compatibility(
	target_id: int,
	viewer: Viewer = Depends(get_current_viewer),
	service: CompatibilityService = Depends(get_compatibility_service),
) -> dict[str, Any]:
	if target_id <= 0:
		raise InvalidTarget("invalid_target_id")
	summary = await service.summarize(viewer.id, target_id)
	return summary.to_dict()


__all__ = ["router", "get_feed_service", "get_compatibility_service", "drain_background_tasks"]
