"""Health and metrics endpoints."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from matchfeed.infra.postgres import get_pool
from matchfeed.infra.redis import redis_client

_LOG = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["ops"])


async def _redis_ok(timeout: float = 0.2) -> bool:
	try:
		await asyncio.wait_for(redis_client.ping(), timeout=timeout)
		return True
	except Exception:
		_LOG.warning("health.redis_unavailable", exc_info=True)
		return False


async def _postgres_ok(timeout: float = 0.3) -> bool:
	try:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await asyncio.wait_for(conn.execute("SELECT 1"), timeout=timeout)
		return True
	except Exception:
		_LOG.warning("health.postgres_unavailable", exc_info=True)
		return False


@router.get("/health")
async def health() -> dict[str, str]:
	return {"status": "ok"}


@router.get("/health/ready")
async def health_ready() -> Response:
	redis_ok, postgres_ok = await asyncio.gather(_redis_ok(), _postgres_ok())
	ok = redis_ok and postgres_ok
	payload = {"status": "ok" if ok else "degraded", "redis": redis_ok, "postgres": postgres_ok}
	return JSONResponse(content=payload, status_code=200 if ok else 503)


@router.get("/metrics")
async def prometheus_metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = ["router"]
