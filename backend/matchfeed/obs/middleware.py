"""Request metrics, request ids and one access log line per request."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from matchfeed.obs import logging as obs_logging
from matchfeed.obs import metrics

REQUEST_ID_HEADER = "X-Request-Id"

# probes and scrapes are counted but not logged
_QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def route_template(request: Request) -> str:
	"""Matched route path (``/compatibility/{target_id}``) so metric labels stay bounded."""
	route = request.scope.get("route")
	path = getattr(route, "path", None)
	return path if path else request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app) -> None:
		super().__init__(app)
		self._log = obs_logging.get_logger("matchfeed.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
		token = obs_logging.bind_context(
			request_id=request_id,
			route=request.url.path,
			user_id=request.headers.get("X-User-Id"),
		)
		started = time.perf_counter()
		status_code = 500
		try:
			response = await call_next(request)
			status_code = response.status_code
		except Exception:
			self._log.exception("http.unhandled", extra={"method": request.method})
			raise
		finally:
			elapsed = time.perf_counter() - started
			route = route_template(request)
			metrics.observe_request(route, request.method, status_code, elapsed)
			if route not in _QUIET_PATHS:
				self._log.info(
					"http.request",
					extra={"method": request.method, "status": status_code, "latency_ms": round(elapsed * 1000, 3)},
				)
			obs_logging.reset_context(token)

		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response


def install(app: FastAPI) -> None:
	app.add_middleware(ObservabilityMiddleware)


__all__ = ["ObservabilityMiddleware", "install", "route_template"]
