"""Exception handlers mapping domain errors to JSON responses."""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from matchfeed.domain.feed.exceptions import FeedError, InvalidFeedRequest
from matchfeed.domain.matching.exceptions import MatchingError


def _request_id(request: Request) -> str | None:
	return request.headers.get("X-Request-Id")


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		payload = {"detail": exc.detail, "request_id": _request_id(request)}
		return JSONResponse(status_code=exc.status_code, content=payload)

	@app.exception_handler(InvalidFeedRequest)
	async def invalid_feed_request_handler(request: Request, exc: InvalidFeedRequest):  # type: ignore[override]
		payload = {"detail": exc.reason, "request_id": _request_id(request)}
		return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=payload)

	@app.exception_handler(FeedError)
	async def feed_error_handler(request: Request, exc: FeedError):  # type: ignore[override]
		payload = {"detail": exc.reason, "request_id": _request_id(request)}
		return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)

	@app.exception_handler(MatchingError)
	async def matching_error_handler(request: Request, exc: MatchingError):  # type: ignore[override]
		payload = {"detail": exc.reason, "request_id": _request_id(request)}
		return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=payload)


__all__ = ["install_error_handlers"]
