import pytest

from matchfeed.domain.feed.exceptions import InvalidFeedItem
from matchfeed.domain.feed.schemas import FeedItemOut, FeedResponse, PostOut
from matchfeed.domain.matching.models import CompatibilityStatus, CompatibilitySummary
from matchfeed.obs import metrics


class _StubFeedService:
	def __init__(self, result=None, error=None) -> None:
		self.result = result if result is not None else FeedResponse()
		self.error = error
		self.contexts = []

	async def get_feed(self, ctx):
		self.contexts.append(ctx)
		if self.error is not None:
			raise self.error
		return self.result


class _StubCompatibilityService:
	def __init__(self) -> None:
		self.calls = []

	async def summarize(self, viewer_id, target_id):
		self.calls.append((viewer_id, target_id))
		return CompatibilitySummary(status=CompatibilityStatus.READY, score=0.82)


@pytest.mark.asyncio
async def test_health(api_client):
	response = await api_client.get("/health")
	assert response.status_code == 200
	assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_health_ready_reports_missing_postgres(api_client):
	response = await api_client.get("/health/ready")
	assert response.status_code == 503
	assert response.json() == {"status": "degraded", "redis": True, "postgres": False}


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_counters(api_client):
	await api_client.get("/health")
	response = await api_client.get("/metrics")
	assert response.status_code == 200
	assert response.headers["content-type"].startswith("text/plain")
	assert "matchfeed_http_requests_total" in response.text


@pytest.mark.asyncio
async def test_feed_passes_viewer_and_params(api_client, override_feed_service):
	post = PostOut(id="4", author_id="9", created_at="2025-03-01T12:00:00Z")
	service = override_feed_service(
		_StubFeedService(
			FeedResponse(
				items=[FeedItemOut(type="post", actor_id="9", source="post", post=post)],
				next_cursor_id="4",
				has_more_posts=True,
			)
		)
	)

	response = await api_client.get("/feed", params={"take": "3", "seed": "11"}, headers={"X-User-Id": "7"})

	assert response.status_code == 200
	body = response.json()
	assert body["next_cursor_id"] == "4"
	assert body["has_more_posts"] is True
	assert body["items"][0]["post"]["author_id"] == "9"
	ctx = service.contexts[0]
	assert ctx.user_id == 7
	assert ctx.take == 3
	assert ctx.seed == 11.0
	assert ctx.mark_seen is True


@pytest.mark.asyncio
async def test_feed_allows_anonymous_viewers(api_client, override_feed_service):
	service = override_feed_service(_StubFeedService())

	response = await api_client.get("/feed")

	assert response.status_code == 200
	assert response.json()["items"] == []
	assert service.contexts[0].user_id is None
	assert service.contexts[0].mark_seen is False


@pytest.mark.asyncio
async def test_feed_returns_cached_phase1_payload_verbatim(api_client, override_feed_service):
	payload = {"items": [{"id": "1", "kind": "post"}], "nextCursor": None}
	override_feed_service(_StubFeedService(payload))

	response = await api_client.get("/feed", params={"lite": "1"}, headers={"X-User-Id": "7"})

	assert response.status_code == 200
	assert response.json() == payload


@pytest.mark.asyncio
@pytest.mark.parametrize(
	"params, detail",
	[
		({"take": "lots"}, "invalid_take"),
		({"cursorId": "0"}, "invalid_cursorId"),
		({"lite": "sometimes"}, "invalid_lite"),
	],
)
async def test_feed_rejects_bad_query(api_client, override_feed_service, params, detail):
	service = override_feed_service(_StubFeedService())

	response = await api_client.get("/feed", params=params, headers={"X-Request-Id": "req-1"})

	assert response.status_code == 400
	assert response.json() == {"detail": detail, "request_id": "req-1"}
	assert service.contexts == []


@pytest.mark.asyncio
async def test_feed_rejects_malformed_user_header(api_client, override_feed_service):
	override_feed_service(_StubFeedService())
	response = await api_client.get("/feed", headers={"X-User-Id": "abc"})
	assert response.status_code == 401
	assert response.json()["detail"] == "invalid_user_id"


@pytest.mark.asyncio
async def test_feed_domain_errors_map_to_503(api_client, override_feed_service):
	override_feed_service(_StubFeedService(error=InvalidFeedItem("missing_post_body")))
	response = await api_client.get("/feed", headers={"X-User-Id": "7"})
	assert response.status_code == 503
	assert response.json()["detail"] == "missing_post_body"


@pytest.mark.asyncio
async def test_feed_request_is_counted(api_client, override_feed_service):
	override_feed_service(_StubFeedService())
	before = metrics.REQUEST_COUNTER.labels(route="/feed", method="GET", status="200")._value.get()

	response = await api_client.get("/feed")

	after = metrics.REQUEST_COUNTER.labels(route="/feed", method="GET", status="200")._value.get()
	assert after == before + 1
	assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_compatibility_requires_viewer(api_client, override_compatibility_service):
	override_compatibility_service(_StubCompatibilityService())
	response = await api_client.get("/compatibility/5")
	assert response.status_code == 401
	assert response.json()["detail"] == "missing_user"


@pytest.mark.asyncio
async def test_compatibility_returns_summary(api_client, override_compatibility_service):
	service = override_compatibility_service(_StubCompatibilityService())

	response = await api_client.get("/compatibility/5", headers={"X-User-Id": "7"})

	assert response.status_code == 200
	assert response.json() == {"status": "READY", "score": 0.82}
	assert service.calls == [(7, 5)]


@pytest.mark.asyncio
async def test_compatibility_rejects_non_positive_target(api_client, override_compatibility_service):
	service = override_compatibility_service(_StubCompatibilityService())

	response = await api_client.get("/compatibility/0", headers={"X-User-Id": "7"})

	assert response.status_code == 400
	assert response.json()["detail"] == "invalid_target_id"
	assert service.calls == []
