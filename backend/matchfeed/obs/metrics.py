"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"matchfeed_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"matchfeed_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

MATCH_CANDIDATES = Counter(
	"matchfeed_match_candidates_total",
	"Match-score candidates by outcome",
	["outcome"],
)

MATCH_ROWS_WRITTEN = Counter(
	"matchfeed_match_rows_written_total",
	"Match-score rows persisted",
)

MATCH_USER_DURATION = Histogram(
	"matchfeed_match_user_duration_seconds",
	"Time spent recomputing match scores for one viewer",
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

COMPATIBILITY_ROWS = Counter(
	"matchfeed_compatibility_rows_total",
	"Compatibility rows written by status",
	["status"],
)

FEED_REQUESTS = Counter(
	"matchfeed_feed_requests_total",
	"Feed requests by serving path",
	["path"],
)

FEED_RANK_DURATION = Histogram(
	"matchfeed_feed_rank_duration_ms",
	"Duration of feed ranking (ms)",
	buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500, 1000),
)

FEED_RANK_CANDIDATES = Histogram(
	"matchfeed_feed_rank_candidates",
	"Number of candidates considered by the feed ranker",
	buckets=(0, 5, 10, 25, 50, 100, 200, 400, 800),
)

FEED_ITEMS_EMITTED = Counter(
	"matchfeed_feed_items_total",
	"Feed items emitted by kind",
	["kind"],
)

PRESORT_READS = Counter(
	"matchfeed_presort_reads_total",
	"Presorted segment reads by validation outcome",
	["result"],
)

PRESORT_SEGMENTS_WRITTEN = Counter(
	"matchfeed_presort_segments_written_total",
	"Presorted feed segments stored",
)

PRESORT_SEGMENTS_INVALIDATED = Counter(
	"matchfeed_presort_segments_invalidated_total",
	"Presorted feed segments deleted by invalidation",
	["reason"],
)

PRESORT_CLEANUP = Counter(
	"matchfeed_presort_cleanup_total",
	"Expired presorted segments removed",
)

PRESORT_PHASE1_OVERSIZE = Counter(
	"matchfeed_presort_phase1_oversize_total",
	"Phase-1 payloads replaced because they exceeded the size cap",
)

PRESORT_USERS = Counter(
	"matchfeed_presort_users_total",
	"Presort job outcomes per user",
	["result"],
)

PRESORT_QUEUE_DEPTH = Gauge(
	"matchfeed_presort_queue_depth",
	"Pending background presort refresh requests",
)

SEEN_RECORDED = Counter(
	"matchfeed_feed_seen_recorded_total",
	"Feed seen markers upserted",
	["item_type"],
)

INVALIDATION_FAILURES = Counter(
	"matchfeed_invalidation_failures_total",
	"Fire-and-forget invalidation tasks that failed",
)

BACKGROUND_RUNS = Counter(
	"matchfeed_job_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"matchfeed_job_duration_seconds",
	"Background job duration",
	["name"],
	buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0),
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def inc_match_candidate(outcome: str, count: int = 1) -> None:
	if count:
		MATCH_CANDIDATES.labels(outcome=outcome).inc(count)


def inc_compatibility_row(status: str) -> None:
	COMPATIBILITY_ROWS.labels(status=status).inc()


def inc_feed_request(path: str) -> None:
	FEED_REQUESTS.labels(path=path).inc()


def inc_feed_item(kind: str) -> None:
	FEED_ITEMS_EMITTED.labels(kind=kind).inc()


def inc_presort_read(result: str) -> None:
	PRESORT_READS.labels(result=result).inc()


def inc_presort_invalidated(reason: str, count: int = 1) -> None:
	if count:
		PRESORT_SEGMENTS_INVALIDATED.labels(reason=reason).inc(count)


def inc_presort_user(result: str) -> None:
	PRESORT_USERS.labels(result=result).inc()


def inc_seen_recorded(item_type: str, count: int = 1) -> None:
	if count:
		SEEN_RECORDED.labels(item_type=item_type).inc(count)


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)
