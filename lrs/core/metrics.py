"""Application metrics using the Prometheus client library.

All metrics live here so there is one inventory of what the service
measures.  Modules import the metric they own and increment/observe it
at the point of action; ``GET /metrics`` exposes the lot.

COUNTERS only go up (requests served, statements appended).  GAUGES go
up and down (in-flight requests, queue depth).  HISTOGRAMS bucket
observations so Prometheus can compute percentiles:

    histogram_quantile(0.95, rate(progress_derivation_duration_seconds_bucket[5m]))
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Record store metrics
# ---------------------------------------------------------------------------

STATEMENTS_APPENDED = Counter(
    "lrs_statements_appended_total",
    "Statements written to the statement store",
)

STATEMENT_PARTITION_FAILURES = Counter(
    "lrs_statement_partition_failures_total",
    "Candidate partitions skipped because the scan failed",
)

STORE_RETRIES = Counter(
    "lrs_store_retries_total",
    "Storage operation failures seen by the retry executor",
    ["outcome"],  # "retried", "exhausted", "permanent"
)

STATE_OPERATIONS = Counter(
    "lrs_state_operations_total",
    "Resumable state operations by kind and result",
    ["operation", "result"],  # get/save/delete, hit/miss/ok
)

# ---------------------------------------------------------------------------
# Progress derivation
# ---------------------------------------------------------------------------

PROGRESS_DERIVATIONS = Counter(
    "lrs_progress_derivations_total",
    "Progress derivation runs by outcome",
    ["outcome"],  # "updated", "no_data", "failed", "throttled", "scheduled"
)

PROGRESS_DERIVATION_DURATION = Histogram(
    "lrs_progress_derivation_duration_seconds",
    "Time spent replaying statements into a progress record",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

UNKNOWN_VERBS = Counter(
    "lrs_unknown_verbs_total",
    "Statements whose verb matched no table entry or keyword",
)

# ---------------------------------------------------------------------------
# Supporting services
# ---------------------------------------------------------------------------

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Cache get operations by result",
    ["operation"],  # "hit" or "miss"
)

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],
)
