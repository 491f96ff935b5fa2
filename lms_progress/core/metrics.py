"""Prometheus metric inventory for the progress service.

Every metric lives here so there is one place to look when building a
dashboard.  Modules import the metric they own and increment it at the
point of action.

The reliability layer is judged by three questions, and each maps to a
metric family below:

  "Are learners' completions landing?"
      completion_attempts_total, completion_retries_total,
      retry_queue_depth

  "Are we losing anything?"
      completion_retries_total{outcome="exhausted"},
      attempt_log_pruned_total

  "Do the rollups agree with the unit rows?"
      progress_inconsistent_pairs, progress_repaired_records_total
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
# Completion path
# ---------------------------------------------------------------------------

COMPLETION_ATTEMPTS = Counter(
    "completion_attempts_total",
    "First-try completion writes by kind and result",
    ["kind", "result"],  # result: succeeded|queued|rejected
)

COMPLETION_RETRIES = Counter(
    "completion_retries_total",
    "Retry executions by kind and outcome",
    ["kind", "outcome"],  # outcome: succeeded|rescheduled|exhausted
)

RETRY_QUEUE_DEPTH = Gauge(
    "retry_queue_depth",
    "Completion attempts currently scheduled for retry (all sessions)",
)

RETRY_DELAY = Histogram(
    "retry_delay_seconds",
    "Computed backoff delay before each retry",
    buckets=[0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 31.0],
)

ATTEMPT_LOG_PRUNED = Counter(
    "attempt_log_pruned_total",
    "Durable attempt-log entries escalated to needs-support by pruning",
    ["reason"],  # age|overflow
)

# ---------------------------------------------------------------------------
# Rollups and integrity
# ---------------------------------------------------------------------------

PROGRESS_RECALCULATIONS = Counter(
    "progress_recalculations_total",
    "Course progress re-derivations",
    ["mode"],  # single|batch
)

INCONSISTENT_PAIRS = Gauge(
    "progress_inconsistent_pairs",
    "(user, course) pairs whose rollup disagreed with unit rows at last scan",
)

REPAIRED_RECORDS = Counter(
    "progress_repaired_records_total",
    "Course progress rows overwritten by an integrity repair",
)

BULK_ROWS = Counter(
    "bulk_rows_total",
    "Rows processed by admin bulk operations",
    ["operation", "result"],  # result: processed|failed
)

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Cache get operations by result",
    ["operation"],  # "hit" or "miss"
)
