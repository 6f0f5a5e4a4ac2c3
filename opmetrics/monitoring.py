"""
Prometheus Metrics

Exposed by the API under /metrics.
"""

from prometheus_client import Counter, Histogram

CACHE_LOOKUPS = Counter(
    "opmetrics_snapshot_cache_lookups_total",
    "Snapshot cache lookups by outcome",
    ["result"],  # hit, stale, miss, bypass
)

DEGRADED_FETCHES = Counter(
    "opmetrics_degraded_fetches_total",
    "Components zeroed or served from fallback data",
    ["component"],
)

METRICS_COMPUTE_SECONDS = Histogram(
    "opmetrics_compute_seconds",
    "Time spent computing a metrics snapshot",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
