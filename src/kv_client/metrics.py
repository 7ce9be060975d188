"""
Client-side Prometheus metrics.

Collectors live in the global prometheus_client REGISTRY; expose them from the
host application's /metrics endpoint as usual.
"""

from prometheus_client import Counter, Histogram

KV_REQUEST_LATENCY_MS = Histogram(
    "kv_client_request_latency_ms",
    "Latency of KeyVal HTTP requests in milliseconds",
    ["operation"],
    buckets=[1, 2.5, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000],
)

KV_COMMITS_TOTAL = Counter(
    "kv_client_commits_total",
    "Atomic commits by outcome",
    ["outcome"],  # ok | conflict
)

KV_TRANSACTION_ATTEMPTS_TOTAL = Counter(
    "kv_client_transaction_attempts_total",
    "Transaction attempts by outcome",
    ["outcome"],  # committed | conflict | error
)

KV_FEED_RECONNECTS_TOTAL = Counter(
    "kv_client_feed_reconnects_total",
    "Watch / queue transport failures followed by a reconnect",
    ["feed", "mode"],
)

KV_WATCH_DROPPED_TOTAL = Counter(
    "kv_client_watch_dropped_total",
    "Watch changes dropped by the backpressure buffer",
    ["strategy"],
)

KV_QUEUE_MESSAGES_TOTAL = Counter(
    "kv_client_queue_messages_total",
    "Queue messages handled by listeners",
    ["outcome"],  # acked | nacked | manual
)


class MetricsRegistry:
    """Structured access to the client's metrics."""

    request_latency_ms = KV_REQUEST_LATENCY_MS
    commits_total = KV_COMMITS_TOTAL
    transaction_attempts_total = KV_TRANSACTION_ATTEMPTS_TOTAL
    feed_reconnects_total = KV_FEED_RECONNECTS_TOTAL
    watch_dropped_total = KV_WATCH_DROPPED_TOTAL
    queue_messages_total = KV_QUEUE_MESSAGES_TOTAL


# Singleton instance
metrics_registry = MetricsRegistry()
