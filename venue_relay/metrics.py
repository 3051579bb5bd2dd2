"""
Prometheus metrics for the relay (default registry, scraped at GET /metrics).
"""
from prometheus_client import Counter, Gauge, Histogram

OUTBOUND_SEND_SUCCESS = Counter(
    "outbound_send_success", "Outbox messages accepted by the Bot API"
)
OUTBOUND_SEND_RETRY = Counter(
    "outbound_send_retry", "Outbox messages rescheduled for another attempt"
)
OUTBOUND_SEND_FAILED = Counter(
    "outbound_send_failed", "Outbox messages moved to FAILED"
)
OUTBOUND_429 = Counter(
    "outbound_429", "Bot API answers with error code 429"
)

INBOUND_PROCESSED = Counter(
    "inbound_processed", "Inbound updates moved to PROCESSED"
)
INBOUND_RETRY = Counter(
    "inbound_retry", "Inbound updates rescheduled for another attempt"
)
INBOUND_DEAD = Counter(
    "inbound_dead", "Inbound updates moved to DEAD"
)

QUEUE_DEPTH = Gauge(
    "relay_queue_depth", "Rows waiting for a final outcome", ["queue"]
)

INBOUND_PROCESSING_LAG = Histogram(
    "inbound_processing_lag_seconds",
    "Time from receiving an update to its final outcome",
    buckets=(0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 300, 900),
)
