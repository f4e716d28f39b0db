"""Monitoring configuration for the learning engine."""
from prometheus_client import Counter, Histogram, start_http_server

# Learning metrics
lookups_recorded = Counter(
    "vocabsync_lookups_total",
    "Total number of word lookups recorded",
)

flashcard_reviews = Counter(
    "vocabsync_flashcard_reviews_total",
    "Total number of flashcard reviews",
    ["result"],
)

review_words_advanced = Counter(
    "vocabsync_review_words_advanced_total",
    "Total number of immersive review words advanced",
    ["state"],
)

# Local store metrics
store_operations = Counter(
    "vocabsync_store_operations_total",
    "Total number of local store operations",
    ["operation_type"],
)

coalescer_flushes = Counter(
    "vocabsync_coalescer_flushes_total",
    "Total number of coalescing window flush passes",
    ["window"],
)

# Sync metrics
sync_runs = Counter(
    "vocabsync_sync_runs_total",
    "Total number of collection sync runs",
    ["collection", "mode"],
)

records_merged = Counter(
    "vocabsync_records_merged_total",
    "Total number of remote records adopted locally",
    ["collection"],
)

records_uploaded = Counter(
    "vocabsync_records_uploaded_total",
    "Total number of local records pushed to the remote store",
    ["collection"],
)

sync_duration = Histogram(
    "vocabsync_sync_duration_seconds",
    "Duration of a full sync cycle in seconds",
    buckets=[0.1, 0.5, 1.0, 5.0, 30.0],
)

# Error metrics
error_count = Counter(
    "vocabsync_errors_total",
    "Total number of errors encountered",
    ["error_type"],
)


def start_monitoring(port: int = 9090) -> None:
    """Start the Prometheus metrics server."""
    start_http_server(port)
