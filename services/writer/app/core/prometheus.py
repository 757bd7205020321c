import threading
from datetime import datetime as dt
from datetime import timezone as tz

import structlog
from prometheus_client import Counter, Histogram, start_http_server

logger = structlog.get_logger()

# ── Prometheus metrics ────────────────────────────────────────────────────────
# Defined at module level → registered once on import → process-global singletons.

BATCHES_WRITTEN = Counter(
    "writer_batches_total",
    "Total batches handed to a write target, labelled by outcome.",
    ["target", "status"],  # "success" | "failure"
)

BATCH_LATENCY = Histogram(
    "writer_batch_duration_seconds",
    "Time from acquiring the connection lock to the last data row.",
    ["target"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

ROWS_WRITTEN = Counter(
    "writer_rows_written_total",
    "Data rows inserted.",
    ["target"],
)

SOURCES_SKIPPED = Counter(
    "writer_sources_skipped_total",
    "Data sources dropped because their identifier could not be resolved.",
    ["target"],
)

IDENTIFIER_CACHE = Counter(
    "writer_identifier_cache_total",
    "Identifier cache lookups, labelled by result.",
    ["target", "result"],  # "hit" | "miss"
)

IDENTIFIERS_CREATED = Counter(
    "writer_identifiers_created_total",
    "Identifier rows inserted by this process.",
    ["target"],
)


def start_prometheus_server(port: int) -> None:
    """Start the Prometheus scrape endpoint. Call once at startup."""
    start_http_server(port)
    logger.info("prometheus_server_started", port=port)


# ── In-memory tracker ─────────────────────────────────────────────────────────
# Dual-track: Prometheus for dashboards, in-memory for structured log summaries.


class BatchTracker:
    """
    Tracks per-run stats across all targets and logs a summary every 100
    batches. One instance lives for the lifetime of the writer process;
    writer threads call it concurrently.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._batches = 0
        self._failed = 0
        self._rows = 0
        self._skipped = 0
        self._latencies: list[float] = []
        self._started = dt.now(tz.utc)

    def record_success(
        self, target: str, rows: int, skipped: int, latency_ms: float
    ) -> None:
        BATCHES_WRITTEN.labels(target=target, status="success").inc()
        BATCH_LATENCY.labels(target=target).observe(latency_ms / 1000)
        ROWS_WRITTEN.labels(target=target).inc(rows)
        if skipped:
            SOURCES_SKIPPED.labels(target=target).inc(skipped)

        with self._lock:
            self._batches += 1
            self._rows += rows
            self._skipped += skipped
            self._latencies.append(latency_ms)
            if self._batches % 100 == 0:
                self._log_summary()

    def record_failure(self, target: str, rows: int = 0) -> None:
        BATCHES_WRITTEN.labels(target=target, status="failure").inc()
        if rows:
            ROWS_WRITTEN.labels(target=target).inc(rows)
        with self._lock:
            self._failed += 1
            self._rows += rows

    def record_cache(self, target: str, hit: bool) -> None:
        IDENTIFIER_CACHE.labels(target=target, result="hit" if hit else "miss").inc()

    def record_identifier_created(self, target: str) -> None:
        IDENTIFIERS_CREATED.labels(target=target).inc()

    def _log_summary(self) -> None:
        uptime = (dt.now(tz.utc) - self._started).total_seconds()
        avg_ms = sum(self._latencies) / len(self._latencies) if self._latencies else 0
        # Only the window since the last summary feeds the average.
        self._latencies.clear()

        logger.info(
            "writer_stats",
            batches=self._batches,
            failed=self._failed,
            rows=self._rows,
            skipped=self._skipped,
            rate_per_sec=round(self._batches / uptime, 2) if uptime else 0,
            avg_ms=round(avg_ms, 2),
            uptime_sec=round(uptime, 2),
        )


# Module-level singleton
tracker = BatchTracker()
