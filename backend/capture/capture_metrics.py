"""
Capture Metrics: Prometheus-compatible observability.

All metrics use the `capture_` namespace prefix.

Tracks:
- capture_ingest_total{outcome}: accepted | rejected | failed
- capture_ingest_duration_seconds: end-to-end ingest duration (accepted only)
- capture_persist_failure_total{sink,retryable}: durable write failures
- capture_query_total{outcome}: hit | miss
- capture_sessions: known session keys in the in-memory index
- capture_api_request_total{endpoint,method,status_class}: HTTP request count
- capture_api_request_duration_seconds{endpoint}: HTTP request duration
"""

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)

INGEST_OUTCOMES = ("accepted", "rejected", "failed")
QUERY_OUTCOMES = ("hit", "miss")


class CaptureMetrics:
    """
    Prometheus metrics for the capture data path.

    Thread-safe via prometheus_client built-in thread safety.
    Uses an instance-level CollectorRegistry so each app/test gets its own.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self._registry = registry or CollectorRegistry()
        self._init_metrics()

    def _init_metrics(self) -> None:
        """Register all prometheus metrics on the current registry."""
        # ── Core data path ────────────────────────────────────────────────
        self._ingest_total = Counter(
            "capture_ingest_total",
            "Ingestion outcomes",
            labelnames=["outcome"],
            registry=self._registry,
        )
        self._ingest_duration = Histogram(
            "capture_ingest_duration_seconds",
            "Accepted ingestion duration (validate + persist + index)",
            registry=self._registry,
        )
        self._persist_failure_total = Counter(
            "capture_persist_failure_total",
            "Durable write failures",
            labelnames=["sink", "retryable"],
            registry=self._registry,
        )
        self._query_total = Counter(
            "capture_query_total",
            "Session query outcomes",
            labelnames=["outcome"],
            registry=self._registry,
        )
        self._sessions = Gauge(
            "capture_sessions",
            "Known session keys in the in-memory index",
            registry=self._registry,
        )

        # ── HTTP surface ──────────────────────────────────────────────────
        self._api_request_total = Counter(
            "capture_api_request_total",
            "HTTP request count",
            labelnames=["endpoint", "method", "status_class"],
            registry=self._registry,
        )
        self._api_request_duration = Histogram(
            "capture_api_request_duration_seconds",
            "HTTP request duration",
            labelnames=["endpoint"],
            registry=self._registry,
        )

    # ── ingest ────────────────────────────────────────────────────────────

    def inc_ingest(self, outcome: str) -> None:
        """outcome: 'accepted' | 'rejected' | 'failed'."""
        if outcome not in INGEST_OUTCOMES:
            logger.warning(f"[METRICS] Invalid ingest outcome: {outcome}")
            return
        self._ingest_total.labels(outcome=outcome).inc()

    def observe_ingest_duration(self, duration: float) -> None:
        self._ingest_duration.observe(duration)

    def inc_persist_failure(self, sink: str, retryable: bool) -> None:
        self._persist_failure_total.labels(
            sink=sink, retryable="true" if retryable else "false"
        ).inc()

    # ── query ─────────────────────────────────────────────────────────────

    def inc_query(self, outcome: str) -> None:
        """outcome: 'hit' | 'miss'."""
        if outcome not in QUERY_OUTCOMES:
            logger.warning(f"[METRICS] Invalid query outcome: {outcome}")
            return
        self._query_total.labels(outcome=outcome).inc()

    def inc_sessions(self) -> None:
        """A key was seen for the first time. The in-memory index never shrinks."""
        self._sessions.inc()

    # ── api_request ───────────────────────────────────────────────────────

    def inc_api_request(self, endpoint: str, method: str, status_code: int) -> None:
        """Increment api_request_total counter.

        status_code is normalized to status_class (2xx/3xx/4xx/5xx/0xx)
        to prevent high-cardinality label explosion from exact HTTP codes.
        """
        status_class = f"{status_code // 100}xx"
        self._api_request_total.labels(
            endpoint=endpoint, method=method, status_class=status_class
        ).inc()

    def observe_api_request_duration(self, endpoint: str, duration: float) -> None:
        self._api_request_duration.labels(endpoint=endpoint).observe(duration)

    # ── Snapshot (test/debug only) ────────────────────────────────────────

    def snapshot(self) -> Dict:
        """
        Current counter values as a plain dict.
        Test/debug only; SHALL NOT be used in request paths.
        """
        return {
            "ingest_total": {
                outcome: self._sample("capture_ingest_total", {"outcome": outcome})
                for outcome in INGEST_OUTCOMES
            },
            "query_total": {
                outcome: self._sample("capture_query_total", {"outcome": outcome})
                for outcome in QUERY_OUTCOMES
            },
            "sessions": self._sample("capture_sessions", {}),
        }

    def persist_failures(self, sink: str, retryable: bool) -> int:
        return self._sample(
            "capture_persist_failure_total",
            {"sink": sink, "retryable": "true" if retryable else "false"},
        )

    def _sample(self, name: str, labels: Dict[str, str]) -> int:
        """Read a sample value; 0 if the label combo was never touched."""
        value = self._registry.get_sample_value(name, labels)
        return int(value) if value is not None else 0

    def reset(self) -> None:
        """Fresh CollectorRegistry. Test environments only."""
        self._registry = CollectorRegistry()
        self._init_metrics()

    # ── Prometheus exposition ─────────────────────────────────────────────

    def generate_metrics(self) -> bytes:
        """Generate Prometheus text exposition format output."""
        return generate_latest(self._registry)

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry
