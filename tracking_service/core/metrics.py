"""
In-process metrics for the tracking pipeline.

Thread-safe counters and histograms with label support, exported as
JSON on /health/metrics.

Usage:
    from tracking_service.core.metrics import metrics

    metrics.events_received.labels(type="purchase").inc()
    with metrics.pipeline_latency.labels(type="purchase").time():
        ...
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)

HISTOGRAM_MAX_SAMPLES = 10000


class _Metric:
    """Label bookkeeping shared by all metric kinds"""

    def __init__(self, name: str, description: str, labels: tuple = ()):
        self.name = name
        self.description = description
        self.label_names = labels
        self._lock = threading.Lock()

    def _label_values(self, kwargs: Dict[str, str]) -> tuple:
        return tuple(str(kwargs.get(name, "")) for name in self.label_names)

    def _label_key(self, values: tuple) -> str:
        if not values:
            return "_"
        return ",".join(f"{k}={v}" for k, v in zip(self.label_names, values))


class Counter(_Metric):
    """Monotonic counter."""

    def __init__(self, name: str, description: str, labels: tuple = ()):
        super().__init__(name, description, labels)
        self._values: Dict[tuple, float] = {}

    def labels(self, **kwargs) -> "_Bound":
        return _Bound(self, self._label_values(kwargs))

    def inc(self, value: float = 1.0, labels: tuple = ()):
        with self._lock:
            self._values[labels] = self._values.get(labels, 0.0) + value

    def get(self, labels: tuple = ()) -> float:
        with self._lock:
            return self._values.get(labels, 0.0)

    def total(self) -> float:
        with self._lock:
            return sum(self._values.values())

    def export(self) -> Dict[str, float]:
        with self._lock:
            return {self._label_key(k): v for k, v in self._values.items()}


class Histogram(_Metric):
    """Bounded sample reservoir with percentile summaries."""

    def __init__(self, name: str, description: str, labels: tuple = ()):
        super().__init__(name, description, labels)
        self._samples: Dict[tuple, List[float]] = {}

    def labels(self, **kwargs) -> "_Bound":
        return _Bound(self, self._label_values(kwargs))

    def observe(self, value: float, labels: tuple = ()):
        with self._lock:
            samples = self._samples.setdefault(labels, [])
            samples.append(value)
            if len(samples) > HISTOGRAM_MAX_SAMPLES:
                del samples[: len(samples) - HISTOGRAM_MAX_SAMPLES]

    @contextmanager
    def time(self, labels: tuple = ()):
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, labels)

    def get_stats(self, labels: tuple = ()) -> Dict[str, float]:
        with self._lock:
            values = sorted(self._samples.get(labels, []))
        return self._summarize(values)

    @staticmethod
    def _summarize(values: List[float]) -> Dict[str, float]:
        count = len(values)
        if not count:
            return {"count": 0, "avg": 0.0, "p50": 0.0, "p95": 0.0, "p99": 0.0}
        return {
            "count": count,
            "avg": sum(values) / count,
            "p50": values[min(int(count * 0.5), count - 1)],
            "p95": values[min(int(count * 0.95), count - 1)],
            "p99": values[min(int(count * 0.99), count - 1)],
        }

    def export(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            snapshot: List[Tuple[tuple, List[float]]] = [(k, sorted(v)) for k, v in self._samples.items()]
        return {self._label_key(k): self._summarize(v) for k, v in snapshot}


class _Bound:
    """A metric with its label values fixed"""

    def __init__(self, metric, labels: tuple):
        self._metric = metric
        self._labels = labels

    def inc(self, value: float = 1.0):
        self._metric.inc(value, self._labels)

    def observe(self, value: float):
        self._metric.observe(value, self._labels)

    def get(self) -> float:
        return self._metric.get(self._labels)

    @contextmanager
    def time(self):
        with self._metric.time(self._labels):
            yield


class TrackingMetrics:
    """Centralized metrics for the tracking service."""

    def __init__(self):
        self.events_received = Counter(
            name="tracking_events_received_total",
            description="Events that passed request validation",
            labels=("type",),
        )
        self.event_outcomes = Counter(
            name="tracking_event_outcomes_total",
            description="Pipeline outcomes by final status",
            labels=("type", "status"),
        )
        self.fraud_flags = Counter(
            name="tracking_fraud_flags_total",
            description="Fraud/validation rule hits",
            labels=("flag",),
        )
        self.structural_errors = Counter(
            name="tracking_structural_errors_total",
            description="Events aborted with a structural error",
            labels=("code",),
        )
        self.replays_served = Counter(
            name="tracking_replays_served_total",
            description="Idempotent replays answered from the stored result",
        )
        self.duplicate_clicks = Counter(
            name="tracking_duplicate_clicks_total",
            description="Clicks folded into an existing open click window",
        )
        self.claim_conflicts = Counter(
            name="tracking_claim_conflicts_total",
            description="Conversions that lost a click claim race",
        )
        self.pipeline_fallbacks = Counter(
            name="tracking_pipeline_fallbacks_total",
            description="Runs resolved by deadline or store failure",
            labels=("reason",),
        )
        self.pipeline_latency = Histogram(
            name="tracking_pipeline_latency_seconds",
            description="End-to-end pipeline latency",
            labels=("type",),
        )
        self.webhooks_published = Counter(
            name="tracking_webhooks_published_total",
            description="Webhook payloads handed to the publisher",
            labels=("event",),
        )
        self.rate_limit_rejections = Counter(
            name="tracking_rate_limit_rejections_total",
            description="Ingestion requests refused by the limiter",
        )
        self.records_purged = Counter(
            name="tracking_records_purged_total",
            description="Clicks and sessions removed by the retention reaper",
            labels=("kind",),
        )

    def export_metrics(self) -> Dict:
        return {
            "events": {
                "received": self.events_received.export(),
                "outcomes": self.event_outcomes.export(),
                "structural_errors": self.structural_errors.export(),
                "replays_served": self.replays_served.total(),
                "duplicate_clicks": self.duplicate_clicks.total(),
                "claim_conflicts": self.claim_conflicts.total(),
            },
            "fraud_flags": self.fraud_flags.export(),
            "pipeline": {
                "latency": self.pipeline_latency.export(),
                "fallbacks": self.pipeline_fallbacks.export(),
            },
            "webhooks": self.webhooks_published.export(),
            "rate_limiter": {"rejections": self.rate_limit_rejections.total()},
            "retention": self.records_purged.export(),
        }


metrics = TrackingMetrics()


def get_metrics() -> TrackingMetrics:
    return metrics
