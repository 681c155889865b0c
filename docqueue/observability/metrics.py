"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from docqueue.constants import (
    METRIC_CHANNELS_BUSY,
    METRIC_HISTORY_EXPIRED,
    METRIC_ITEM_DURATION,
    METRIC_ITEMS_CLAIMED,
    METRIC_ITEMS_COMPLETED,
    METRIC_ITEMS_PUSHED,
    METRIC_LEASES_RECLAIMED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the queue engine.

    Collects metrics for:
    - Items pushed, claimed and completed
    - Item processing duration
    - Stale leases reclaimed
    - History items expired
    - Busy channels
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.items_pushed = Counter(
            METRIC_ITEMS_PUSHED,
            "Total number of items pushed",
            ["queue"],
            registry=self._registry,
        )

        self.items_claimed = Counter(
            METRIC_ITEMS_CLAIMED,
            "Total number of items claimed by a channel",
            ["queue"],
            registry=self._registry,
        )

        # status is succeeded or failed
        self.items_completed = Counter(
            METRIC_ITEMS_COMPLETED,
            "Total number of processing attempts finished",
            ["queue", "status"],
            registry=self._registry,
        )

        self.item_duration = Histogram(
            METRIC_ITEM_DURATION,
            "Item processing duration in seconds",
            ["queue", "status"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self._registry,
        )

        self.leases_reclaimed = Counter(
            METRIC_LEASES_RECLAIMED,
            "Total number of stale leases reset to claimable",
            ["queue", "reason"],
            registry=self._registry,
        )

        self.history_expired = Counter(
            METRIC_HISTORY_EXPIRED,
            "Total number of history items removed by TTL expiry",
            ["queue"],
            registry=self._registry,
        )

        self.channels_busy = Gauge(
            METRIC_CHANNELS_BUSY,
            "Number of channels currently holding an item",
            ["queue"],
            registry=self._registry,
        )

    def record_item_pushed(self, queue: str) -> None:
        """Record an item push."""
        self.items_pushed.labels(queue=queue).inc()

    def record_item_claimed(self, queue: str) -> None:
        """Record a successful claim."""
        self.items_claimed.labels(queue=queue).inc()
        self.channels_busy.labels(queue=queue).inc()

    def record_item_completed(
        self,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record the end of a processing attempt."""
        self.items_completed.labels(queue=queue, status=status).inc()
        self.item_duration.labels(queue=queue, status=status).observe(
            duration_seconds
        )
        self.channels_busy.labels(queue=queue).dec()

    def record_leases_reclaimed(self, queue: str, reason: str, count: int) -> None:
        """Record stale leases reset by a corrective pass."""
        self.leases_reclaimed.labels(queue=queue, reason=reason).inc(count)

    def record_history_expired(self, queue: str, count: int) -> None:
        """Record history items removed by expiry."""
        self.history_expired.labels(queue=queue).inc(count)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
