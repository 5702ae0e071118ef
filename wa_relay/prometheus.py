"""Prometheus metrics exposed by the relay."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest


class RelayMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.delivered = Counter("war_delivered_total", "Messages delivered by the connector", ["tenant"], registry=self.registry)
        self.undelivered = Counter("war_undelivered_total", "Messages reported as pending", ["tenant"], registry=self.registry)
        self.fetch_errors = Counter("war_fetch_errors_total", "Failed pending fetches", ["tenant"], registry=self.registry)
        self.report_errors = Counter("war_report_errors_total", "Failed status reports", ["tenant"], registry=self.registry)
        self.ticks = Counter("war_ticks_total", "Completed reconciliation ticks", registry=self.registry)
        self.processed_ids = Gauge("war_processed_ids", "Message ids in the dedup store", registry=self.registry)

    def inc_delivered(self, tenant: str):
        self.delivered.labels(tenant=tenant or "-").inc()

    def inc_undelivered(self, tenant: str):
        self.undelivered.labels(tenant=tenant or "-").inc()

    def inc_fetch_error(self, tenant: str):
        self.fetch_errors.labels(tenant=tenant or "-").inc()

    def inc_report_error(self, tenant: str):
        self.report_errors.labels(tenant=tenant or "-").inc()

    def inc_tick(self):
        self.ticks.inc()

    def set_processed(self, value: int):
        """Update the gauge tracking the dedup store size."""
        self.processed_ids.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
