"""Prometheus metrics exposed by the Gmail relay."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest


class RelayMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("gmr_sent_total", "Total sent emails", ["profile"], registry=self.registry)
        self.failures = Counter("gmr_failures_total", "Total failed send requests", ["profile", "kind"], registry=self.registry)
        self.cancel_requests = Counter("gmr_cancel_requests_total", "Total accepted stop requests", registry=self.registry)
        self.sending = Gauge("gmr_sending", "1 while a send holds the gate", registry=self.registry)

    def inc_sent(self, profile: str):
        """Increase the ``sent`` counter for the given profile."""
        self.sent.labels(profile=profile or "full").inc()

    def inc_failure(self, profile: str, kind: str):
        """Increase the ``failures`` counter for the given profile and failure kind."""
        self.failures.labels(profile=profile or "full", kind=kind).inc()

    def inc_cancel_request(self):
        self.cancel_requests.inc()

    def set_sending(self, value: bool):
        """Update the gauge tracking the gate."""
        self.sending.set(1 if value else 0)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
