"""Prometheus metrics collection for the Eliza orchestrator."""

from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class MetricsCollector:
    """Collects and exposes Prometheus metrics for orchestrator operations."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        """Initialize metrics collector with all metrics."""
        self.registry = registry

        # Counter metrics
        self.container_starts_total = Counter(
            "eliza_container_starts_total",
            "Total number of container start requests",
            ["service", "outcome"],
            registry=registry,
        )

        self.health_probes_total = Counter(
            "eliza_health_probes_total",
            "Total number of health probes",
            ["container", "result"],
            registry=registry,
        )

        self.messages_sent_total = Counter(
            "eliza_messages_sent_total",
            "Total number of outbound user messages",
            ["transport"],
            registry=registry,
        )

        self.recovery_attempts_total = Counter(
            "eliza_recovery_attempts_total",
            "Total number of agent restarts issued by the recovery engine",
            ["outcome"],
            registry=registry,
        )

        # Histogram metrics
        self.startup_duration_seconds = Histogram(
            "eliza_startup_duration_seconds",
            "Duration of a startup run in seconds",
            buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
            registry=registry,
        )

        # Gauge metrics
        self.startup_stage = Gauge(
            "eliza_startup_stage",
            "Index of the current startup stage",
            registry=registry,
        )

        self.tracked_containers = Gauge(
            "eliza_tracked_containers",
            "Number of containers tracked by the container manager",
            registry=registry,
        )

    def record_container_start(self, service: str, outcome: str) -> None:
        """
        Record a container start.

        Args:
            service: Container name
            outcome: created, adopted, restarted or failed
        """
        self.container_starts_total.labels(service=service, outcome=outcome).inc()

    def record_health_probe(self, container: str, healthy: bool) -> None:
        """
        Record a health probe result.

        Args:
            container: Container name
            healthy: Whether the probe succeeded
        """
        result = "success" if healthy else "failure"
        self.health_probes_total.labels(container=container, result=result).inc()

    def record_message_sent(self, transport: str) -> None:
        """
        Record an outbound message.

        Args:
            transport: websocket, socketio or http
        """
        self.messages_sent_total.labels(transport=transport).inc()

    def record_recovery_attempt(self, outcome: str) -> None:
        """
        Record a recovery attempt.

        Args:
            outcome: succeeded or failed
        """
        self.recovery_attempts_total.labels(outcome=outcome).inc()

    def record_startup_duration(self, duration_seconds: float) -> None:
        """Record the duration of a startup run."""
        self.startup_duration_seconds.observe(duration_seconds)

    def set_startup_stage(self, index: int) -> None:
        """Set the current startup stage index."""
        self.startup_stage.set(index)

    def set_tracked_containers(self, count: int) -> None:
        """Set the number of tracked containers."""
        self.tracked_containers.set(count)

    def get_metrics(self) -> bytes:
        """
        Get current metrics in Prometheus format.

        Returns:
            Metrics data in bytes
        """
        return generate_latest(self.registry)


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """
    Get the global metrics collector instance.

    Returns:
        MetricsCollector instance
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector
