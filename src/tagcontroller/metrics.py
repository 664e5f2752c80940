"""Reconciliation metrics.

The reconciler reports through the small `MetricsSink` protocol so the
reconciliation core holds no global state. `PrometheusMetrics` is the
production sink; it registers on its own registry, which the HTTP surface
exposes at /metrics.
"""

from __future__ import annotations

from typing import Protocol

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

METRIC_PREFIX = "tailscale_tag_controller"


class MetricsSink(Protocol):
    """Counters and timings emitted by a reconciliation pass."""

    def device_processed(self) -> None: ...

    def tags_applied(self) -> None: ...

    def reconcile_error(self) -> None: ...

    def observe_duration(self, seconds: float) -> None: ...


class PrometheusMetrics:
    """MetricsSink backed by prometheus_client."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._devices_processed = Counter(
            f"{METRIC_PREFIX}_devices_processed",
            "Total number of devices processed",
            registry=self.registry,
        )
        self._tags_applied = Counter(
            f"{METRIC_PREFIX}_tags_applied",
            "Total number of devices that had tags applied",
            registry=self.registry,
        )
        self._reconcile_errors = Counter(
            f"{METRIC_PREFIX}_reconcile_errors",
            "Total number of reconciliation errors",
            registry=self.registry,
        )
        self._reconcile_duration = Histogram(
            f"{METRIC_PREFIX}_reconcile_duration_seconds",
            "Duration of reconciliation loops",
            registry=self.registry,
        )

    def device_processed(self) -> None:
        self._devices_processed.inc()

    def tags_applied(self) -> None:
        self._tags_applied.inc()

    def reconcile_error(self) -> None:
        self._reconcile_errors.inc()

    def observe_duration(self, seconds: float) -> None:
        self._reconcile_duration.observe(seconds)

    def render(self) -> bytes:
        """Prometheus text exposition of this sink's registry."""
        return generate_latest(self.registry)
