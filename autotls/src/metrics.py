from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported on ``/metrics``."""

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "autotls_reconciles_total",
            "Total Ingress reconciles by outcome",
            ["result"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "autotls_reconcile_errors_total",
            "Total failed Ingress reconciles by error kind",
            ["kind"],
        )
    )
    patches_total: Counter = field(
        default_factory=lambda: Counter(
            "autotls_patches_total",
            "Total server-side apply patches sent, by patcher",
            ["patcher"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "autotls_reconcile_duration_seconds",
            "Seconds spent in a single Ingress reconcile",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "autotls_queue_depth",
            "Ingress keys waiting to be reconciled, including delayed requeues",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "autotls_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "autotls_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "autotls_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
