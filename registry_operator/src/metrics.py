from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Reconcile series carry a ``controller`` label so each worker's error rate
    and latency can be alerted on independently.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_reconcile_total",
            "Total reconcile passes by outcome",
            ["controller", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "image_registry_operator_reconcile_duration_seconds",
            "Seconds spent in one reconcile pass",
            ["controller"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    apply_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_apply_total",
            "Managed object writes by kind and action",
            ["kind", "action"],
        )
    )
    conflict_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_conflict_retries_total",
            "Optimistic concurrency conflicts retried locally",
            ["operation"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "image_registry_operator_queue_depth",
            "Keys waiting in a controller work queue",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_queue_retries_total",
            "Keys requeued with rate limiting after a failed reconcile",
            ["queue"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_watch_errors_total",
            "Total Kubernetes list or watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "image_registry_operator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    finalizer_wait_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "image_registry_operator_finalizer_wait_seconds",
            "Seconds spent waiting for a finalized resource to disappear",
            buckets=(1, 3, 10, 30, 60, 120, 300, 600, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "image_registry_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
