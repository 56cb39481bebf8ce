from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``."""

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "podset_reconcile_total",
            "Total reconcile passes by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "podset_reconcile_duration_seconds",
            "Seconds spent in a single reconcile pass",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, float("inf")),
        )
    )
    pods_created_total: Counter = field(
        default_factory=lambda: Counter(
            "podset_pods_created_total",
            "Total worker pods created",
            ["namespace"],
        )
    )
    pods_deleted_total: Counter = field(
        default_factory=lambda: Counter(
            "podset_pods_deleted_total",
            "Total worker pods deleted",
            ["namespace"],
        )
    )
    status_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "podset_status_updates_total",
            "Total PodSet status writes",
            ["namespace"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "podset_queue_depth",
            "Reconcile requests waiting to be processed",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "podset_retry_total",
            "Total rate-limited requeues after failed reconcile passes",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "podset_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "podset_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "podset_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "podset_leader_state",
            "Whether this operator replica is currently leader (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "podset_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
