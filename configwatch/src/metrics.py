from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Event and watch counters carry a ``kind`` label (``Deployment``,
    ``ConfigMap``, ``Secret``) so operators can tell which watch stream is
    noisy or failing.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "configwatch_reconcile_total",
            "Total workload reconciliations by outcome",
            ["result"],
        )
    )
    patches_total: Counter = field(
        default_factory=lambda: Counter(
            "configwatch_fingerprint_patches_total",
            "Total pod template fingerprint patches applied",
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "configwatch_reconcile_duration_seconds",
            "Seconds spent in a single workload reconciliation",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    events_admitted_total: Counter = field(
        default_factory=lambda: Counter(
            "configwatch_events_admitted_total",
            "Total watch events admitted past the event filters",
            ["kind"],
        )
    )
    events_filtered_total: Counter = field(
        default_factory=lambda: Counter(
            "configwatch_events_filtered_total",
            "Total watch events dropped by the event filters",
            ["kind"],
        )
    )
    routed_workloads_total: Counter = field(
        default_factory=lambda: Counter(
            "configwatch_routed_workloads_total",
            "Total workloads scheduled because a mounted resource changed",
            ["kind"],
        )
    )
    route_list_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configwatch_route_list_errors_total",
            "Total failed Deployment listings during change routing",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "configwatch_queue_depth",
            "Current number of workloads waiting for reconciliation",
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "configwatch_requeues_total",
            "Total workloads requeued after a failed reconciliation",
            ["reason"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configwatch_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "configwatch_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "configwatch_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "configwatch_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "configwatch_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "configwatch",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
