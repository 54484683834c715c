from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Reconcile series carry a ``controller`` label so each work queue can be
    alerted on independently; control-service series carry the ``service``
    they addressed.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_reconcile_total",
            "Total reconcile passes by controller and result",
            ["controller", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "clusterop_reconcile_duration_seconds",
            "Seconds spent in one reconcile pass",
            ["controller"],
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "clusterop_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["queue"],
        )
    )
    workqueue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_workqueue_adds_total",
            "Total keys added to the work queue, including deduplicated adds",
            ["queue"],
        )
    )
    workqueue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_workqueue_retries_total",
            "Total rate-limited re-adds",
            ["queue"],
        )
    )
    control_probes_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_control_probes_total",
            "Total control-service health probes by outcome",
            ["service", "outcome"],
        )
    )
    control_failovers_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_control_failovers_total",
            "Total resolutions that ended on an alternate member or fell back",
            ["service", "outcome"],
        )
    )
    control_clients_cached: Gauge = field(
        default_factory=lambda: Gauge(
            "clusterop_control_clients_cached",
            "Current number of cached service-level control clients",
        )
    )
    update_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_guaranteed_update_total",
            "Total guaranteed updates by outcome",
            ["outcome"],
        )
    )
    update_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_guaranteed_update_conflicts_total",
            "Total optimistic-concurrency conflicts seen while updating",
        )
    )
    event_skips_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_event_skips_total",
            "Total watch events dropped by the event router",
            ["reason"],
        )
    )
    event_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_event_errors_total",
            "Total event router errors while resolving controllers",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_watch_errors_total",
            "Total Kubernetes watch errors",
            ["informer"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["informer"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "clusterop_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "clusterop_leader_state",
            "Whether this operator replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "clusterop_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "clusterop",
            "Build information for the operator",
        )
    )


METRICS = ControllerMetrics()
