from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class WatchMetrics:
    """Prometheus metrics exported on ``/metrics``.

    Watch metrics carry a ``resource`` label naming the watched collection so
    several watchers in one process can be told apart.
    """

    watch_events_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_events_total",
            "Total change notifications received from watch streams",
            ["resource", "type"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_watch_errors_total",
            "Total watch streams that ended with a transient error",
            ["resource"],
        )
    )
    watch_expired_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_watch_expired_total",
            "Total watch streams that ended because the resume token expired",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    watch_queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "kubewatch_queue_depth",
            "Change notifications waiting for the dispatcher",
            ["resource"],
        )
    )
    watch_handler_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "kubewatch_handler_duration_seconds",
            "Seconds spent in the event handler per notification",
            ["resource"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_leader_transitions_total",
            "Total leadership state transitions of this replica",
            ["transition"],
        )
    )
    leader_changes_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_leader_changes_total",
            "Total changes of lease holder observed by this replica",
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "kubewatch_leader_state",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "kubewatch_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "kubewatch",
            "Build information for the watch controller",
        )
    )


METRICS = WatchMetrics()
