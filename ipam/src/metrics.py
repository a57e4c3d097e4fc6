from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class IPAMMetrics:
    """Prometheus metrics exported by the reconciler on ``/metrics``.

    Store-level series carry an ``ipam`` label naming the allocation store
    (primary or secondary) the operation ran against.
    """

    resync_runs_total: Counter = field(
        default_factory=lambda: Counter(
            "floatingip_resync_runs_total",
            "Total reconciliation passes started",
            ["ipam"],
        )
    )
    resync_skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "floatingip_resync_skipped_total",
            "Total passes skipped because the cluster cache was not synced",
            ["phase"],
        )
    )
    resync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "floatingip_resync_duration_seconds",
            "Seconds spent in one reconciliation pass",
            ["ipam"],
            buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
        )
    )
    released_total: Counter = field(
        default_factory=lambda: Counter(
            "floatingip_released_total",
            "Total floating IPs released by reconciliation",
            ["ipam", "reason"],
        )
    )
    rebound_total: Counter = field(
        default_factory=lambda: Counter(
            "floatingip_rebound_total",
            "Total floating IP records rebound to a reservation key",
            ["ipam"],
        )
    )
    record_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "floatingip_record_errors_total",
            "Total records skipped in a pass because of an error",
            ["ipam"],
        )
    )
    unassign_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "floatingip_cloud_unassign_errors_total",
            "Total failed cloud provider unassign calls",
        )
    )
    synced_ips_total: Counter = field(
        default_factory=lambda: Counter(
            "floatingip_synced_ips_total",
            "Total pod IPs recorded into the store by pod sync",
            ["ipam"],
        )
    )
    sync_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "floatingip_sync_errors_total",
            "Total pods whose IPs could not be synced into the store",
            ["kind"],
        )
    )
    cache_refresh_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "floatingip_cache_refresh_errors_total",
            "Total failed cluster cache refreshes",
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "floatingip_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "floatingip_leader_state",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "floatingip_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "floatingip_ipam",
            "Build information for the reconciler",
        )
    )


METRICS = IPAMMetrics()
