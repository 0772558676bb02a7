from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Queue metrics carry a ``name`` label matching the work queue name so a
    future multi-queue operator can tell them apart.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "machine_api_operator_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["name"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "machine_api_operator_workqueue_adds_total",
            "Total keys accepted by the work queue",
            ["name"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "machine_api_operator_workqueue_retries_total",
            "Total rate-limited requeues scheduled by the work queue",
            ["name"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "machine_api_operator_sync_stage_duration_seconds",
            "Seconds spent in each sync pipeline stage",
            ["stage"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    sync_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "machine_api_operator_sync_failures_total",
            "Total sync pipeline failures by stage",
            ["stage"],
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "machine_api_operator_dropped_keys_total",
            "Total reconciliation keys dropped after exhausting retries",
        )
    )
    reported_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "machine_api_operator_reported_errors_total",
            "Total errors surfaced to the process-wide error reporter",
        )
    )
    applied_resources_total: Counter = field(
        default_factory=lambda: Counter(
            "machine_api_operator_applied_resources_total",
            "Total create-or-update outcomes by resource kind and action",
            ["kind", "action"],
        )
    )
    watch_events_total: Counter = field(
        default_factory=lambda: Counter(
            "machine_api_operator_watch_events_total",
            "Total change notifications received by resource and event type",
            ["resource", "type"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "machine_api_operator_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    bootstrap_milestone: Gauge = field(
        default_factory=lambda: Gauge(
            "machine_api_operator_bootstrap_milestone",
            "Whether a bootstrap milestone has been reached (1=yes, 0=no)",
            ["milestone"],
        )
    )
    bootstrap_attempts_total: Counter = field(
        default_factory=lambda: Counter(
            "machine_api_operator_bootstrap_attempts_total",
            "Total bootstrap poll ticks executed",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "machine_api_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
