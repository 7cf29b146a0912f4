from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info

_PREFIX = "prometheus_config_controller"


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Components receive this object as a constructor argument (defaulting to
    the process-wide :data:`METRICS`) so tests can hand in a mock instead of
    reading the global registry.
    """

    certificate_count: Gauge = field(
        default_factory=lambda: Gauge(
            f"{_PREFIX}_certificate_count",
            "Number of certificate files currently written to the certificate directory",
        )
    )
    kubernetes_request_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            f"{_PREFIX}_kubernetes_request_seconds",
            "Latency of Kubernetes API calls made by the controller resources",
            ["resource", "action"],
        )
    )
    reload_checks_total: Counter = field(
        default_factory=lambda: Counter(
            f"{_PREFIX}_reload_checks_total",
            "Total Prometheus reload decisions evaluated",
        )
    )
    reload_ignored_total: Counter = field(
        default_factory=lambda: Counter(
            f"{_PREFIX}_reload_ignored_total",
            "Total reload decisions skipped because Prometheus already runs the ConfigMap config",
        )
    )
    reload_throttled_total: Counter = field(
        default_factory=lambda: Counter(
            f"{_PREFIX}_reload_throttled_total",
            "Total reloads refused because the minimum reload interval had not elapsed",
        )
    )
    reload_required_total: Counter = field(
        default_factory=lambda: Counter(
            f"{_PREFIX}_reload_required_total",
            "Total reload decisions that required a Prometheus reload",
        )
    )
    reloads_total: Counter = field(
        default_factory=lambda: Counter(
            f"{_PREFIX}_reloads_total",
            "Total successful Prometheus reloads",
        )
    )
    reload_errors_total: Counter = field(
        default_factory=lambda: Counter(
            f"{_PREFIX}_reload_errors_total",
            "Total failed Prometheus config fetches or reload requests",
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            f"{_PREFIX}_reconcile_total",
            "Total resource reconciliations",
            ["loop", "resource"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            f"{_PREFIX}_reconcile_errors_total",
            "Total failed resource reconciliations by error kind",
            ["loop", "resource", "kind"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            f"{_PREFIX}_reconcile_duration_seconds",
            "Seconds spent reconciling one resource",
            ["loop", "resource"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, float("inf")),
        )
    )
    resource_retries_total: Counter = field(
        default_factory=lambda: Counter(
            f"{_PREFIX}_resource_retries_total",
            "Total resource retry attempts scheduled after a failed reconciliation step",
            ["resource"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            f"{_PREFIX}_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["informer"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            f"{_PREFIX}_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["informer"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            f"{_PREFIX}_queue_depth",
            "Number of keys waiting in the reconcile work queue",
            ["loop"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            _PREFIX,
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
