from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Image-level series are labelled by image key, deployment-level series by
    ``namespace`` so operators can alert on restart storms per namespace.
    """

    checks_total: Counter = field(
        default_factory=lambda: Counter(
            "digestwatch_checks_total",
            "Total image digest checks by result",
            ["image", "result"],
        )
    )
    digest_changes_total: Counter = field(
        default_factory=lambda: Counter(
            "digestwatch_digest_changes_total",
            "Total observed registry digest changes, including first observations",
            ["image"],
        )
    )
    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "digestwatch_restarts_total",
            "Total deployment restarts triggered by digest drift",
            ["namespace"],
        )
    )
    restart_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "digestwatch_restart_errors_total",
            "Total failed deployment restarts",
            ["namespace"],
        )
    )
    sync_skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "digestwatch_sync_skipped_total",
            "Total sync steps skipped because no ready pod could be inspected",
            ["namespace"],
        )
    )
    errors_total: Counter = field(
        default_factory=lambda: Counter(
            "digestwatch_errors_total",
            "Total classified errors by kind",
            ["kind"],
        )
    )
    cycle_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "digestwatch_cycle_duration_seconds",
            "Seconds spent in one reconciliation cycle",
            buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
        )
    )
    tracked_images: Gauge = field(
        default_factory=lambda: Gauge(
            "digestwatch_tracked_images",
            "Number of images with a recorded digest",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "digestwatch",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
