from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram


class SyncMetrics:
    """
    records sync outcomes as Prometheus metrics, labeled by platform
    and by sync operation (usage, costs, keys, cron).
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._sync_duration: "Histogram" = Histogram(
            "keymeter_sync_duration_seconds",
            "Duration of sync operations",
            ["platform", "operation"],
            registry=registry,
        )
        self._sync_errors: "Counter" = Counter(
            "keymeter_sync_errors_total",
            "Total number of failed sync operations by platform and operation",
            ["platform", "operation"],
            registry=registry,
        )
        self._rows_saved: "Counter" = Counter(
            "keymeter_usage_rows_saved_total",
            "Total usage rows written",
            ["platform"],
            registry=registry,
        )
        self._row_errors: "Counter" = Counter(
            "keymeter_usage_row_errors_total",
            "Total usage rows that failed to write",
            ["platform"],
            registry=registry,
        )
        self._last_sync_success: "Gauge" = Gauge(
            "keymeter_last_sync_success_timestamp_seconds",
            "Unix timestamp of the last successful sync per platform",
            ["platform"],
            registry=registry,
        )

    @property
    def registry(self) -> "CollectorRegistry":
        return self._registry

    def observe_sync_duration(
        self, platform: "str", operation: "str", duration_seconds: "float"
    ) -> "None":
        self._sync_duration.labels(platform=platform, operation=operation).observe(
            duration_seconds
        )

    def inc_sync_error(self, platform: "str", operation: "str") -> "None":
        self._sync_errors.labels(platform=platform, operation=operation).inc()

    def add_saved_rows(self, platform: "str", saved: "int", failed: "int") -> "None":
        self._rows_saved.labels(platform=platform).inc(saved)
        self._row_errors.labels(platform=platform).inc(failed)

    def set_last_sync_success(self, platform: "str", timestamp: "float") -> "None":
        self._last_sync_success.labels(platform=platform).set(timestamp)
