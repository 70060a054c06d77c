from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from quotawatch.models import UsageSnapshot, WeeklyProjection


class MetricsUpdater:
    """
    exposes usage snapshots, fetch outcomes and weekly
    projections as Prometheus metrics.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._usage_percent: "Gauge" = Gauge(
            "quotawatch_usage_percent",
            "Used percentage of a provider's quota window",
            ["provider", "window"],
            registry=registry,
        )
        self._cost_used: "Gauge" = Gauge(
            "quotawatch_cost_used",
            "Pay-as-you-go spend in the current billing period",
            ["provider", "currency"],
            registry=registry,
        )
        self._cost_limit: "Gauge" = Gauge(
            "quotawatch_cost_limit",
            "Pay-as-you-go spend limit of the current billing period",
            ["provider", "currency"],
            registry=registry,
        )
        self._fetch_duration: "Histogram" = Histogram(
            "quotawatch_fetch_duration_seconds",
            "Duration of provider usage fetches",
            ["provider"],
            registry=registry,
        )
        self._fetch_errors: "Counter" = Counter(
            "quotawatch_fetch_errors_total",
            "Total number of fetch errors by provider and stage",
            ["provider", "stage"],
            registry=registry,
        )
        self._fallbacks: "Counter" = Counter(
            "quotawatch_fetch_fallbacks_total",
            "Total number of fallbacks away from a fetch strategy",
            ["provider", "strategy"],
            registry=registry,
        )
        self._last_success: "Gauge" = Gauge(
            "quotawatch_last_fetch_success_timestamp_seconds",
            "Unix timestamp of last successful fetch per provider",
            ["provider"],
            registry=registry,
        )
        self._history_writes: "Counter" = Counter(
            "quotawatch_history_writes_total",
            "Total number of daily history records written",
            ["provider"],
            registry=registry,
        )
        self._projected_end: "Gauge" = Gauge(
            "quotawatch_projected_end_of_week",
            "Projected end-of-week value of the projection metric",
            ["provider", "metric"],
            registry=registry,
        )

    def update_usage(self, provider: "str", snapshot: "UsageSnapshot") -> "None":
        windows = {
            "primary": snapshot.primary,
            "secondary": snapshot.secondary,
            "tertiary": snapshot.tertiary,
        }
        for window_name, window in windows.items():
            if window is not None:
                self._usage_percent.labels(provider=provider, window=window_name).set(
                    window.used_percent
                )

        cost = snapshot.provider_cost
        if cost is not None:
            labels = {"provider": provider, "currency": cost.currency_code}
            self._cost_used.labels(**labels).set(cost.used)
            self._cost_limit.labels(**labels).set(cost.limit)

    def update_projection(
        self, provider: "str", projection: "WeeklyProjection"
    ) -> "None":
        if projection.projected_end_of_week is None:
            return
        self._projected_end.labels(
            provider=provider, metric=projection.metric.value
        ).set(projection.projected_end_of_week)

    def observe_fetch_duration(
        self, provider: "str", duration_seconds: "float"
    ) -> "None":
        self._fetch_duration.labels(provider=provider).observe(duration_seconds)

    def inc_fetch_error(self, provider: "str", stage: "str") -> "None":
        self._fetch_errors.labels(provider=provider, stage=stage).inc()

    def inc_fallback(self, provider: "str", strategy: "str") -> "None":
        self._fallbacks.labels(provider=provider, strategy=strategy).inc()

    def inc_history_write(self, provider: "str") -> "None":
        self._history_writes.labels(provider=provider).inc()

    def set_last_fetch_success(self, provider: "str", timestamp: "float") -> "None":
        self._last_success.labels(provider=provider).set(timestamp)
