from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from tokenledger.models import UsageEvent

TOKEN_KINDS = ("input", "output", "cache_write", "cache_read")


class MetricsUpdater:
    """
    applies ingested UsageEvents and sync outcomes to Prometheus
    collectors.
     - events_total: counts ingested events, labeled by model.
     - tokens_total: counts tokens, labeled by model and kind
     (input/output/cache_write/cache_read).
     - cost_usd_total: counts cost in USD, labeled by model.
     - records_skipped_total: counts lines that never became an
     event, labeled by reason.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._events: "Counter" = Counter(
            "tokenledger_events_total",
            "Total usage events ingested",
            ["model"],
            registry=registry,
        )
        self._tokens: "Counter" = Counter(
            "tokenledger_tokens_total",
            "Total tokens ingested",
            ["model", "kind"],
            registry=registry,
        )
        self._cost: "Counter" = Counter(
            "tokenledger_cost_usd_total",
            "Total cost in USD of ingested events",
            ["model"],
            registry=registry,
        )
        self._skipped: "Counter" = Counter(
            "tokenledger_records_skipped_total",
            "Total log records skipped by reason",
            ["reason"],
            registry=registry,
        )
        self._sync_duration: "Histogram" = Histogram(
            "tokenledger_sync_duration_seconds",
            "Duration of sync runs",
            ["mode"],
            registry=registry,
        )
        self._sync_errors: "Counter" = Counter(
            "tokenledger_sync_errors_total",
            "Total number of sync errors by stage",
            ["stage"],
            registry=registry,
        )
        self._last_sync_success: "Gauge" = Gauge(
            "tokenledger_last_sync_success_timestamp_seconds",
            "Unix timestamp of last successful sync per mode",
            ["mode"],
            registry=registry,
        )
        self._cache_lookups: "Counter" = Counter(
            "tokenledger_cache_lookups_total",
            "Total statistics queries by returned cache status",
            ["status"],
            registry=registry,
        )

    def update_event(self, event: "UsageEvent") -> "None":
        """
        updates the usage counters based on the event's data.
        """
        self._events.labels(model=event.model).inc()
        for kind, value in zip(
            TOKEN_KINDS,
            (
                event.input_tokens,
                event.output_tokens,
                event.cache_write_tokens,
                event.cache_read_tokens,
            ),
        ):
            if value:
                self._tokens.labels(model=event.model, kind=kind).inc(value)
        if event.cost > 0:
            self._cost.labels(model=event.model).inc(event.cost)

    def inc_skipped(self, reason: "str", count: "int" = 1) -> "None":
        if count > 0:
            self._skipped.labels(reason=reason).inc(count)

    def observe_sync_duration(self, mode: "str", duration_seconds: "float") -> "None":
        self._sync_duration.labels(mode=mode).observe(duration_seconds)

    def inc_sync_error(self, stage: "str") -> "None":
        self._sync_errors.labels(stage=stage).inc()

    def set_last_sync_success(self, mode: "str", timestamp: "float") -> "None":
        self._last_sync_success.labels(mode=mode).set(timestamp)

    def inc_cache_lookup(self, status: "str") -> "None":
        self._cache_lookups.labels(status=status).inc()
