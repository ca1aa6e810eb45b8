from datetime import datetime, timezone

from prometheus_client import CollectorRegistry

from tokenledger.metrics import MetricsUpdater
from tokenledger.models import UsageEvent


def _event(cost: "float" = 0.25, cache_read_tokens: "int" = 0) -> "UsageEvent":
    return UsageEvent(
        timestamp=datetime(2025, 6, 1, 12, tzinfo=timezone.utc),
        date_string="2025-06-01",
        model="claude-3-haiku",
        input_tokens=100,
        output_tokens=50,
        cache_write_tokens=0,
        cache_read_tokens=cache_read_tokens,
        cost=cost,
        session_id="s1",
        project_path="/app",
        project_name="app",
        request_id="req-1",
        message_id=None,
        message_type="assistant",
        source_file="/logs/a.jsonl",
    )


class TestMetricsUpdater:
    def test_metrics_are_registered(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        MetricsUpdater(registry=registry)
        # prometheus_client strips _total suffix from Counter family names
        metric_names = [m.name for m in registry.collect()]
        assert "tokenledger_events" in metric_names
        assert "tokenledger_tokens" in metric_names
        assert "tokenledger_cost_usd" in metric_names
        assert "tokenledger_records_skipped" in metric_names
        assert "tokenledger_sync_duration_seconds" in metric_names
        assert "tokenledger_sync_errors" in metric_names
        assert "tokenledger_last_sync_success_timestamp_seconds" in metric_names
        assert "tokenledger_cache_lookups" in metric_names

    def test_update_event_increments_counters(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        updater = MetricsUpdater(registry=registry)

        updater.update_event(_event(cache_read_tokens=30))
        updater.update_event(_event())

        assert (
            registry.get_sample_value(
                "tokenledger_events_total", {"model": "claude-3-haiku"}
            )
            == 2.0
        )
        assert (
            registry.get_sample_value(
                "tokenledger_tokens_total",
                {"model": "claude-3-haiku", "kind": "input"},
            )
            == 200.0
        )
        assert (
            registry.get_sample_value(
                "tokenledger_tokens_total",
                {"model": "claude-3-haiku", "kind": "cache_read"},
            )
            == 30.0
        )
        # zero token kinds never create a series
        assert (
            registry.get_sample_value(
                "tokenledger_tokens_total",
                {"model": "claude-3-haiku", "kind": "cache_write"},
            )
            is None
        )
        assert registry.get_sample_value(
            "tokenledger_cost_usd_total", {"model": "claude-3-haiku"}
        ) == 0.5

    def test_zero_cost_is_not_counted(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.update_event(_event(cost=0.0))
        assert (
            registry.get_sample_value(
                "tokenledger_cost_usd_total", {"model": "claude-3-haiku"}
            )
            is None
        )

    def test_skipped_records(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        updater = MetricsUpdater(registry=registry)
        updater.inc_skipped("duplicate")
        updater.inc_skipped("parse_error", 3)
        updater.inc_skipped("no_signal", 0)

        assert registry.get_sample_value(
            "tokenledger_records_skipped_total", {"reason": "duplicate"}
        ) == 1.0
        assert registry.get_sample_value(
            "tokenledger_records_skipped_total", {"reason": "parse_error"}
        ) == 3.0
        assert (
            registry.get_sample_value(
                "tokenledger_records_skipped_total", {"reason": "no_signal"}
            )
            is None
        )

    def test_sync_metrics_update(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        updater = MetricsUpdater(registry=registry)

        updater.observe_sync_duration("incremental", 0.5)
        updater.inc_sync_error("file")
        updater.set_last_sync_success("incremental", 1000.0)
        updater.inc_cache_lookup("fresh")

        assert registry.get_sample_value(
            "tokenledger_sync_duration_seconds_count", {"mode": "incremental"}
        ) == 1.0
        assert registry.get_sample_value(
            "tokenledger_sync_errors_total", {"stage": "file"}
        ) == 1.0
        assert registry.get_sample_value(
            "tokenledger_last_sync_success_timestamp_seconds",
            {"mode": "incremental"},
        ) == 1000.0
        assert registry.get_sample_value(
            "tokenledger_cache_lookups_total", {"status": "fresh"}
        ) == 1.0
