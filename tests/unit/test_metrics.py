"""
Unit tests for rebuild metrics and alert rules.
"""

from unittest.mock import patch

import pytest
import yaml
from prometheus_client import CollectorRegistry

from src.monitoring.alerts import AlertRuleGenerator
from src.monitoring.metrics import MetricsCollector, RebuildMetrics


class TestRebuildMetrics:
    """Test suite for RebuildMetrics."""

    def test_record_cycle(self, metrics):
        metrics.record_cycle("completed", 1.5, 1700000000.0)

        registry = metrics.registry
        assert registry.get_sample_value("index_rebuild_cycles_total", {"status": "completed"}) == 1.0
        assert registry.get_sample_value("index_rebuild_cycle_duration_seconds_count") == 1.0
        assert registry.get_sample_value("index_rebuild_last_cycle_timestamp_seconds") == 1700000000.0

    def test_skipped_cycle_not_timed(self, metrics):
        metrics.record_cycle("skipped", 0.0, 1700000000.0)

        registry = metrics.registry
        assert registry.get_sample_value("index_rebuild_cycles_total", {"status": "skipped"}) == 1.0
        assert registry.get_sample_value("index_rebuild_cycle_duration_seconds_count") == 0.0
        assert registry.get_sample_value("index_rebuild_last_cycle_timestamp_seconds") == 0.0

    def test_record_batch(self, metrics):
        metrics.record_batch("app.t1", "partial", 120)
        metrics.record_batch("app.t1", "failed")

        registry = metrics.registry
        assert registry.get_sample_value(
            "index_rebuild_batches_total", {"table": "app.t1", "outcome": "partial"}
        ) == 1.0
        assert registry.get_sample_value(
            "index_rebuild_batches_total", {"table": "app.t1", "outcome": "failed"}
        ) == 1.0
        assert registry.get_sample_value("index_rebuild_rows_replayed_total", {"table": "app.t1"}) == 120.0

    def test_ledger_counters(self, metrics):
        metrics.record_transition("DISABLED", "INACTIVE")
        metrics.record_abandoned("app.t1", 2)
        metrics.record_conflict("app.t1")
        metrics.record_mixed_causes("app.t1")

        registry = metrics.registry
        assert registry.get_sample_value(
            "index_rebuild_state_transitions_total", {"from_state": "DISABLED", "to_state": "INACTIVE"}
        ) == 1.0
        assert registry.get_sample_value("index_rebuild_abandoned_total", {"table": "app.t1"}) == 2.0
        assert registry.get_sample_value("index_rebuild_ledger_conflicts_total", {"table": "app.t1"}) == 1.0
        assert registry.get_sample_value("index_rebuild_mixed_causes_total", {"table": "app.t1"}) == 1.0

    def test_update_divergence(self, metrics):
        metrics.update_divergence("app.t1", 3, 42.0)
        metrics.update_divergence("app.t2", 1, -2.0)

        registry = metrics.registry
        assert registry.get_sample_value("index_rebuild_diverged_indexes", {"table": "app.t1"}) == 3.0
        assert registry.get_sample_value("index_rebuild_divergence_lag_seconds", {"table": "app.t1"}) == 42.0
        # markers ahead of the local clock report zero lag
        assert registry.get_sample_value("index_rebuild_divergence_lag_seconds", {"table": "app.t2"}) == 0.0

    def test_separate_registries(self):
        first = RebuildMetrics()
        second = RebuildMetrics()

        first.record_conflict("app.t1")

        assert second.registry.get_sample_value(
            "index_rebuild_ledger_conflicts_total", {"table": "app.t1"}
        ) is None


class TestMetricsCollector:
    """Test suite for MetricsCollector."""

    def test_service_info(self):
        collector = MetricsCollector(port=9999, registry=CollectorRegistry())

        assert collector.registry.get_sample_value(
            "index_rebuild_service_info", {"version": "1.0.0", "store": "scylladb"}
        ) == 1.0
        assert collector.rebuild.registry is collector.registry

    @patch("src.monitoring.metrics.start_http_server")
    def test_start_server(self, mock_start):
        collector = MetricsCollector(port=9999)

        collector.start_server()

        mock_start.assert_called_once_with(9999, registry=collector.registry)

    @patch("src.monitoring.metrics.start_http_server")
    def test_start_server_port_in_use(self, mock_start):
        mock_start.side_effect = OSError("[Errno 98] Address already in use")

        MetricsCollector(port=9999).start_server()

    @patch("src.monitoring.metrics.start_http_server")
    def test_start_server_other_error(self, mock_start):
        mock_start.side_effect = OSError("Permission denied")

        with pytest.raises(OSError):
            MetricsCollector(port=80).start_server()


class TestAlertRuleGenerator:
    """Test suite for AlertRuleGenerator."""

    def test_rule_groups(self):
        rules = AlertRuleGenerator().generate_alert_rules()

        assert [g["name"] for g in rules["groups"]] == ["index_rebuild_repair", "index_rebuild_scheduler"]

    def test_summary(self):
        summary = AlertRuleGenerator().get_alert_summary()

        assert summary == {
            "total_groups": 2,
            "total_alerts": 7,
            "critical": 2,
            "warning": 4,
            "info": 1,
        }

    def test_thresholds_are_configurable(self):
        rules = AlertRuleGenerator(stalled_after_seconds=600, cycle_period_seconds=30).generate_alert_rules()
        by_name = {r["alert"]: r for g in rules["groups"] for r in g["rules"]}

        assert by_name["IndexRebuildStalled"]["expr"] == "index_rebuild_divergence_lag_seconds > 600"
        assert by_name["IndexRebuildNotRunning"]["expr"].endswith("> 180")

    def test_not_running_has_minimum_window(self):
        rules = AlertRuleGenerator(cycle_period_seconds=1).generate_alert_rules()
        by_name = {r["alert"]: r for g in rules["groups"] for r in g["rules"]}

        assert by_name["IndexRebuildNotRunning"]["expr"].endswith("> 60")

    def test_export_to_yaml(self, tmp_path):
        output = tmp_path / "alerts.yml"

        AlertRuleGenerator().export_to_yaml(str(output))

        loaded = yaml.safe_load(output.read_text())
        assert loaded == AlertRuleGenerator().generate_alert_rules()
