"""
Tests for per-entity serving metrics, alerts and export.
"""

import json

import pytest

from talentml.exceptions import ConfigurationError
from talentml.services.metrics_collector import CSV_HEADER, MetricsCollector


class TestRecordRequest:
    """Tests for counters and running averages."""

    def test_counts_and_averages(self):
        collector = MetricsCollector()
        collector.record_request("model-1", "model", True, score=0.2, latency_ms=10)
        collector.record_request("model-1", "model", True, score=0.4, latency_ms=20)
        metrics = collector.record_request("model-1", "model", False, latency_ms=30)

        assert metrics.total_requests == 3
        assert metrics.successful_requests == 2
        assert metrics.failed_requests == 1
        assert metrics.average_score == pytest.approx(0.3)
        assert metrics.average_latency_ms == pytest.approx(20.0)
        assert metrics.error_rate == pytest.approx(1 / 3)

    def test_returned_metrics_are_copies(self):
        """Callers cannot mutate the collector's state."""
        collector = MetricsCollector()
        metrics = collector.record_request("model-1", "model", True, score=0.5)
        metrics.total_requests = 100

        assert collector.get_metrics("model-1").total_requests == 1

    def test_unknown_entity(self):
        assert MetricsCollector().get_metrics("missing") is None

    def test_reset(self):
        collector = MetricsCollector(min_requests_for_alerts=1)
        collector.record_request("model-1", "model", False)
        collector.reset("model-1")

        metrics = collector.get_metrics("model-1")
        assert metrics.total_requests == 0
        assert metrics.entity_type == "model"
        assert collector.get_alerts() == []


class TestAlerts:
    """Tests for threshold alerts."""

    def test_no_alerts_before_minimum_requests(self):
        """Nine failures are not enough to alert."""
        collector = MetricsCollector(min_requests_for_alerts=10)
        for _ in range(9):
            collector.record_request("model-1", "model", False)

        assert collector.get_alerts() == []

    def test_failures_raise_critical_alerts(self):
        collector = MetricsCollector(min_requests_for_alerts=10)
        for _ in range(10):
            collector.record_request("model-1", "model", False)

        alert_types = {a.alert_type for a in collector.get_alerts()}
        assert {"high_error_rate", "low_success_rate"} <= alert_types
        assert all(a.severity == "critical" for a in collector.get_alerts())

    def test_latency_alert_severity(self):
        """1.6x the latency threshold is a high severity alert."""
        collector = MetricsCollector(thresholds={"max_latency_ms": 100.0}, min_requests_for_alerts=1)
        collector.record_request("model-1", "model", True, score=0.5, latency_ms=160.0)

        alerts = collector.get_alerts()
        assert [a.alert_type for a in alerts] == ["high_latency"]
        assert alerts[0].severity == "high"
        assert collector.get_alerts("critical") == []

    def test_clear_alerts(self):
        collector = MetricsCollector(min_requests_for_alerts=1)
        collector.record_request("model-1", "model", False)
        collector.record_request("ab-1", "ab_test", False)

        collector.clear_alerts("model-1")

        assert {a.entity_id for a in collector.get_alerts()} == {"ab-1"}


class TestSnapshotsAndExport:
    """Tests for snapshots and JSON/CSV export."""

    def test_take_snapshot(self):
        collector = MetricsCollector()
        collector.record_request("model-1", "model", True, score=0.5)
        collector.record_request("ab-1", "ab_test", True, score=0.5)

        assert {s.entity_id for s in collector.take_snapshot()} == {"model-1", "ab-1"}
        assert [s.entity_id for s in collector.take_snapshot("ab-1")] == ["ab-1"]
        assert collector.take_snapshot("missing") == []

    def test_export_json(self):
        collector = MetricsCollector()
        collector.record_request("model-1", "model", True, score=0.5, latency_ms=12)
        collector.take_snapshot()

        document = json.loads(collector.export_data("json"))

        assert set(document) == {"metrics", "snapshots", "alerts", "timestamp"}
        assert document["metrics"]["model-1"]["total_requests"] == 1
        assert len(document["snapshots"]) == 1

    def test_export_csv(self):
        """One header row plus one row per entity."""
        collector = MetricsCollector()
        collector.record_request("model-1", "model", True, score=0.25, latency_ms=12)
        collector.record_request("ab-1", "ab_test", False)

        lines = collector.export_data("csv").split("\n")

        assert lines[0] == ",".join(CSV_HEADER)
        assert len(lines) == 3
        row = dict(zip(CSV_HEADER, lines[1].split(",")))
        assert row["entity_id"] == "model-1"
        assert row["average_score"] == "0.2500"

    def test_export_empty_csv(self):
        assert MetricsCollector().export_data("csv") == ",".join(CSV_HEADER)

    def test_unsupported_format(self):
        with pytest.raises(ConfigurationError):
            MetricsCollector().export_data("xml")
