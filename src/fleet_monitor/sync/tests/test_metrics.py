"""
Tests for sync metrics collection.

These tests verify:
- Counters for events, refreshes and the history cache
- Rolling window pruning
- Error tracking and serialization
"""

from unittest.mock import patch

import pytest

from fleet_monitor.sync.metrics import MetricsCollector


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_initial_state(self, metrics):
        snapshot = metrics.get_metrics()

        assert snapshot.channel_connected is False
        assert snapshot.events_applied == 0
        assert snapshot.cache_hit_ratio == 0.0
        assert snapshot.last_event_age_seconds is None
        assert snapshot.started_at is not None

    def test_channel_state(self, metrics):
        metrics.set_channel_connected(True)
        metrics.record_reconnect_scheduled(1.2)
        metrics.record_reconnect_scheduled(2.4)

        snapshot = metrics.get_metrics()

        assert snapshot.channel_connected is True
        assert snapshot.channel_connected_at is not None
        assert snapshot.reconnection_count == 2
        assert snapshot.last_reconnect_delay == 2.4

    def test_event_counters(self, metrics):
        metrics.record_event_applied()
        metrics.record_event_applied()
        metrics.record_event_ignored()
        metrics.record_parse_error()

        snapshot = metrics.get_metrics()

        assert snapshot.events_applied == 2
        assert snapshot.events_ignored == 1
        assert snapshot.parse_errors == 1
        assert snapshot.last_event_at is not None

    def test_cache_hit_ratio(self, metrics):
        metrics.record_cache_miss()
        metrics.record_cache_hit()
        metrics.record_cache_coalesced()
        metrics.record_cache_coalesced()

        assert metrics.get_metrics().cache_hit_ratio == pytest.approx(0.75)

    def test_rolling_window_prunes_old_entries(self):
        collector = MetricsCollector(window_seconds=60)

        with patch.object(collector, "_now", return_value=1000.0):
            collector.record_event_applied()
            collector.record_refresh(success=True)
        with patch.object(collector, "_now", return_value=1100.0):
            collector.record_event_applied()
            snapshot = collector.get_metrics()

        assert snapshot.events_applied == 1
        assert snapshot.refreshes == 0

    def test_errors_tracked(self, metrics):
        metrics.record_error("FetchError", "502", component="rest")
        metrics.record_error("TransportError", "dropped", component="channel")

        snapshot = metrics.get_metrics()

        assert snapshot.errors_last_hour == 2
        assert snapshot.recent_errors[-1].component == "channel"

    def test_to_dict(self, metrics):
        metrics.record_refresh(success=True)
        data = metrics.get_metrics().to_dict()

        assert data["refreshes"] == 1
        assert data["last_refresh_at"] is not None
        assert "cache_hit_ratio" in data

    def test_reset(self, metrics):
        metrics.record_event_applied()
        metrics.record_cache_hit()

        metrics.reset()
        snapshot = metrics.get_metrics()

        assert snapshot.events_applied == 0
        assert snapshot.cache_hits == 0
        assert snapshot.started_at is None
