"""
Tests for MonitoringService: metric rules, alert lifecycle, health rollup,
Prometheus export, retention and the durable/webhook side calls.
"""

import json
from datetime import timedelta

import httpx
import pytest

from preview_orchestrator.monitoring import (
    AlertRule,
    MonitoringService,
    Severity,
)


@pytest.mark.fast
class TestMetricsAndRules:
    def setup_method(self):
        self.monitoring = MonitoringService()

    def test_record_and_query_metrics(self):
        for value in range(5):
            self.monitoring.record_metric("active_sessions", value)
        self.monitoring.record_metric("cpu_usage_percent", 12)

        metrics = self.monitoring.get_metrics("active_sessions", limit=2)

        assert [m.value for m in metrics] == [3.0, 4.0]
        assert len(self.monitoring.get_metrics()) == 6

    def test_metric_below_threshold_raises_nothing(self):
        self.monitoring.record_metric("critical_sessions", 4)

        assert self.monitoring.get_active_alerts() == []

    def test_metric_at_threshold_raises_alert(self):
        self.monitoring.record_metric("critical_sessions", 5)

        alerts = self.monitoring.get_active_alerts()
        assert len(alerts) == 1
        assert alerts[0].type == "high_critical_sessions"
        assert alerts[0].severity == Severity.ERROR
        assert alerts[0].message == "High critical_sessions: 5 (threshold: 5)"

    def test_repeated_breach_refreshes_single_alert(self):
        self.monitoring.record_metric("memory_usage_percent", 91)
        self.monitoring.record_metric("memory_usage_percent", 97)

        alerts = self.monitoring.get_active_alerts()
        assert len(alerts) == 1
        assert alerts[0].occurrences == 2
        assert "97" in alerts[0].message

    def test_custom_rule_operator(self):
        monitoring = MonitoringService(rules=(AlertRule("free_slots", 1, Severity.WARNING, "<"),))

        monitoring.record_metric("free_slots", 3)
        assert monitoring.get_active_alerts() == []
        monitoring.record_metric("free_slots", 0)
        assert monitoring.get_active_alerts()[0].type == "high_free_slots"

    def test_metric_retention_is_bounded(self):
        monitoring = MonitoringService(metrics_retention=3)

        for value in range(10):
            monitoring.record_metric("active_sessions", value)

        assert [m.value for m in monitoring.get_metrics()] == [7.0, 8.0, 9.0]


@pytest.mark.fast
class TestEventsAndAlerts:
    def setup_method(self):
        self.monitoring = MonitoringService()

    def test_info_event_raises_no_alert(self):
        self.monitoring.record_event("session_created", {"session_id": "s-1"})

        assert self.monitoring.get_events("session_created")[0].data == {"session_id": "s-1"}
        assert self.monitoring.get_active_alerts() == []

    def test_error_event_raises_alert(self):
        self.monitoring.record_event("cleanup_failure", {"error": "boom"}, Severity.ERROR)

        alert = self.monitoring.get_active_alerts()[0]
        assert alert.type == "cleanup_failure"
        assert alert.message == "System event: cleanup_failure"

    def test_resolve_unknown_alert(self):
        assert self.monitoring.resolve_alert("nope") is False

    def test_resolve_alert(self):
        alert = self.monitoring.create_alert("disk", "Disk filling", Severity.WARNING)

        assert self.monitoring.resolve_alert(alert.id, "Cleaned tmp") is True

        resolved = self.monitoring.get_alert(alert.id)
        assert resolved.resolved is True
        assert resolved.resolved_at is not None
        assert resolved.resolution == "Cleaned tmp"
        assert self.monitoring.get_active_alerts() == []
        assert self.monitoring.get_events("alert_resolved")[0].data["alert_id"] == alert.id

    def test_default_resolution(self):
        alert = self.monitoring.create_alert("disk", "Disk filling", Severity.WARNING)
        self.monitoring.resolve_alert(alert.id)

        assert self.monitoring.get_alert(alert.id).resolution == "Manual resolution"

    def test_new_alert_after_resolution_gets_new_id(self):
        first = self.monitoring.create_alert("disk", "Disk filling", Severity.WARNING)
        self.monitoring.resolve_alert(first.id)
        second = self.monitoring.create_alert("disk", "Disk filling", Severity.WARNING)

        assert second.id != first.id
        assert len(self.monitoring.get_all_alerts()) == 2

    def test_alert_retention_is_bounded(self):
        monitoring = MonitoringService(alerts_retention=2)
        for index in range(4):
            monitoring.create_alert(f"type_{index}", "msg", Severity.WARNING)

        assert [a.type for a in monitoring.get_all_alerts()] == ["type_2", "type_3"]

    def test_clear_old_data(self, clock):
        monitoring = MonitoringService(clock=clock)
        monitoring.record_metric("active_sessions", 1)
        monitoring.record_event("session_created")
        clock.advance(hours=2)
        monitoring.record_metric("active_sessions", 2)

        cleared = monitoring.clear_old_data(clock() - timedelta(hours=1))

        assert cleared == (1, 1)
        assert [m.value for m in monitoring.get_metrics()] == [2.0]


@pytest.mark.fast
class TestHealthSummary:
    def setup_method(self):
        self.monitoring = MonitoringService()

    def test_healthy_without_alerts(self):
        self.monitoring.record_metric("active_sessions", 3)

        summary = self.monitoring.get_health_summary()

        assert summary["status"] == "healthy"
        assert summary["active_alerts"] == 0
        assert summary["recent_metrics"] == {"active_sessions": 3.0}
        assert summary["uptime_seconds"] >= 0

    def test_warning_with_active_alert(self):
        self.monitoring.create_alert("x", "msg", Severity.WARNING)

        assert self.monitoring.get_health_summary()["status"] == "warning"

    def test_critical_alert_dominates(self):
        self.monitoring.create_alert("x", "msg", Severity.WARNING)
        self.monitoring.create_alert("y", "msg", Severity.CRITICAL)

        summary = self.monitoring.get_health_summary()
        assert summary["status"] == "critical"
        assert summary["critical_alerts"] == 1


@pytest.mark.fast
class TestPrometheusExport:
    def test_latest_value_per_metric_with_help_and_type(self):
        monitoring = MonitoringService()
        monitoring.record_metric("active_sessions", 2)
        monitoring.record_metric("active_sessions", 7)
        monitoring.record_metric("session_provisioning_seconds", 4.5, {"tier": "free"})

        text = monitoring.export_prometheus_metrics()

        assert "# HELP active_sessions Number of active preview sessions" in text
        assert "# TYPE active_sessions gauge" in text
        assert "active_sessions 7.0" in text
        assert "active_sessions 2.0" not in text
        assert 'session_provisioning_seconds{tier="free"} 4.5' in text

    def test_unknown_metric_gets_generic_help(self):
        monitoring = MonitoringService()
        monitoring.record_metric("queue-depth", 1)

        text = monitoring.export_prometheus_metrics()

        assert "# HELP queue_depth System metric: queue-depth" in text

    def test_leading_digit_and_bad_label_names_are_coerced(self):
        monitoring = MonitoringService()
        monitoring.record_metric("5xx_responses", 3, {"status-class": "5xx"})

        text = monitoring.export_prometheus_metrics()

        assert "# TYPE _5xx_responses gauge" in text
        assert '_5xx_responses{status_class="5xx"} 3.0' in text

    def test_empty_export(self):
        assert MonitoringService().export_prometheus_metrics() == ""


@pytest.mark.medium
class TestSideCalls:
    @pytest.mark.asyncio
    async def test_significant_records_reach_audit_store(self, monitoring, store):
        monitoring.record_event("session_created", {"session_id": "s-1"})
        monitoring.record_event("session_creation_failed", {"session_id": "s-2"}, Severity.ERROR)
        await monitoring.flush()

        events = await store.list_persisted_events()
        alerts = await store.list_persisted_alerts()
        assert [e["event_type"] for e in events] == ["session_creation_failed"]
        assert [a["alert_type"] for a in alerts] == ["session_creation_failed"]

    @pytest.mark.asyncio
    async def test_warning_alert_is_not_persisted(self, monitoring, store):
        monitoring.create_alert("slow", "Slow", Severity.WARNING)
        await monitoring.flush()

        assert await store.list_persisted_alerts() == []

    @pytest.mark.asyncio
    async def test_critical_alert_posts_webhook(self):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(200)

        monitoring = MonitoringService(webhook_url="https://hooks.test/alerts",
                                       http_transport=httpx.MockTransport(handler))
        monitoring.create_alert("warn", "Warn", Severity.WARNING)
        monitoring.create_alert("down", "Down", Severity.CRITICAL)
        await monitoring.flush()

        assert len(received) == 1
        assert received[0]["type"] == "alert"
        assert received[0]["service"] == "preview-orchestrator"
        assert received[0]["alert"]["type"] == "down"

    @pytest.mark.asyncio
    async def test_webhook_failure_is_swallowed(self):
        monitoring = MonitoringService(
            webhook_url="https://hooks.test/alerts",
            http_transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        alert = monitoring.create_alert("down", "Down", Severity.CRITICAL)
        await monitoring.flush()

        assert monitoring.get_alert(alert.id) is alert

    def test_side_calls_skipped_without_event_loop(self, store):
        monitoring = MonitoringService(audit_sink=store)

        monitoring.record_event("boom", severity=Severity.CRITICAL)

        assert len(monitoring.get_active_alerts()) == 1
