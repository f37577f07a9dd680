"""
Monitoring and alerting service for the preview orchestrator.

Every component feeds the same three calls: record_metric, record_event and
create_alert. The service keeps bounded in-memory buffers of each, evaluates
threshold rules after every metric, rolls active alerts up into a health summary
and exports the latest value of every metric in Prometheus text format.

Significant records (severity error or critical) are also handed to an audit
sink for durable storage, and critical alerts are posted to an optional webhook.
Both side calls run as background tasks off the caller's path; their outcome is
logged and otherwise discarded.
"""

import asyncio
import re
import time
from collections import OrderedDict, deque
from collections.abc import Callable, Coroutine, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import httpx
import structlog
from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily

logger = structlog.get_logger(__name__)

SERVICE_NAME = "preview-orchestrator"

METRIC_HELP = {
    "active_sessions": "Number of active preview sessions",
    "healthy_sessions": "Number of healthy preview sessions",
    "warning_sessions": "Number of sessions with warnings",
    "critical_sessions": "Number of sessions in critical state",
    "orphaned_machines_cleaned": "Number of orphaned machines cleaned up",
    "memory_usage_percent": "Orchestrator host memory usage percent",
    "cpu_usage_percent": "Orchestrator host CPU usage percent",
    "session_provisioning_seconds": "Time taken to provision a preview session",
}

SUMMARY_METRICS = ("active_sessions", "healthy_sessions", "warning_sessions", "critical_sessions")

_INVALID_METRIC_CHARS = re.compile(r"[^a-zA-Z0-9_:]")
_INVALID_LABEL_CHARS = re.compile(r"[^a-zA-Z0-9_]")


def prometheus_name(name: str, pattern: re.Pattern[str] = _INVALID_METRIC_CHARS) -> str:
    """Coerce a metric or label name into the Prometheus exposition charset."""
    name = pattern.sub("_", name) or "_"
    return f"_{name}" if name[0].isdigit() else name


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    def __str__(self) -> str:
        return self.value

    @property
    def is_significant(self) -> bool:
        return self in (Severity.ERROR, Severity.CRITICAL)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Metric:
    name: str
    value: float
    timestamp: datetime
    tags: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "tags": dict(self.tags),
        }


@dataclass(frozen=True)
class Event:
    type: str
    data: dict[str, Any]
    timestamp: datetime
    severity: Severity = Severity.INFO

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
        }


@dataclass
class Alert:
    id: str
    type: str
    message: str
    severity: Severity
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    resolved_at: datetime | None = None
    resolution: str | None = None
    occurrences: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution,
            "occurrences": self.occurrences,
        }


@dataclass(frozen=True)
class AlertRule:
    """Raise an alert of type ``high_<metric>`` when a metric crosses a threshold."""

    metric_name: str
    threshold: float
    severity: Severity
    operator: str = ">="

    @property
    def alert_type(self) -> str:
        return f"high_{self.metric_name}"


DEFAULT_ALERT_RULES = (
    AlertRule("critical_sessions", 5, Severity.ERROR),
    AlertRule("active_sessions", 50, Severity.WARNING),
    AlertRule("memory_usage_percent", 90, Severity.CRITICAL),
    AlertRule("cpu_usage_percent", 85, Severity.WARNING),
)

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": lambda v, t: v > t,
    "<": lambda v, t: v < t,
    ">=": lambda v, t: v >= t,
    "<=": lambda v, t: v <= t,
    "==": lambda v, t: abs(v - t) < 1e-9,
    "!=": lambda v, t: abs(v - t) >= 1e-9,
}


class AuditSink(Protocol):
    async def persist_event(self, event: dict[str, Any]) -> None: ...

    async def persist_alert(self, alert: dict[str, Any]) -> None: ...


class _LatestValueCollector:
    """Prometheus collector exposing the newest sample of every buffered metric."""

    def __init__(self, service: "MonitoringService"):
        self._service = service

    def collect(self) -> Iterator[GaugeMetricFamily]:
        for metric in self._service.latest_metrics():
            tags = sorted(metric.tags)
            family = GaugeMetricFamily(
                prometheus_name(metric.name),
                METRIC_HELP.get(metric.name, f"System metric: {metric.name}"),
                labels=[prometheus_name(tag, _INVALID_LABEL_CHARS) for tag in tags],
            )
            family.add_metric([str(metric.tags[tag]) for tag in tags], metric.value)
            yield family


class MonitoringService:
    """
    Process-scoped metrics, events and alerts with bounded retention.

    Args:
        metrics_retention: Maximum metrics kept in memory
        events_retention: Maximum events kept in memory
        alerts_retention: Maximum alerts (active or resolved) kept in memory
        audit_sink: Durable storage for significant events and alerts
        webhook_url: Endpoint notified of critical alerts
        rules: Metric threshold rules, defaults to DEFAULT_ALERT_RULES
    """

    def __init__(
        self,
        metrics_retention: int = 1000,
        events_retention: int = 500,
        alerts_retention: int = 500,
        audit_sink: AuditSink | None = None,
        webhook_url: str | None = None,
        rules: tuple[AlertRule, ...] = DEFAULT_ALERT_RULES,
        clock: Callable[[], datetime] = utc_now,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._metrics: deque[Metric] = deque(maxlen=metrics_retention)
        self._events: deque[Event] = deque(maxlen=events_retention)
        self._alerts: OrderedDict[str, Alert] = OrderedDict()
        self._alerts_retention = alerts_retention
        self._rules = {rule.metric_name: rule for rule in rules}
        self._audit_sink = audit_sink
        self._webhook_url = webhook_url
        self._http_transport = http_transport
        self._clock = clock
        self._started = time.monotonic()
        self._pending: set[asyncio.Task] = set()

        self._registry = CollectorRegistry()
        self._registry.register(_LatestValueCollector(self))

    # Recording

    def record_metric(self, name: str, value: float, tags: dict[str, str] | None = None) -> Metric:
        metric = Metric(name=name, value=float(value), timestamp=self._clock(), tags=dict(tags or {}))
        self._metrics.append(metric)
        logger.debug("Metric recorded", metric=name, value=value, tags=tags)
        self.check_metric_alerts(metric)
        return metric

    def record_event(self, event_type: str, data: dict[str, Any] | None = None,
                     severity: Severity = Severity.INFO) -> Event:
        event = Event(type=event_type, data=dict(data or {}), timestamp=self._clock(),
                      severity=severity)
        self._events.append(event)

        log = logger.warning if severity.is_significant else logger.info
        log("Event recorded", event_type=event_type, severity=severity.value, data=event.data)

        if severity.is_significant:
            self.create_alert(event_type, f"System event: {event_type}", severity, event.data)
            self._spawn(self._persist("event", event.to_dict()), "persist_event")
        return event

    def create_alert(self, alert_type: str, message: str, severity: Severity,
                     data: dict[str, Any] | None = None) -> Alert:
        """
        Raise an alert.

        An unresolved alert of the same type is refreshed in place rather than
        duplicated; the refresh counts as a new occurrence.
        """
        now = self._clock()
        existing = self._find_active(alert_type)
        if existing is not None:
            existing.message = message
            existing.severity = severity
            existing.timestamp = now
            existing.data = dict(data or {})
            existing.occurrences += 1
            alert = existing
        else:
            alert_id = f"{alert_type}-{int(now.timestamp() * 1000)}"
            suffix = 1
            while alert_id in self._alerts:
                suffix += 1
                alert_id = f"{alert_type}-{int(now.timestamp() * 1000)}-{suffix}"
            alert = Alert(id=alert_id, type=alert_type, message=message, severity=severity,
                          timestamp=now, data=dict(data or {}))
            self._alerts[alert_id] = alert
            while len(self._alerts) > self._alerts_retention:
                self._alerts.popitem(last=False)

        logger.warning("Alert raised", alert_id=alert.id, alert_type=alert_type,
                       severity=severity.value, message=message)

        if severity.is_significant:
            self._spawn(self._persist("alert", alert.to_dict()), "persist_alert")
        if severity == Severity.CRITICAL and self._webhook_url:
            self._spawn(self._send_webhook(alert.to_dict()), "webhook")
        return alert

    def resolve_alert(self, alert_id: str, resolution: str | None = None) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return False

        alert.resolved = True
        alert.resolved_at = self._clock()
        alert.resolution = resolution or "Manual resolution"
        logger.info("Alert resolved", alert_id=alert_id, alert_type=alert.type)

        self.record_event("alert_resolved", {
            "alert_id": alert_id,
            "type": alert.type,
            "resolution": alert.resolution,
        })
        if alert.severity.is_significant:
            self._spawn(self._persist("alert", alert.to_dict()), "persist_alert")
        return True

    def check_metric_alerts(self, metric: Metric) -> Alert | None:
        rule = self._rules.get(metric.name)
        if rule is None:
            return None
        compare = _OPERATORS.get(rule.operator)
        if compare is None:
            logger.error("Unknown alert operator", operator=rule.operator, metric=metric.name)
            return None
        if not compare(metric.value, rule.threshold):
            return None
        return self.create_alert(
            rule.alert_type,
            f"High {metric.name}: {metric.value:g} (threshold: {rule.threshold:g})",
            rule.severity,
            {"metric": metric.to_dict()},
        )

    # Queries

    def get_metrics(self, name: str | None = None, limit: int = 100) -> list[Metric]:
        metrics = [m for m in self._metrics if name is None or m.name == name]
        return metrics[-limit:] if limit > 0 else []

    def get_events(self, event_type: str | None = None, limit: int = 50) -> list[Event]:
        events = [e for e in self._events if event_type is None or e.type == event_type]
        return events[-limit:] if limit > 0 else []

    def get_alert(self, alert_id: str) -> Alert | None:
        return self._alerts.get(alert_id)

    def get_active_alerts(self) -> list[Alert]:
        return [alert for alert in self._alerts.values() if not alert.resolved]

    def get_all_alerts(self, limit: int = 100) -> list[Alert]:
        alerts = list(self._alerts.values())
        return alerts[-limit:] if limit > 0 else []

    def latest_metrics(self) -> list[Metric]:
        latest: dict[str, Metric] = {}
        for metric in self._metrics:
            latest[metric.name] = metric
        return list(latest.values())

    def get_health_summary(self) -> dict[str, Any]:
        active = self.get_active_alerts()
        critical = sum(1 for alert in active if alert.severity == Severity.CRITICAL)
        if critical:
            status = "critical"
        elif active:
            status = "warning"
        else:
            status = "healthy"

        recent = {}
        for name in SUMMARY_METRICS:
            latest = self.get_metrics(name, 1)
            if latest:
                recent[name] = latest[0].value

        return {
            "status": status,
            "active_alerts": len(active),
            "critical_alerts": critical,
            "recent_metrics": recent,
            "uptime_seconds": round(time.monotonic() - self._started, 3),
        }

    def export_prometheus_metrics(self) -> str:
        return generate_latest(self._registry).decode("utf-8")

    def clear_old_data(self, older_than: datetime) -> tuple[int, int]:
        """Drop metrics and events recorded at or before ``older_than``."""
        metrics_before, events_before = len(self._metrics), len(self._events)
        kept_metrics = [m for m in self._metrics if m.timestamp > older_than]
        kept_events = [e for e in self._events if e.timestamp > older_than]
        self._metrics.clear()
        self._metrics.extend(kept_metrics)
        self._events.clear()
        self._events.extend(kept_events)
        cleared = (metrics_before - len(self._metrics), events_before - len(self._events))
        logger.info("Cleared old monitoring data", metrics=cleared[0], events=cleared[1])
        return cleared

    # Side calls

    def _find_active(self, alert_type: str) -> Alert | None:
        for alert in reversed(self._alerts.values()):
            if alert.type == alert_type and not alert.resolved:
                return alert
        return None

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, skipping side call", call=name)
            return
        task = loop.create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, kind: str, record: dict[str, Any]) -> None:
        if self._audit_sink is None:
            return
        try:
            if kind == "event":
                await self._audit_sink.persist_event(record)
            else:
                await self._audit_sink.persist_alert(record)
        except Exception as e:
            logger.error("Failed to persist monitoring record", kind=kind, error=str(e))

    async def _send_webhook(self, alert: dict[str, Any]) -> None:
        payload = {"type": "alert", "alert": alert, "service": SERVICE_NAME}
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._http_transport) as client:
                response = await client.post(self._webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Webhook alert failed", alert_id=alert["id"], error=type(e).__name__)
            return
        logger.info("Webhook alert sent", alert_id=alert["id"])

    async def flush(self) -> None:
        """Wait for outstanding persistence and webhook calls."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.flush()
