"""
Per-entity serving metrics with snapshots, alerts and export.

Tracks request counts, average score and average latency for every model
and A/B test that serves predictions. Thresholds raise alerts when an
entity gets slow or starts failing. Everything can be exported as a JSON
document or as a flat CSV with one row per entity.
"""

import csv
import io
import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from talentml.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CSV_HEADER = [
    "entity_id",
    "entity_type",
    "timestamp",
    "total_requests",
    "successful_requests",
    "failed_requests",
    "average_score",
    "average_latency_ms",
    "error_rate",
]

DEFAULT_THRESHOLDS = {
    "max_latency_ms": 5000.0,
    "max_error_rate": 0.1,
    "min_success_rate": 0.9,
}

MAX_HISTORY = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _severity(value: float, threshold: float) -> str:
    if threshold <= 0:
        return "critical" if value > 0 else "low"
    ratio = value / threshold
    if ratio >= 2:
        return "critical"
    if ratio >= 1.5:
        return "high"
    if ratio >= 1.2:
        return "medium"
    return "low"


@dataclass
class EntityMetrics:
    entity_id: str
    entity_type: str  # model, ab_test
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_score: float = 0.0
    average_latency_ms: float = 0.0

    @property
    def error_rate(self) -> float:
        return self.failed_requests / self.total_requests if self.total_requests else 0.0

    @property
    def success_rate(self) -> float:
        return self.successful_requests / self.total_requests if self.total_requests else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["error_rate"] = self.error_rate
        return data


@dataclass
class MetricsSnapshot:
    timestamp: datetime
    entity_id: str
    entity_type: str
    metrics: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "metrics": self.metrics,
        }


@dataclass
class PerformanceAlert:
    entity_id: str
    entity_type: str
    alert_type: str  # high_latency, high_error_rate, low_success_rate
    severity: str
    message: str
    value: float
    threshold: float
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class MetricsCollector:
    """
    Thread-safe collector of per-entity serving metrics.

    Alerts are only evaluated once an entity has served
    min_requests_for_alerts requests, so a single early failure does not
    raise a critical alert.
    """

    def __init__(self, thresholds: Optional[Dict[str, float]] = None, min_requests_for_alerts: int = 10):
        self.thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self.min_requests_for_alerts = min_requests_for_alerts
        self._metrics: Dict[str, EntityMetrics] = {}
        self._snapshots: List[MetricsSnapshot] = []
        self._alerts: List[PerformanceAlert] = []
        self._lock = threading.Lock()

    def record_request(
        self,
        entity_id: str,
        entity_type: str,
        success: bool,
        score: Optional[float] = None,
        latency_ms: float = 0.0,
    ) -> EntityMetrics:
        with self._lock:
            metrics = self._metrics.get(entity_id)
            if metrics is None:
                metrics = EntityMetrics(entity_id=entity_id, entity_type=entity_type)
                self._metrics[entity_id] = metrics

            metrics.total_requests += 1
            metrics.average_latency_ms += (latency_ms - metrics.average_latency_ms) / metrics.total_requests

            if success:
                metrics.successful_requests += 1
                if score is not None:
                    metrics.average_score += (score - metrics.average_score) / metrics.successful_requests
            else:
                metrics.failed_requests += 1

            alerts = self._check_alerts(metrics)
            snapshot = EntityMetrics(**asdict(metrics))

        for alert in alerts:
            logger.warning(f"Performance alert for {alert.entity_type} {alert.entity_id}: {alert.message}")

        return snapshot

    def _check_alerts(self, metrics: EntityMetrics) -> List[PerformanceAlert]:
        if metrics.total_requests < self.min_requests_for_alerts:
            return []

        alerts = []
        max_latency = self.thresholds["max_latency_ms"]
        if metrics.average_latency_ms > max_latency:
            alerts.append(PerformanceAlert(
                entity_id=metrics.entity_id,
                entity_type=metrics.entity_type,
                alert_type="high_latency",
                severity=_severity(metrics.average_latency_ms, max_latency),
                message=f"Average latency ({metrics.average_latency_ms:.2f}ms) exceeds threshold ({max_latency:.0f}ms)",
                value=metrics.average_latency_ms,
                threshold=max_latency,
            ))

        max_error_rate = self.thresholds["max_error_rate"]
        if metrics.error_rate > max_error_rate:
            alerts.append(PerformanceAlert(
                entity_id=metrics.entity_id,
                entity_type=metrics.entity_type,
                alert_type="high_error_rate",
                severity=_severity(metrics.error_rate, max_error_rate),
                message=f"Error rate ({metrics.error_rate * 100:.2f}%) exceeds threshold ({max_error_rate * 100:.2f}%)",
                value=metrics.error_rate,
                threshold=max_error_rate,
            ))

        min_success_rate = self.thresholds["min_success_rate"]
        if metrics.success_rate < min_success_rate:
            alerts.append(PerformanceAlert(
                entity_id=metrics.entity_id,
                entity_type=metrics.entity_type,
                alert_type="low_success_rate",
                severity=_severity(min_success_rate, metrics.success_rate) if metrics.success_rate else "critical",
                message=f"Success rate ({metrics.success_rate * 100:.2f}%) below threshold ({min_success_rate * 100:.2f}%)",
                value=metrics.success_rate,
                threshold=min_success_rate,
            ))

        self._alerts.extend(alerts)
        if len(self._alerts) > MAX_HISTORY:
            self._alerts = self._alerts[-MAX_HISTORY:]
        return alerts

    def get_metrics(self, entity_id: str) -> Optional[EntityMetrics]:
        with self._lock:
            metrics = self._metrics.get(entity_id)
            return EntityMetrics(**asdict(metrics)) if metrics else None

    def take_snapshot(self, entity_id: Optional[str] = None) -> List[MetricsSnapshot]:
        """Snapshot one entity, or every tracked entity when entity_id is None."""
        now = _utcnow()
        with self._lock:
            targets = (
                [self._metrics[entity_id]] if entity_id in self._metrics
                else [] if entity_id is not None
                else list(self._metrics.values())
            )
            taken = [
                MetricsSnapshot(timestamp=now, entity_id=m.entity_id, entity_type=m.entity_type, metrics=m.to_dict())
                for m in targets
            ]
            self._snapshots.extend(taken)
            if len(self._snapshots) > MAX_HISTORY:
                self._snapshots = self._snapshots[-MAX_HISTORY:]

        logger.debug(f"Took {len(taken)} metrics snapshots")
        return taken

    def get_alerts(self, severity: Optional[str] = None) -> List[PerformanceAlert]:
        with self._lock:
            return [a for a in self._alerts if severity is None or a.severity == severity]

    def clear_alerts(self, entity_id: str) -> None:
        with self._lock:
            self._alerts = [a for a in self._alerts if a.entity_id != entity_id]
        logger.info(f"Cleared alerts for {entity_id}")

    def reset(self, entity_id: str) -> None:
        with self._lock:
            metrics = self._metrics.get(entity_id)
            if metrics is not None:
                self._metrics[entity_id] = EntityMetrics(entity_id=entity_id, entity_type=metrics.entity_type)
            self._alerts = [a for a in self._alerts if a.entity_id != entity_id]
        logger.info(f"Reset metrics for {entity_id}")

    def export_data(self, format: str = "json") -> str:
        """
        Export everything collected so far.

        Args:
            format: "json" for the full document (metrics, snapshots, alerts,
                timestamp) or "csv" for one row per entity

        Raises:
            ConfigurationError: For any other format
        """
        now = _utcnow()
        with self._lock:
            metrics = [m.to_dict() for m in self._metrics.values()]
            snapshots = [s.to_dict() for s in self._snapshots]
            alerts = [a.to_dict() for a in self._alerts]

        if format == "json":
            return json.dumps(
                {
                    "metrics": {m["entity_id"]: m for m in metrics},
                    "snapshots": snapshots,
                    "alerts": alerts,
                    "timestamp": now.isoformat(),
                },
                indent=2,
            )

        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(CSV_HEADER)
            for m in metrics:
                writer.writerow([
                    m["entity_id"],
                    m["entity_type"],
                    now.isoformat(),
                    m["total_requests"],
                    m["successful_requests"],
                    m["failed_requests"],
                    f"{m['average_score']:.4f}",
                    f"{m['average_latency_ms']:.2f}",
                    f"{m['error_rate']:.4f}",
                ])
            return buffer.getvalue().rstrip("\n")

        raise ConfigurationError(f"Unsupported export format: {format}. Supported: json, csv")


_collector_instance: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    global _collector_instance

    if _collector_instance is None:
        _collector_instance = MetricsCollector()

    return _collector_instance
