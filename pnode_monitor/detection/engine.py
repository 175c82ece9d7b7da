from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from pnode_monitor.analytics.stats import round_half_up, z_score
from pnode_monitor.models.nodes import (
    Anomaly,
    AnomalyType,
    MetricSnapshot,
    NodeRecord,
    NodeStatus,
    Severity,
    utc_now,
)


@dataclass(slots=True)
class DetectionContext:
    history: list[MetricSnapshot] | None = None
    previous: NodeRecord | None = None
    now: datetime | None = None


class AnomalyDetector(Protocol):
    name: str

    def detect(self, node: NodeRecord, context: DetectionContext) -> list[Anomaly]: ...


def _mk_anomaly(
    node: NodeRecord,
    anomaly_type: AnomalyType,
    severity: Severity,
    message: str,
    details: dict[str, Any] | None = None,
) -> Anomaly:
    return Anomaly(
        node_id=node.id,
        type=anomaly_type,
        severity=severity,
        message=message,
        details=details or {},
    )


def _offline_anomaly(node: NodeRecord) -> Anomaly:
    return _mk_anomaly(node, AnomalyType.OFFLINE, Severity.CRITICAL, "Node is offline")


@dataclass(slots=True)
class RollingHistoryConfig:
    min_latency_samples: int = 4
    latency_z_threshold: float = 2.5
    latency_z_high: float = 3.0
    peer_drop_ratio: float = 0.6
    storage_high_percent: float = 90.0
    storage_critical_percent: float = 98.0
    storage_growth_ratio: float = 1.2


class RollingHistoryDetector:
    """Compara el nodo contra su propio historial (ruta de analítica en vivo).

    El historial debe incluir ya la entrada del ciclo actual: la última es
    el valor vigente y la penúltima el ciclo anterior.
    """

    name = "rolling_history"

    def __init__(self, config: RollingHistoryConfig | None = None) -> None:
        self.config = config or RollingHistoryConfig()

    def detect(self, node: NodeRecord, context: DetectionContext) -> list[Anomaly]:
        return self.detect_anomalies_for_node(node, context.history or [])

    def detect_anomalies_for_node(self, node: NodeRecord, history: list[MetricSnapshot]) -> list[Anomaly]:
        cfg = self.config
        anomalies: list[Anomaly] = []
        previous = history[-2] if len(history) >= 2 else None

        if node.status is NodeStatus.OFFLINE:
            anomalies.append(_offline_anomaly(node))

        if node.latency and len(history) >= cfg.min_latency_samples:
            series = [entry.latency for entry in history if entry.latency]
            score = z_score(node.latency, series)
            if score >= cfg.latency_z_threshold:
                anomalies.append(
                    _mk_anomaly(
                        node,
                        AnomalyType.LATENCY_SPIKE,
                        Severity.HIGH if score >= cfg.latency_z_high else Severity.MEDIUM,
                        f"Latency anomaly: {int(round_half_up(node.latency))}ms (z={score:.1f})",
                        {"zScore": score},
                    )
                )

        if (
            previous is not None
            and previous.peer_count is not None
            and node.peer_count < previous.peer_count * cfg.peer_drop_ratio
        ):
            anomalies.append(
                _mk_anomaly(
                    node,
                    AnomalyType.PEER_DROP,
                    Severity.MEDIUM,
                    f"Peer drop: {previous.peer_count} → {node.peer_count}",
                    {"previous": previous.peer_count, "current": node.peer_count},
                )
            )

        usage = node.storage_usage_percent
        if usage is not None:
            if usage >= cfg.storage_high_percent:
                anomalies.append(
                    _mk_anomaly(
                        node,
                        AnomalyType.STORAGE_ANOMALY,
                        Severity.HIGH if usage >= cfg.storage_critical_percent else Severity.MEDIUM,
                        f"Storage high: {usage:.1f}%",
                        {"usagePercent": usage},
                    )
                )
            elif (
                previous is not None
                and previous.storage_used
                and node.storage_used > previous.storage_used * cfg.storage_growth_ratio
            ):
                anomalies.append(
                    _mk_anomaly(
                        node,
                        AnomalyType.STORAGE_ANOMALY,
                        Severity.LOW,
                        "Storage grew unusually fast",
                        {"previous": previous.storage_used, "current": node.storage_used},
                    )
                )

        return anomalies


@dataclass(slots=True)
class PreviousStateConfig:
    latency_medium_ms: float = 1000.0
    latency_high_ms: float = 2000.0
    peer_drop_ratio: float = 0.5
    storage_full_percent: float = 95.0
    stale_after_s: float = 3600.0
    lost_after_s: float = 86400.0


class PreviousStateDetector:
    """Umbrales absolutos frente a un único estado previo (ruta de ingesta/alertas)."""

    name = "previous_state"

    def __init__(self, config: PreviousStateConfig | None = None) -> None:
        self.config = config or PreviousStateConfig()

    def detect(self, node: NodeRecord, context: DetectionContext) -> list[Anomaly]:
        return self.detect_anomalies(node, context.previous, now=context.now)

    def detect_anomalies(
        self,
        node: NodeRecord,
        previous: NodeRecord | None = None,
        now: datetime | None = None,
    ) -> list[Anomaly]:
        cfg = self.config
        now = now or utc_now()
        anomalies: list[Anomaly] = []
        last_seen_s = (now - node.last_seen).total_seconds()

        if node.status is NodeStatus.OFFLINE:
            anomalies.append(_offline_anomaly(node))

        if node.latency and node.latency > cfg.latency_medium_ms:
            anomalies.append(
                _mk_anomaly(
                    node,
                    AnomalyType.LATENCY_SPIKE,
                    Severity.HIGH if node.latency > cfg.latency_high_ms else Severity.MEDIUM,
                    f"High latency detected: {int(round_half_up(node.latency))}ms",
                    {"latency": node.latency},
                )
            )

        if previous is not None and node.peer_count < previous.peer_count * cfg.peer_drop_ratio:
            anomalies.append(
                _mk_anomaly(
                    node,
                    AnomalyType.PEER_DROP,
                    Severity.MEDIUM,
                    f"Significant peer count drop: {previous.peer_count} → {node.peer_count}",
                    {"previous": previous.peer_count, "current": node.peer_count},
                )
            )

        usage = node.storage_usage_percent
        if usage is not None and usage > cfg.storage_full_percent:
            anomalies.append(
                _mk_anomaly(
                    node,
                    AnomalyType.STORAGE_ANOMALY,
                    Severity.HIGH,
                    f"Storage nearly full: {usage:.1f}%",
                    {"usagePercent": usage, "used": node.storage_used, "capacity": node.storage_capacity},
                )
            )

        if last_seen_s > cfg.stale_after_s:
            anomalies.append(
                _mk_anomaly(
                    node,
                    AnomalyType.OFFLINE,
                    Severity.CRITICAL if last_seen_s > cfg.lost_after_s else Severity.HIGH,
                    f"Node not seen for {int(round_half_up(last_seen_s / 60))} minutes",
                    {"lastSeenMs": int(last_seen_s * 1000)},
                )
            )

        return anomalies


_ROLLING = RollingHistoryDetector()
_PREVIOUS = PreviousStateDetector()


def detect_anomalies_for_node(node: NodeRecord, history: list[MetricSnapshot]) -> list[Anomaly]:
    return _ROLLING.detect_anomalies_for_node(node, history)


def detect_anomalies(node: NodeRecord, previous: NodeRecord | None = None, now: datetime | None = None) -> list[Anomaly]:
    return _PREVIOUS.detect_anomalies(node, previous, now=now)
