from __future__ import annotations

from pnode_monitor.analytics.stats import round_half_up
from pnode_monitor.models.nodes import Anomaly, NodeRecord, NodeStatus, RiskLevel, Severity

SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.CRITICAL: 35,
    Severity.HIGH: 20,
    Severity.MEDIUM: 12,
    Severity.LOW: 6,
}

OFFLINE_RISK_SCORE = 5


def derive_risk_score(node: NodeRecord, anomalies: list[Anomaly]) -> int:
    # Más alto es más seguro: 100 significa ninguna señal de riesgo.
    if node.status is NodeStatus.OFFLINE:
        return OFFLINE_RISK_SCORE

    score = 100.0
    if node.status is NodeStatus.UNKNOWN:
        score -= 15

    if node.latency is not None:
        if node.latency > 2000:
            score -= 30
        elif node.latency > 1000:
            score -= 18
        elif node.latency > 500:
            score -= 10

    if node.peer_count < 5:
        score -= 20
    elif node.peer_count < 10:
        score -= 10

    usage = node.storage_usage_percent
    if usage is not None:
        if usage > 95:
            score -= 25
        elif usage > 85:
            score -= 12

    if node.uptime and node.uptime < 24 * 3600:
        score -= 10

    for anomaly in anomalies:
        score -= SEVERITY_WEIGHTS.get(anomaly.severity, 0)

    return int(max(0, min(100, round_half_up(score))))


def risk_status_label(score: float) -> RiskLevel:
    if score >= 70:
        return RiskLevel.LOW
    if score >= 40:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH
