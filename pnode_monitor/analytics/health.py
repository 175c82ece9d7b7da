from __future__ import annotations

from datetime import datetime

from pnode_monitor.analytics.stats import round_half_up
from pnode_monitor.models.nodes import HealthFactors, HealthScore, HealthStatus, NodeRecord, NodeStatus, utc_now

SECONDS_PER_DAY = 24 * 3600


def health_status_label(score: float) -> HealthStatus:
    if score >= 80:
        return HealthStatus.HEALTHY
    if score >= 50:
        return HealthStatus.WARNING
    return HealthStatus.CRITICAL


def _blend(score: float, factor: float, keep: float, weight: float) -> float:
    return score * keep + factor * weight


def calculate_health_score(node: NodeRecord, now: datetime | None = None) -> HealthScore:
    """Puntuación compuesta 0-100 a partir del estado actual del nodo.

    Es una reducción secuencial: cada factor se mezcla con la puntuación ya
    parcialmente mezclada, en el orden uptime -> latencia -> peers ->
    last seen -> almacenamiento. Reordenar los pasos cambia el resultado.
    Los factores sin datos quedan en 100 (neutros).
    """

    now = now or utc_now()
    factors = HealthFactors()
    score = 100.0

    if node.uptime:
        uptime_days = node.uptime / SECONDS_PER_DAY
        factors.uptime = min(100, uptime_days / 30 * 100)
        score = _blend(score, factors.uptime, 0.3, 0.3)

    if node.latency is not None:
        if node.latency < 100:
            factors.latency = 100
        elif node.latency < 500:
            factors.latency = 80
        elif node.latency < 1000:
            factors.latency = 60
        else:
            factors.latency = 40
        score = _blend(score, factors.latency, 0.8, 0.2)

    if node.peer_count < 5:
        factors.peer_count = 50
    elif node.peer_count < 10:
        factors.peer_count = 70
    elif node.peer_count < 20:
        factors.peer_count = 85
    else:
        factors.peer_count = 100
    score = _blend(score, factors.peer_count, 0.8, 0.2)

    last_seen_minutes = (now - node.last_seen).total_seconds() / 60
    if last_seen_minutes < 5:
        factors.last_seen = 100
    elif last_seen_minutes < 15:
        factors.last_seen = 80
    elif last_seen_minutes < 60:
        factors.last_seen = 60
    else:
        factors.last_seen = 30
    score = _blend(score, factors.last_seen, 0.85, 0.15)

    usage = node.storage_usage_percent
    if usage is not None:
        if usage < 70:
            factors.storage_usage = 100
        elif usage < 85:
            factors.storage_usage = 80
        elif usage < 95:
            factors.storage_usage = 60
        else:
            factors.storage_usage = 30
        score = _blend(score, factors.storage_usage, 0.85, 0.15)

    if node.status is NodeStatus.OFFLINE:
        score = min(score, 20)
    elif node.status is NodeStatus.UNKNOWN:
        score = min(score, 50)

    final_score = int(round_half_up(max(0.0, min(100.0, score))))
    return HealthScore(
        node_id=node.id,
        score=final_score,
        status=health_status_label(final_score),
        factors=factors,
    )


def calculate_all_health_scores(nodes: list[NodeRecord], now: datetime | None = None) -> dict[str, HealthScore]:
    now = now or utc_now()
    return {node.id: calculate_health_score(node, now=now) for node in nodes}
