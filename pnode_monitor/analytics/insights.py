from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from pnode_monitor.analytics.health import calculate_health_score
from pnode_monitor.analytics.history import HistoryStore, RollingHistoryStore
from pnode_monitor.analytics.risk import derive_risk_score
from pnode_monitor.detection.engine import AnomalyDetector, DetectionContext, RollingHistoryDetector
from pnode_monitor.models.nodes import Anomaly, HealthScore, NodeRecord, to_epoch_ms, utc_now


@dataclass(slots=True)
class ClientInsights:
    history: HistoryStore = field(default_factory=dict)
    anomalies: dict[str, list[Anomaly]] = field(default_factory=dict)
    risk_scores: dict[str, int] = field(default_factory=dict)
    health_scores: dict[str, HealthScore] = field(default_factory=dict)

    def anomaly_count(self) -> int:
        return sum(len(items) for items in self.anomalies.values())


def compute_insights(
    nodes: list[NodeRecord],
    store: RollingHistoryStore,
    detector: AnomalyDetector | None = None,
    now: datetime | None = None,
) -> ClientInsights:
    """Ejecuta un ciclo de analítica: historial -> anomalías -> salud -> riesgo.

    El historial se amplía ANTES de detectar, de modo que la última entrada
    de cada serie es el valor actual y la penúltima el ciclo anterior.
    """

    now = now or utc_now()
    detector = detector or RollingHistoryDetector()
    history = store.append(nodes, timestamp=to_epoch_ms(now))

    insights = ClientInsights(history=history)
    for node in nodes:
        context = DetectionContext(history=history.get(node.id, []), now=now)
        anomalies = detector.detect(node, context)
        insights.anomalies[node.id] = anomalies
        insights.health_scores[node.id] = calculate_health_score(node, now=now)
        insights.risk_scores[node.id] = derive_risk_score(node, anomalies)
    return insights
