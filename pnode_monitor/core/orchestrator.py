from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pnode_monitor.analytics.health import calculate_health_score
from pnode_monitor.analytics.history import JsonFileBackend, RollingHistoryStore
from pnode_monitor.analytics.insights import ClientInsights, compute_insights
from pnode_monitor.analytics.network_history import NetworkHistory, build_network_snapshot
from pnode_monitor.config.settings import AppSettings
from pnode_monitor.detection.engine import DetectionContext, PreviousStateDetector, RollingHistoryDetector
from pnode_monitor.errors import RpcError
from pnode_monitor.models.nodes import Anomaly, NetworkSnapshot, NodeRecord, utc_now
from pnode_monitor.rpc.client import ChainMetrics, PrpcClient
from pnode_monitor.storage.repository import MonitorRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IngestResult:
    nodes: int
    alerts: int
    suppressed: int
    snapshot: NetworkSnapshot
    chain_metrics: ChainMetrics | None = None


@dataclass(slots=True)
class CycleResult:
    insights: ClientInsights
    network_snapshot: NetworkSnapshot
    ingest: IngestResult | None = None
    anomalies: list[Anomaly] = field(default_factory=list)


class IngestionService:
    """Ruta de ingesta del servidor: persiste el ciclo y genera alertas deduplicadas."""

    def __init__(
        self,
        repository: MonitorRepository,
        detector: PreviousStateDetector | None = None,
        dedup_window_s: float = 3600.0,
    ) -> None:
        self.repository = repository
        self.detector = detector or PreviousStateDetector()
        self.dedup_window = timedelta(seconds=dedup_window_s)

    def ingest(
        self,
        nodes: list[NodeRecord],
        chain_metrics: ChainMetrics | None = None,
        now: datetime | None = None,
    ) -> IngestResult:
        now = now or utc_now()
        previous_nodes = self.repository.previous_nodes([node.id for node in nodes])
        dedup_since = now - self.dedup_window

        pending: list[Anomaly] = []
        suppressed = 0
        for node in nodes:
            self.repository.upsert_node(node, now=now)
            health = calculate_health_score(node, now=now)
            self.repository.add_node_history(node, health.score, timestamp=now)

            context = DetectionContext(previous=previous_nodes.get(node.id), now=now)
            for anomaly in self.detector.detect(node, context):
                if self.repository.has_recent_alert(node.id, anomaly.type.value, dedup_since):
                    suppressed += 1
                    continue
                anomaly.timestamp = now
                pending.append(anomaly)

        snapshot = build_network_snapshot(nodes, now=now)
        self.repository.add_network_snapshot(snapshot)
        saved = self.repository.save_alerts(pending)

        if chain_metrics is not None and not chain_metrics.empty:
            self.repository.add_chain_metrics(
                chain_metrics.tps,
                chain_metrics.block_time_ms,
                chain_metrics.slot,
                chain_metrics.epoch,
                now=now,
            )

        logger.info(
            "event=ingest_completed nodes=%d alerts=%d suppressed=%d healthy=%d warning=%d critical=%d",
            len(nodes),
            saved,
            suppressed,
            snapshot.healthy_nodes,
            snapshot.warning_nodes,
            snapshot.critical_nodes,
        )
        return IngestResult(
            nodes=len(nodes),
            alerts=saved,
            suppressed=suppressed,
            snapshot=snapshot,
            chain_metrics=chain_metrics,
        )


class MonitorOrchestrator:
    def __init__(
        self,
        client: PrpcClient,
        history: RollingHistoryStore,
        network_history: NetworkHistory,
        ingestion: IngestionService,
        interval_s: float = 30.0,
    ) -> None:
        self.client = client
        self.history = history
        self.network_history = network_history
        self.ingestion = ingestion
        self.interval_s = interval_s
        self.live_detector = RollingHistoryDetector()
        self.recent_anomalies: deque[Anomaly] = deque(maxlen=300)

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "MonitorOrchestrator":
        client = PrpcClient(
            endpoint=settings.rpc.endpoint,
            api_key=settings.rpc.api_key,
            method=settings.rpc.method,
            timeout_s=settings.rpc.timeout_s,
            enrich_validators=settings.rpc.enrich_validators,
        )
        backend = JsonFileBackend(settings.storage.history_path)
        history = RollingHistoryStore(backend, max_history=settings.analytics.max_history)
        network_history = NetworkHistory(
            backend,
            max_snapshots=settings.analytics.max_network_history,
            max_age_days=settings.analytics.network_history_max_age_days,
        )
        ingestion = IngestionService(
            MonitorRepository(settings.storage.sqlite_path),
            dedup_window_s=settings.polling.alert_dedup_window_s,
        )
        return cls(client, history, network_history, ingestion, interval_s=settings.polling.interval_s)

    def analyze(self, nodes: list[NodeRecord], now: datetime | None = None) -> CycleResult:
        now = now or utc_now()
        insights = compute_insights(nodes, self.history, detector=self.live_detector, now=now)
        snapshot = self.network_history.save_snapshot(nodes, now=now)
        anomalies = [anomaly for items in insights.anomalies.values() for anomaly in items]
        for anomaly in anomalies:
            self.recent_anomalies.append(anomaly)
            logger.warning(
                "event=anomaly node=%s type=%s severity=%s message=%s",
                anomaly.node_id,
                anomaly.type.value,
                anomaly.severity.value,
                anomaly.message,
            )
        return CycleResult(insights=insights, network_snapshot=snapshot, anomalies=anomalies)

    def run_cycle(self, now: datetime | None = None) -> CycleResult | None:
        try:
            nodes = self.client.fetch_nodes()
        except RpcError as exc:
            logger.error("event=fetch_failed endpoint=%s error=%s", self.client.endpoint, exc)
            return None

        now = now or utc_now()
        result = self.analyze(nodes, now=now)
        result.ingest = self.ingestion.ingest(nodes, chain_metrics=self.client.fetch_chain_metrics(), now=now)
        return result

    async def run(self, max_cycles: int | None = None) -> None:
        completed = 0
        while max_cycles is None or completed < max_cycles:
            # El fetch HTTP es bloqueante: se ejecuta fuera del event loop.
            try:
                await asyncio.to_thread(self.run_cycle)
            except Exception:  # pylint: disable=broad-except
                logger.exception("event=cycle_failed cycle=%d", completed + 1)
            completed += 1
            if max_cycles is not None and completed >= max_cycles:
                break
            await asyncio.sleep(self.interval_s)


async def run_default(settings: AppSettings, max_cycles: int | None = None) -> None:
    orchestrator = MonitorOrchestrator.from_settings(settings)
    await orchestrator.run(max_cycles=max_cycles)
