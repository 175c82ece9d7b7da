import asyncio
from datetime import timedelta
from pathlib import Path

from pnode_monitor.analytics.history import InMemoryBackend, RollingHistoryStore
from pnode_monitor.analytics.network_history import NetworkHistory
from pnode_monitor.core.orchestrator import IngestionService, MonitorOrchestrator
from pnode_monitor.errors import RpcError
from pnode_monitor.models.nodes import NodeRecord, NodeStatus, utc_now
from pnode_monitor.rpc.client import ChainMetrics
from pnode_monitor.storage.repository import MonitorRepository

NOW = utc_now()


def _node(node_id: str = "node-a", **overrides) -> NodeRecord:
    payload = {
        "id": node_id,
        "status": NodeStatus.ONLINE,
        "peer_count": 20,
        "last_seen": NOW,
        "latency": 90.0,
    }
    payload.update(overrides)
    return NodeRecord(**payload)


class _FakeClient:
    endpoint = "http://rpc.test"

    def __init__(self, batches) -> None:
        self.batches = list(batches)
        self.calls = 0

    def fetch_nodes(self) -> list[NodeRecord]:
        self.calls += 1
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch

    def fetch_chain_metrics(self) -> ChainMetrics:
        return ChainMetrics(tps=1200.0, block_time_ms=400.0, slot=10, epoch=1)


def test_ingest_persists_cycle_and_alerts(tmp_path: Path, caplog) -> None:
    caplog.set_level("INFO")
    repo = MonitorRepository(str(tmp_path / "monitor.db"))
    service = IngestionService(repo)

    result = service.ingest(
        [_node(), _node("node-b", status=NodeStatus.OFFLINE, peer_count=0)],
        chain_metrics=ChainMetrics(tps=10.0),
        now=NOW,
    )

    assert result.nodes == 2
    assert result.alerts == 1
    assert result.suppressed == 0
    assert result.snapshot.critical_nodes == 1
    assert len(repo.node_history(hours=1, now=NOW)) == 2
    assert len(repo.network_history(hours=1, now=NOW)) == 1
    assert repo.chain_metrics(hours=1, now=NOW)[0]["tps"] == 10.0
    alert = repo.list_alerts(now=NOW)[0]
    assert alert["node_id"] == "node-b"
    assert alert["type"] == "offline"
    assert "event=ingest_completed" in caplog.text


def test_repeated_anomaly_is_suppressed_within_window(tmp_path: Path) -> None:
    repo = MonitorRepository(str(tmp_path / "monitor.db"))
    service = IngestionService(repo)
    offline = _node(status=NodeStatus.OFFLINE)

    assert service.ingest([offline], now=NOW).alerts == 1
    second = service.ingest([offline], now=NOW + timedelta(minutes=10))
    assert second.alerts == 0
    assert second.suppressed == 1

    third = service.ingest([offline], now=NOW + timedelta(hours=2))
    assert third.alerts == 1
    assert len(repo.list_alerts(now=NOW + timedelta(hours=2))) == 2


def test_peer_drop_uses_previously_stored_node(tmp_path: Path) -> None:
    repo = MonitorRepository(str(tmp_path / "monitor.db"))
    service = IngestionService(repo)

    service.ingest([_node(peer_count=30)], now=NOW)
    result = service.ingest([_node(peer_count=10)], now=NOW + timedelta(minutes=1))

    assert result.alerts == 1
    assert repo.list_alerts(now=NOW)[0]["type"] == "peer_drop"


def _orchestrator(tmp_path: Path, client: _FakeClient) -> MonitorOrchestrator:
    backend = InMemoryBackend()
    return MonitorOrchestrator(
        client=client,
        history=RollingHistoryStore(backend),
        network_history=NetworkHistory(backend),
        ingestion=IngestionService(MonitorRepository(str(tmp_path / "monitor.db"))),
        interval_s=0,
    )


def test_cycle_runs_live_analytics_and_ingestion(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, _FakeClient([[_node(status=NodeStatus.OFFLINE)]]))
    result = orchestrator.run_cycle(now=NOW)

    assert result is not None
    assert result.insights.risk_scores["node-a"] == 5
    assert len(result.anomalies) == 1
    assert len(orchestrator.recent_anomalies) == 1
    assert result.ingest.alerts == 1
    assert result.ingest.chain_metrics.tps == 1200.0
    assert len(orchestrator.network_history.get_history(now=NOW)) == 1


def test_fetch_failure_skips_cycle(tmp_path: Path, caplog) -> None:
    orchestrator = _orchestrator(tmp_path, _FakeClient([RpcError("connection refused")]))
    assert orchestrator.run_cycle(now=NOW) is None
    assert "event=fetch_failed" in caplog.text


def test_run_stops_after_requested_cycles(tmp_path: Path) -> None:
    client = _FakeClient([[_node()], RpcError("timeout"), [_node()]])
    orchestrator = _orchestrator(tmp_path, client)

    asyncio.run(orchestrator.run(max_cycles=3))

    assert client.calls == 3
    assert len(orchestrator.history.get("node-a")) == 2


def test_unexpected_cycle_error_does_not_stop_polling(tmp_path: Path, caplog) -> None:
    client = _FakeClient([[_node()], ValueError("Invalid isoformat string: 'yesterday'"), [_node()]])
    orchestrator = _orchestrator(tmp_path, client)

    asyncio.run(orchestrator.run(max_cycles=3))

    assert client.calls == 3
    assert len(orchestrator.history.get("node-a")) == 2
    assert "event=cycle_failed" in caplog.text
