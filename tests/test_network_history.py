from datetime import timedelta

from pnode_monitor.analytics.history import InMemoryBackend
from pnode_monitor.analytics.network_history import NETWORK_HISTORY_KEY, NetworkHistory, build_network_snapshot
from pnode_monitor.models.nodes import NodeRecord, NodeStatus, to_epoch_ms, utc_now

NOW = utc_now()


class _FailingBackend:
    def read(self, key):
        raise OSError("storage unavailable")

    def write(self, key, value):
        raise OSError("quota exceeded")

    def delete(self, key):
        raise OSError("storage unavailable")


def _nodes() -> list[NodeRecord]:
    return [
        NodeRecord(
            id="a",
            status=NodeStatus.ONLINE,
            peer_count=25,
            last_seen=NOW,
            latency=50.0,
            storage_used=25.0,
            storage_capacity=100.0,
            software_version="3.0.1",
        ),
        NodeRecord(id="b", status=NodeStatus.OFFLINE, peer_count=0, last_seen=NOW, storage_capacity=100.0),
    ]


def test_snapshot_counts_health_bands() -> None:
    snapshot = build_network_snapshot(_nodes(), now=NOW)
    assert snapshot.timestamp == to_epoch_ms(NOW)
    assert snapshot.total_nodes == 2
    assert snapshot.online_nodes == 1
    assert snapshot.healthy_nodes == 1
    assert snapshot.critical_nodes == 1
    assert snapshot.storage_percentage == 12.5
    assert snapshot.version_distribution == {"3.0.x": 1, "unknown": 1}


def test_history_is_capped() -> None:
    history = NetworkHistory(InMemoryBackend(), max_snapshots=3)
    for minute in range(5):
        history.save_snapshot(_nodes(), now=NOW + timedelta(minutes=minute))

    saved = history.get_history(now=NOW + timedelta(minutes=5))
    assert len(saved) == 3
    assert saved[0].timestamp == to_epoch_ms(NOW + timedelta(minutes=2))


def test_old_snapshots_are_filtered() -> None:
    backend = InMemoryBackend()
    history = NetworkHistory(backend)
    history.save_snapshot(_nodes(), now=NOW - timedelta(days=31))
    history.save_snapshot(_nodes(), now=NOW - timedelta(days=2))
    history.save_snapshot(_nodes(), now=NOW - timedelta(hours=1))

    assert len(history.get_history(now=NOW)) == 2
    assert len(history.get_history_for_range(24, now=NOW)) == 1
    # Las instantáneas caducadas se podan en la siguiente escritura.
    assert len(backend.read(NETWORK_HISTORY_KEY)) == 2


def test_backend_failures_do_not_propagate(caplog) -> None:
    history = NetworkHistory(_FailingBackend())
    snapshot = history.save_snapshot(_nodes(), now=NOW)

    assert snapshot.total_nodes == 2
    assert history.get_history(now=NOW) == []
    history.clear()
    assert "network_history_read_failed" in caplog.text
    assert "network_history_clear_failed" in caplog.text


def test_clear_drops_snapshots() -> None:
    history = NetworkHistory(InMemoryBackend())
    history.save_snapshot(_nodes(), now=NOW)
    history.clear()
    assert history.get_history(now=NOW) == []
